"""
intentvault CLI.

Commands:
    intentvault serve [--host H] [--port P]      Run the coordinator HTTP API
    intentvault public-key                       Show the coordinator transport key
    intentvault status                           Show coordinator / executor status
    intentvault intent <user> <nonce>            Show the settlement record of an intent
    intentvault verify-ledger [--path P]         Verify the ledger hash chain
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any, Dict

from intentvault.core.settings import get_settings
from intentvault.protocol.errors import SettlementError
from intentvault.utils.logging import configure_logging


def _client():
    from intentvault.client.transport import CoordinatorClient

    cfg = get_settings().client
    return CoordinatorClient(
        cfg.coordinator_url,
        timeout=cfg.request_timeout,
        max_retries=cfg.max_retries,
        backoff=cfg.retry_backoff,
    )


def _print_output(data: Dict[str, Any], fmt: str) -> None:
    if fmt == "json":
        print(json.dumps(data, indent=2))
        return
    for k, v in data.items():
        if isinstance(v, dict):
            print(f"{k}:")
            for sk, sv in v.items():
                if sk == "pem":
                    continue
                print(f"  {sk:<20} {sv}")
        else:
            print(f"{k:<22} {v}")


def cmd_serve(args) -> None:
    import uvicorn

    from intentvault.coordinator.server import create_app

    cfg = get_settings().coordinator
    uvicorn.run(
        create_app(),
        host=args.host or cfg.host,
        port=args.port or cfg.port,
        log_level=get_settings().runtime.log_level.lower(),
    )


def cmd_public_key(args) -> None:
    data = asyncio.run(_client().fetch_public_key())
    if args.pem:
        print(data["publicKey"]["pem"])
        return
    _print_output(data, args.output)


def cmd_status(args) -> None:
    _print_output(asyncio.run(_client().status()), args.output)


def cmd_intent(args) -> None:
    result = asyncio.run(_client().intent_status(args.user, args.nonce))
    _print_output(result.to_dict(), args.output)


def cmd_verify_ledger(args) -> None:
    from intentvault.coordinator.ledger import IntentLedger

    path = args.path or get_settings().coordinator.ledger_path
    ok, reason = IntentLedger(path).verify_integrity()
    if ok:
        print(f"Ledger OK: {path}")
        return
    print(f"Ledger CORRUPT: {reason}", file=sys.stderr)
    sys.exit(2)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="intentvault", description="Confidential intent settlement")
    parser.add_argument("--output", "-o", choices=["table", "json"], default="table")
    sub = parser.add_subparsers(dest="command")

    p_serve = sub.add_parser("serve", help="Run the coordinator HTTP API")
    p_serve.add_argument("--host", default=None)
    p_serve.add_argument("--port", type=int, default=None)
    p_serve.set_defaults(func=cmd_serve)

    p_key = sub.add_parser("public-key", help="Show the coordinator public key")
    p_key.add_argument("--pem", action="store_true", help="Print only the PEM")
    p_key.set_defaults(func=cmd_public_key)

    p_status = sub.add_parser("status", help="Show coordinator status")
    p_status.set_defaults(func=cmd_status)

    p_intent = sub.add_parser("intent", help="Show an intent's settlement record")
    p_intent.add_argument("user")
    p_intent.add_argument("nonce", type=int)
    p_intent.set_defaults(func=cmd_intent)

    p_verify = sub.add_parser("verify-ledger", help="Verify the ledger hash chain")
    p_verify.add_argument("--path", default=None)
    p_verify.set_defaults(func=cmd_verify_ledger)
    return parser


def main(argv=None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        sys.exit(1)

    configure_logging()
    try:
        args.func(args)
    except SettlementError as e:
        print(f"Error [{e.code.value}]: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
