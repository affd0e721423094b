"""
Coordinator HTTP API (FastAPI).

    GET  /health
    GET  /api/public-key
    POST /api/privacy-handles
    POST /api/approve
    POST /api/settle
    GET  /api/status
    GET  /api/intent/{user}/{nonce}
    GET  /api/rpc-url

Errors are returned as ``{success: false, error, code, reason?}``.
"""

from __future__ import annotations

import hashlib
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from intentvault.core.settings import IntentVaultSettings, get_settings
from intentvault.protocol.errors import (
    ChainError,
    InsufficientBalance,
    InvalidSignature,
    KeyFetchError,
    PrivacyPayloadError,
    RateLimited,
    SettlementError,
    SwapError,
    TransportError,
)
from intentvault.protocol.validators import validate_plain_value
from intentvault.utils.timestamps import now_iso, now_ms

from .runtime import CoordinatorRuntime, build_runtime

logger = logging.getLogger(__name__)


def http_status_for(error: SettlementError) -> int:
    if isinstance(error, InvalidSignature):
        return 401
    if isinstance(error, RateLimited):
        return 429
    if isinstance(error, InsufficientBalance):
        return 409
    if isinstance(error, TransportError):
        return 504
    if isinstance(error, (ChainError, SwapError, KeyFetchError)):
        return 502
    return 400


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def create_app(
    runtime: Optional[CoordinatorRuntime] = None,
    settings: Optional[IntentVaultSettings] = None,
) -> FastAPI:
    """
    Build the app. Without an explicit runtime, one is created on startup
    from settings.
    """
    settings = settings or (runtime.settings if runtime else get_settings())
    state: Dict[str, CoordinatorRuntime] = {}
    if runtime is not None:
        state["runtime"] = runtime

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if "runtime" not in state:
            state["runtime"] = await build_runtime(settings)
        state["runtime"].started_at = now_ms()
        logger.info("Coordinator listening as enclave %s", settings.coordinator.enclave_id)
        yield

    app = FastAPI(
        title="intentvault coordinator",
        version="1.0",
        description="Confidential intent validation and settlement",
        lifespan=lifespan,
    )

    def rt() -> CoordinatorRuntime:
        return state["runtime"]

    def rate_limit(request: Request, response: Response) -> None:
        decision = rt().ip_limiter.check(_client_ip(request))
        if not decision.allowed:
            logger.warning("Rate limit exceeded for %s", _client_ip(request))
            raise RateLimited(
                f"Too many requests. Maximum {decision.limit} requests per "
                f"{rt().ip_limiter.window:.0f} seconds.",
                retry_after=decision.retry_after,
            )
        response.headers.update(decision.headers())

    @app.exception_handler(SettlementError)
    async def settlement_error_handler(request: Request, exc: SettlementError):
        body = exc.to_envelope()
        headers = {}
        if isinstance(exc, RateLimited):
            body["retryAfter"] = exc.retry_after
            headers["Retry-After"] = str(int(exc.retry_after))
        status = http_status_for(exc)
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status, content=body, headers=headers)

    async def _json_body(request: Request) -> Dict[str, Any]:
        try:
            body = await request.json()
        except ValueError:
            raise SettlementError("Invalid JSON payload")
        if not isinstance(body, dict):
            raise SettlementError("Request body must be a JSON object")
        return body

    # ------------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------------
    @app.get("/health")
    async def health():
        return {"status": "ok", "timestamp": now_iso()}

    @app.get("/api/public-key")
    async def public_key():
        return {
            "success": True,
            "publicKey": rt().keyring.public_key_info(),
            "enclaveId": settings.coordinator.enclave_id,
            "timestamp": now_ms(),
        }

    @app.post("/api/privacy-handles")
    async def privacy_handles(request: Request, response: Response):
        rate_limit(request, response)
        body = await _json_body(request)
        values = body.get("values")
        if not isinstance(values, dict) or not values:
            raise PrivacyPayloadError("Missing values object in request body")

        fhe = rt().fhe
        handles: Dict[str, Any] = {}
        for name, raw in values.items():
            handle = fhe.encrypt(validate_plain_value(name, raw))
            handles[name] = {
                **handle.to_dict(),
                "hash": hashlib.sha256(bytes.fromhex(handle.ciphertext)).hexdigest(),
            }
        return {"success": True, "handleFormat": fhe.format, "handles": handles}

    @app.post("/api/approve")
    async def approve(request: Request, response: Response):
        rate_limit(request, response)
        body = await _json_body(request)
        req = rt().coordinator.open_request(body)
        approval = await rt().coordinator.approve(req)
        return {"success": True, "approval": approval.to_dict()}

    @app.post("/api/settle")
    async def settle(request: Request, response: Response):
        rate_limit(request, response)
        body = await _json_body(request)
        req = rt().coordinator.open_request(body)
        result = await rt().coordinator.submit(req)
        return result.to_dict()

    @app.get("/api/status")
    async def status():
        r = rt()
        executor = await r.vault.get_executor_state()
        return {
            "success": True,
            "enclaveId": settings.coordinator.enclave_id,
            "attestation": {
                "enclaveId": settings.coordinator.enclave_id,
                "version": settings.coordinator.enclave_version,
                "timestamp": now_ms(),
            },
            "programId": r.program.program_id,
            "network": settings.chain.network,
            "executor": executor.to_dict() if executor is not None else None,
            "approvalKey": r.coordinator.approval_signer.address,
            "vaultLamports": await r.vault.get_balance(r.program.vault_address),
            "uptimeMs": now_ms() - r.started_at if r.started_at else 0,
        }

    @app.get("/api/intent/{user}/{nonce}")
    async def intent_status(user: str, nonce: int):
        result = rt().coordinator.get_result(user, nonce)
        if result is None:
            return JSONResponse(
                status_code=404,
                content={"success": False, "error": "Intent not found", "code": "not_found"},
            )
        return result.to_dict()

    @app.get("/api/rpc-url")
    async def rpc_url():
        return {
            "success": True,
            "rpcUrl": settings.chain.resolved_rpc_url(),
            "network": settings.chain.network,
        }

    return app
