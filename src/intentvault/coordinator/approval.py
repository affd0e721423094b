from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from intentvault.protocol.enums import IntentAction
from intentvault.protocol.models import Approval, SignedIntent, SwapParams
from intentvault.security.signing import Keypair, sign_approval
from intentvault.utils.timestamps import now_ms

logger = logging.getLogger(__name__)

RAYDIUM_PROGRAM_IDS = (
    "675kPX9MHTjS2zt1qfr1NYHuzeLXfQM9H24wFSUt1Mp8",  # AMM v4
    "CAMMCzo5YL8w4VFF8KVHrK22GGUsp5VTaW7grrKgrWqK",  # CLMM
    "RVKd61ztZW9GUwhRbbLoYVRE5Xf9B2t3sc6qwfqE3zH",  # CLMM devnet
    "CPMMoo8L3F4NbTegBCKVNunggL1tnt2ec5zM1YkqFhL2",  # CPMM
)


def plan_route(signed: SignedIntent, swap: Optional[SwapParams] = None) -> Dict[str, Any]:
    """
    Execution plan from the public parts of an intent.

    Route hints come from ``publicMeta``: ``programIds`` of the original
    transaction and the dapp name/url. Amounts are never read here.
    """
    intent = signed.intent
    meta = intent.public_meta
    program_ids = [str(p) for p in meta.get("programIds") or []]
    dapp = " ".join(str(meta.get(k) or "") for k in ("dappName", "dappUrl")).lower()

    route = "solana-swap"
    if any(pid in RAYDIUM_PROGRAM_IDS for pid in program_ids) or "raydium" in dapp:
        route = "raydium"
    elif intent.action != IntentAction.EXECUTE_SWAP:
        route = f"vault-{intent.action.value}"

    plan: Dict[str, Any] = {
        "route": route,
        "maxSlippage": swap.slippage if swap is not None else meta.get("maxSlippage", 0.01),
        "computeUnits": 200_000,
        "timestamp": now_ms(),
    }
    if swap is not None:
        plan["inputMint"] = swap.input_mint
        plan["outputMint"] = swap.output_mint
        if swap.pool_id:
            plan["poolId"] = swap.pool_id
    return plan


class ApprovalSigner:
    """Builds coordinator-signed approvals for already validated intents."""

    def __init__(self, keypair: Keypair, enclave_id: str):
        self.keypair = keypair
        self.enclave_id = enclave_id

    @property
    def address(self) -> str:
        return self.keypair.address

    def approve(self, signed: SignedIntent, swap: Optional[SwapParams] = None) -> Approval:
        approval = Approval(
            approved=True,
            intent_hash=signed.intent_hash,
            enclave_id=self.enclave_id,
            execution_plan=plan_route(signed, swap),
        )
        sign_approval(approval, self.keypair)
        logger.info("Approved intent %s via %s", approval.intent_hash[:18], approval.execution_plan["route"])
        return approval

