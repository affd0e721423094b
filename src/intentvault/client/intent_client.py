"""
Client facade: draft -> handles -> sign -> encrypt -> approve/settle.

This is the producer side of the system (the part a wallet extension
would run). Sensitive values never leave it in plaintext: they become
ciphertext handles before signing, and the whole settlement request,
including swap routing, travels inside a hybrid envelope.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from intentvault.core.settings import ClientSettings, get_settings
from intentvault.protocol.enums import IntentAction
from intentvault.protocol.errors import TransportError
from intentvault.protocol.models import (
    Approval,
    Intent,
    SettlementRequest,
    SettlementResult,
    SignedIntent,
    SwapParams,
)
from intentvault.security.hybrid import HybridEncryptor
from intentvault.security.key_cache import KeyCache, default_key_cache
from intentvault.security.signing import Keypair, sign_intent
from intentvault.utils.timestamps import now_ms

from .handles import HandleBuilder, RemoteHandleProvider
from .transport import CoordinatorClient

logger = logging.getLogger(__name__)

MOCK_ENCLAVE_ID = "mock-enclave"


def mock_approval(signed: SignedIntent) -> Approval:
    """Unsigned development approval used when the coordinator cannot be reached."""
    logger.warning("Using MOCK approval for intent %s; coordinator unreachable", signed.intent_hash[:18])
    return Approval(
        approved=True,
        intent_hash=signed.intent_hash,
        enclave_id=MOCK_ENCLAVE_ID,
        execution_plan={"route": "mock", "timestamp": now_ms()},
        mock=True,
    )


class IntentClient:
    """
    Usage:
        client = IntentClient.from_settings(keypair)
        result = await client.swap(nonce=5, amount=1_000_000, input_mint=..., output_mint=...)
    """

    def __init__(
        self,
        keypair: Keypair,
        coordinator: CoordinatorClient,
        handles: HandleBuilder,
        encryptor: HybridEncryptor,
        *,
        expiry_window_ms: int = 300_000,
        dev_mock_approval: bool = False,
        program_id: Optional[str] = None,
    ):
        self.keypair = keypair
        self.coordinator = coordinator
        self.handles = handles
        self.encryptor = encryptor
        self.expiry_window_ms = expiry_window_ms
        self.dev_mock_approval = dev_mock_approval
        self.program_id = program_id

    @classmethod
    def from_settings(
        cls,
        keypair: Keypair,
        settings: Optional[ClientSettings] = None,
        key_cache: Optional[KeyCache] = None,
    ) -> "IntentClient":
        root = get_settings()
        settings = settings or root.client
        coordinator = CoordinatorClient(
            settings.coordinator_url,
            timeout=settings.request_timeout,
            max_retries=settings.max_retries,
            backoff=settings.retry_backoff,
        )
        return cls(
            keypair,
            coordinator,
            HandleBuilder(RemoteHandleProvider(coordinator)),
            HybridEncryptor(key_cache or default_key_cache()),
            expiry_window_ms=settings.intent_expiry_ms,
            dev_mock_approval=settings.dev_mock_approval,
            program_id=root.chain.program_id,
        )

    # ------------------------------------------------------------------
    # Building
    # ------------------------------------------------------------------
    def draft_swap(
        self,
        nonce: int,
        amount: int,
        public_meta: Optional[Dict[str, Any]] = None,
    ) -> Intent:
        meta = dict(public_meta or {})
        if self.program_id and "programId" not in meta:
            meta["programId"] = self.program_id
        return Intent.draft(
            IntentAction.EXECUTE_SWAP,
            self.keypair.address,
            nonce,
            private_values={"amount": amount},
            public_meta=meta,
            expiry_window_ms=self.expiry_window_ms,
        )

    async def prepare(self, draft: Intent) -> SignedIntent:
        """Replace plaintext sensitive values with handles, then sign."""
        sealed = await self.handles.seal(draft)
        return sign_intent(sealed, self.keypair)

    async def encrypted_body(self, request: SettlementRequest) -> Dict[str, Any]:
        envelope = await self.encryptor.encrypt_json(request.to_dict())
        return {"encryptedIntent": envelope.to_dict()}

    # ------------------------------------------------------------------
    # Coordinator calls
    # ------------------------------------------------------------------
    async def request_approval(self, request: SettlementRequest) -> Approval:
        body = await self.encrypted_body(request)
        try:
            return await self.coordinator.approve(body)
        except TransportError:
            if not self.dev_mock_approval:
                raise
            return mock_approval(request.signed_intent)

    async def settle(self, request: SettlementRequest) -> SettlementResult:
        return await self.coordinator.settle(await self.encrypted_body(request))

    async def swap(
        self,
        *,
        nonce: int,
        amount: int,
        input_mint: str,
        output_mint: str,
        slippage: float = 0.01,
        pool_id: Optional[str] = None,
        public_meta: Optional[Dict[str, Any]] = None,
    ) -> SettlementResult:
        signed = await self.prepare(self.draft_swap(nonce, amount, public_meta))
        request = SettlementRequest(
            signed_intent=signed,
            swap=SwapParams(input_mint, output_mint, amount, slippage, pool_id),
        )
        approval = await self.request_approval(request)
        logger.info("Intent %s approved by %s", signed.intent_hash[:18], approval.enclave_id)
        return await self.settle(request)
