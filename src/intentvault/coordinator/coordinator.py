"""
ExecutionCoordinator: the trusted settlement flow.

    open envelope -> validate -> reserve (ExecuteWithIntent on-chain)
        -> swap (bounded timeout) -> deliver output -> FINALIZED
                               |-> swap failed -> refund -> FAILED

Idempotency is keyed by (user, nonce). Concurrent duplicates inside this
process are rejected immediately; replays across restarts are caught by
the ledger and, ultimately, by the on-chain nonce.

A reserve or swap whose outcome is unknown leaves the record RESERVED or
RECEIVED; a resubmission of the same intent and swap reconciles it.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Dict, Optional, Set, Tuple

from intentvault.protocol.enums import IntentStatus
from intentvault.protocol.errors import (
    NonceReused,
    SettlementError,
    SwapError,
    SwapPending,
    TransportError,
)
from intentvault.protocol.models import (
    Approval,
    EncryptedEnvelope,
    SettlementRequest,
    SettlementResult,
    SwapParams,
)
from intentvault.protocol.validators import parse_settle_body, validate_settlement_request
from intentvault.security.hybrid import CoordinatorKeyRing
from intentvault.security.signing import Keypair
from intentvault.utils.timestamps import now_ms
from intentvault.vault.client import VaultClient

from .approval import ApprovalSigner
from .ledger import IntentLedger, IntentRecord
from .swap import SwapEngine, SwapResult
from .validator import IntentValidator

logger = logging.getLogger(__name__)


class ExecutionCoordinator:
    def __init__(
        self,
        *,
        vault: VaultClient,
        execution: Keypair,
        validator: IntentValidator,
        ledger: IntentLedger,
        swap_engine: SwapEngine,
        approval_signer: ApprovalSigner,
        keyring: CoordinatorKeyRing,
        swap_timeout: float = 30.0,
    ):
        self.vault = vault
        self.execution = execution
        self.validator = validator
        self.ledger = ledger
        self.swap_engine = swap_engine
        self.approval_signer = approval_signer
        self.keyring = keyring
        self.swap_timeout = swap_timeout
        self._inflight: Set[Tuple[str, int]] = set()
        self._inflight_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Request decoding
    # ------------------------------------------------------------------
    def open_request(self, body: Dict[str, Any]) -> SettlementRequest:
        """Decode a settle/approve body, opening the hybrid envelope if present."""
        raw = parse_settle_body(body)
        if raw is not body:
            raw = self.keyring.open_json(EncryptedEnvelope.from_dict(raw))
            if not isinstance(raw, dict):
                raise SettlementError("Encrypted payload is not a JSON object")
        request = SettlementRequest.from_dict(raw)
        validate_settlement_request(request)
        return request

    # ------------------------------------------------------------------
    # Approval
    # ------------------------------------------------------------------
    async def approve(self, request: SettlementRequest) -> Approval:
        """Validate without consuming the nonce and return a signed approval."""
        signed = request.signed_intent
        last_nonce = await self.vault.get_last_nonce(signed.intent.user)
        self.validator.validate(signed, last_nonce)
        return self.approval_signer.approve(signed, request.swap)

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------
    async def submit(self, request: SettlementRequest) -> SettlementResult:
        validate_settlement_request(request)
        key = (request.signed_intent.intent.user, request.signed_intent.intent.nonce)

        with self._inflight_lock:
            if key in self._inflight:
                raise NonceReused(f"Intent nonce {key[1]} is already being settled")
            self._inflight.add(key)
        try:
            return await self._settle(request)
        finally:
            with self._inflight_lock:
                self._inflight.discard(key)

    async def _settle(self, request: SettlementRequest) -> SettlementResult:
        signed = request.signed_intent
        intent = signed.intent
        intent_hash = signed.intent_hash

        record = self.ledger.get(intent.user, intent.nonce)
        last_nonce = await self.vault.get_last_nonce(intent.user)

        if record is not None:
            if record.intent_hash != intent_hash and record.status != IntentStatus.REJECTED:
                raise NonceReused(f"Nonce {intent.nonce} is bound to a different intent")
            if record.status.is_terminal:
                raise NonceReused(f"Intent nonce {intent.nonce} already {record.status.value}")
            if record.status == IntentStatus.RESERVED:
                self._check_same_swap(record, request.swap)
                logger.info("Resuming reserved intent %s at swap step", intent_hash[:18])
                return await self._swap_and_finalize(record, request)
            if record.status == IntentStatus.RECEIVED and last_nonce == intent.nonce:
                self._check_same_swap(record, request.swap)
                # reserve committed on-chain but the ledger never saw the result
                record = self.ledger.put(record.transition(IntentStatus.RESERVED))
                logger.info("Reconciled intent %s as reserved from chain state", intent_hash[:18])
                return await self._swap_and_finalize(record, request)

        outcome = self.validator.evaluate(signed, last_nonce)
        if outcome.error is not None:
            self._record_rejection(request, str(outcome.error))
            raise outcome.error

        record = self.ledger.put(IntentRecord(
            user=intent.user,
            nonce=intent.nonce,
            intent_hash=intent_hash,
            status=IntentStatus.RECEIVED,
            amount=request.swap.amount_in,
            input_mint=request.swap.input_mint,
            output_mint=request.swap.output_mint,
            updated_at=now_ms(),
        ))

        try:
            reserve_tx = await self.vault.execute_with_intent(self.execution, signed, request.swap.amount_in)
        except SettlementError as e:
            if await self.vault.get_last_nonce(intent.user) == intent.nonce:
                # an earlier unconfirmed attempt committed the reserve
                logger.warning("Reserve for intent %s already on-chain (%s)", intent_hash[:18], e)
                record = self.ledger.put(record.transition(IntentStatus.RESERVED))
                return await self._swap_and_finalize(record, request)
            if isinstance(e, TransportError):
                # the send may still commit; the RECEIVED record is reconciled on retry
                logger.warning("Reserve for intent %s unconfirmed: %s", intent_hash[:18], e)
                raise
            self.ledger.put(record.transition(IntentStatus.REJECTED, error=str(e)))
            logger.info("Reserve for intent %s failed: %s", intent_hash[:18], e)
            raise

        record = self.ledger.put(record.transition(IntentStatus.RESERVED, reserve_tx=reserve_tx))
        return await self._swap_and_finalize(record, request)

    @staticmethod
    def _check_same_swap(record: IntentRecord, swap: SwapParams) -> None:
        # swap params are not signed; only the reserved swap may resume
        reserved = (
            record.amount,
            record.input_mint or swap.input_mint,
            record.output_mint or swap.output_mint,
        )
        if (swap.amount_in, swap.input_mint, swap.output_mint) != reserved:
            raise NonceReused(f"Nonce {record.nonce} is reserved for a different swap")

    def _record_rejection(self, request: SettlementRequest, error: str) -> None:
        intent = request.signed_intent.intent
        existing = self.ledger.get(intent.user, intent.nonce)
        # a RECEIVED record may still have a reserve in flight
        if existing is not None and existing.status != IntentStatus.REJECTED:
            return
        self.ledger.put(IntentRecord(
            user=intent.user,
            nonce=intent.nonce,
            intent_hash=request.signed_intent.intent_hash,
            status=IntentStatus.REJECTED,
            amount=request.swap.amount_in,
            error=error,
            updated_at=now_ms(),
        ))

    async def _swap_and_finalize(self, record: IntentRecord, request: SettlementRequest) -> SettlementResult:
        if record.swap_tx is None:
            try:
                result = await self._run_swap(record, request.swap)
            except SwapPending as e:
                # neither committed nor failed yet; a retry picks up the outcome
                logger.error("Swap for intent %s unresolved: %s", record.intent_hash[:18], e)
                record = self.ledger.put(record.transition(IntentStatus.RESERVED, error=str(e)))
                return self._result(record)
            except SettlementError as e:
                return await self._refund(record, str(e))

            record = self.ledger.put(record.transition(
                IntentStatus.RESERVED, swap_tx=result.tx_id, amount_out=result.amount_out, error=None,
            ))
        else:
            logger.info("Swap for intent %s already committed; delivering output", record.intent_hash[:18])
            result = SwapResult(
                tx_id=record.swap_tx,
                amount_in=record.amount,
                amount_out=record.amount_out or 0,
                output_mint=record.output_mint or request.swap.output_mint,
            )

        try:
            output_tx = await self.swap_engine.transfer_output(self.execution, record.user, result)
        except SettlementError as e:
            # swapped funds are no longer in the execution account; nothing to refund
            record = self.ledger.put(record.transition(
                IntentStatus.FAILED, error=f"Output delivery failed: {e}",
            ))
            logger.error("Output delivery for intent %s failed: %s", record.intent_hash[:18], e)
            return self._result(record)

        record = self.ledger.put(record.transition(IntentStatus.FINALIZED, output_tx=output_tx))
        logger.info("Intent %s finalized (out=%d)", record.intent_hash[:18], result.amount_out)
        return self._result(record)

    async def _run_swap(self, record: IntentRecord, swap: SwapParams) -> SwapResult:
        """
        Execute the swap under the intent hash, bounded by ``swap_timeout``.
        A swap still running at the timeout is reconciled before it counts as
        failed.
        """
        reference = record.intent_hash
        committed = await self.swap_engine.reconcile(reference, self.swap_timeout)
        if committed is not None:
            logger.info("Swap for intent %s committed by an earlier attempt", reference[:18])
            return committed
        try:
            return await asyncio.wait_for(
                self.swap_engine.execute(self.execution, swap, reference),
                timeout=self.swap_timeout,
            )
        except asyncio.TimeoutError:
            committed = await self.swap_engine.reconcile(reference, self.swap_timeout)
            if committed is None:
                raise SwapError(f"Swap timed out after {self.swap_timeout}s")
            logger.warning("Swap for intent %s committed after the timeout", reference[:18])
            return committed

    async def _refund(self, record: IntentRecord, error: str) -> SettlementResult:
        logger.warning("Swap for intent %s failed (%s); refunding", record.intent_hash[:18], error)
        try:
            refund_tx = await self.vault.refund_to_deposit(
                self.execution, record.user, record.amount, record.nonce,
            )
        except SettlementError as e:
            logger.error("Refund for intent %s failed: %s", record.intent_hash[:18], e)
            record = self.ledger.put(record.transition(
                IntentStatus.FAILED, error=f"{error}; refund failed: {e}",
            ))
            return self._result(record)

        record = self.ledger.put(record.transition(IntentStatus.FAILED, refund_tx=refund_tx, error=error))
        return self._result(record)

    @staticmethod
    def _result(record: IntentRecord) -> SettlementResult:
        return SettlementResult(
            intent_hash=record.intent_hash,
            user=record.user,
            nonce=record.nonce,
            status=record.status.value,
            reserve_tx=record.reserve_tx,
            swap_tx=record.swap_tx,
            output_tx=record.output_tx,
            refund_tx=record.refund_tx,
            amount_out=record.amount_out,
            error=record.error,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_result(self, user: str, nonce: int) -> Optional[SettlementResult]:
        record = self.ledger.get(user, nonce)
        return self._result(record) if record is not None else None
