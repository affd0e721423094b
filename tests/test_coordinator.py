"""
End-to-end settlement tests against the in-process chain and swap engine.
"""

import asyncio

import pytest

from intentvault.protocol.enums import IntentStatus
from intentvault.protocol.errors import (
    InsufficientBalance,
    IntentExpired,
    NonceReused,
    PrivacyPayloadError,
)

SOL = 1_000_000_000
USDC = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
WSOL = "So11111111111111111111111111111111111111112"


def _request(signed, amount, **kw):
    from intentvault.protocol.models import SettlementRequest, SwapParams

    return SettlementRequest(
        signed_intent=signed,
        swap=SwapParams(input_mint=WSOL, output_mint=USDC, amount_in=amount, **kw),
    )


def _balance(env, user):
    account = asyncio.run(env.vault.get_user_deposit(user.address))
    return env.fhe.reveal(account.encrypted_balance)


@pytest.fixture
def funded(coordinator_env, user):
    asyncio.run(coordinator_env.vault.deposit(user, SOL))
    return coordinator_env


class TestSettlement:
    def test_finalizes_and_blocks_replay(self, funded, user, signed_swap):
        request = _request(signed_swap(user, 5, 1_000_000), 1_000_000)
        result = asyncio.run(funded.coordinator.submit(request))

        assert result.finalized
        assert result.status == "finalized"
        assert result.reserve_tx and result.swap_tx and result.output_tx
        assert result.refund_tx is None
        assert result.amount_out == 995_000
        assert result.intent_hash == request.signed_intent.intent_hash

        assert asyncio.run(funded.vault.get_last_nonce(user.address)) == 5
        assert _balance(funded, user) == SOL - 1_000_000
        assert funded.engine.output_balance(user.address, USDC) == 995_000
        assert funded.chain.get_balance(funded.execution.address) == 0

        with pytest.raises(NonceReused):
            asyncio.run(funded.coordinator.submit(request))
        assert _balance(funded, user) == SOL - 1_000_000

    def test_result_dict(self, funded, user, signed_swap):
        result = asyncio.run(funded.coordinator.submit(_request(signed_swap(user, 0, 10), 10)))
        data = result.to_dict()
        assert data["success"] is True
        assert data["nonce"] == 0
        assert data["user"] == user.address

    def test_same_nonce_different_intent_after_finalize(self, funded, user, signed_swap):
        asyncio.run(funded.coordinator.submit(_request(signed_swap(user, 1, 100), 100)))
        with pytest.raises(NonceReused, match="different intent"):
            asyncio.run(funded.coordinator.submit(_request(signed_swap(user, 1, 200), 200)))

    def test_concurrent_duplicates_settle_once(self, funded, user, signed_swap):
        request = _request(signed_swap(user, 3, 1_000_000), 1_000_000)

        async def race():
            return await asyncio.gather(
                *(funded.coordinator.submit(request) for _ in range(5)),
                return_exceptions=True,
            )

        results = asyncio.run(race())
        finalized = [r for r in results if not isinstance(r, Exception) and r.finalized]
        errors = [r for r in results if isinstance(r, Exception)]
        assert len(finalized) == 1
        assert len(errors) == 4
        assert all(isinstance(e, NonceReused) for e in errors)
        assert _balance(funded, user) == SOL - 1_000_000

    def test_sequential_nonces(self, funded, user, signed_swap):
        for nonce in (0, 1, 7):
            assert asyncio.run(funded.coordinator.submit(_request(signed_swap(user, nonce, 1000), 1000))).finalized
        assert asyncio.run(funded.vault.get_last_nonce(user.address)) == 7
        assert _balance(funded, user) == SOL - 3000


class TestFailures:
    def test_swap_failure_refunds(self, funded, user, signed_swap):
        funded.engine.fail_next = True
        request = _request(signed_swap(user, 2, 1_000_000), 1_000_000)
        result = asyncio.run(funded.coordinator.submit(request))

        assert not result.finalized
        assert result.status == "failed"
        assert result.refund_tx
        assert "Simulated swap failure" in result.error
        assert _balance(funded, user) == SOL
        assert funded.chain.get_balance(funded.execution.address) == 0
        # the nonce stays consumed
        assert asyncio.run(funded.vault.get_last_nonce(user.address)) == 2
        with pytest.raises(NonceReused):
            asyncio.run(funded.coordinator.submit(request))

    def test_swap_timeout_refunds(self, funded, user, signed_swap):
        funded.engine.delay = 0.5
        coordinator = funded.build(swap_timeout=0.05)
        result = asyncio.run(coordinator.submit(_request(signed_swap(user, 0, 5000), 5000)))
        assert result.status == "failed"
        assert "timed out" in result.error
        assert result.refund_tx
        assert _balance(funded, user) == SOL

    def test_swap_committed_after_timeout_is_not_refunded(self, funded, user, signed_swap, monkeypatch):
        import time

        transfer = funded.chain.transfer

        def slow_transfer(*args):
            time.sleep(0.2)
            return transfer(*args)

        monkeypatch.setattr(funded.chain, "transfer", slow_transfer)
        coordinator = funded.build(swap_timeout=0.15)
        result = asyncio.run(coordinator.submit(_request(signed_swap(user, 0, 5000), 5000)))

        assert result.finalized
        assert result.refund_tx is None
        assert _balance(funded, user) == SOL - 5000
        assert funded.chain.get_balance(funded.execution.address) == 0
        assert funded.engine.output_balance(user.address, USDC) == 4975

    def test_swap_still_in_flight_stays_reserved(self, funded, user, signed_swap, monkeypatch):
        import time

        transfer = funded.chain.transfer
        slow = {"delay": 0.5}

        def slow_transfer(*args):
            time.sleep(slow["delay"])
            return transfer(*args)

        monkeypatch.setattr(funded.chain, "transfer", slow_transfer)
        coordinator = funded.build(swap_timeout=0.05)
        request = _request(signed_swap(user, 0, 5000), 5000)

        result = asyncio.run(coordinator.submit(request))
        assert result.status == "reserved"
        assert result.refund_tx is None
        assert "still in flight" in result.error
        assert coordinator.ledger.get(user.address, 0).status == IntentStatus.RESERVED

        # the pool transfer finished before the event loop shut down
        slow["delay"] = 0
        result = asyncio.run(coordinator.submit(request))
        assert result.finalized
        assert result.refund_tx is None
        assert result.error is None
        assert _balance(funded, user) == SOL - 5000
        assert funded.chain.get_balance(funded.execution.address) == 0
        assert funded.engine.output_balance(user.address, USDC) == 4975

    def test_rejected_intent_leaves_chain_untouched(self, funded, user, signed_swap):
        from intentvault.utils.timestamps import now_ms

        stale = signed_swap(user, 0, 100, issued_at=now_ms() - 60_000, expiry_window_ms=1_000)
        with pytest.raises(IntentExpired):
            asyncio.run(funded.coordinator.submit(_request(stale, 100)))

        record = funded.coordinator.ledger.get(user.address, 0)
        assert record.status == IntentStatus.REJECTED
        assert asyncio.run(funded.vault.get_last_nonce(user.address)) == -1
        assert _balance(funded, user) == SOL

        # a fresh intent may reuse the rejected nonce
        assert asyncio.run(funded.coordinator.submit(_request(signed_swap(user, 0, 100), 100))).finalized

    def test_insufficient_balance_does_not_consume_nonce(self, funded, user, signed_swap):
        with pytest.raises(InsufficientBalance):
            asyncio.run(funded.coordinator.submit(_request(signed_swap(user, 4, 2 * SOL), 2 * SOL)))
        assert funded.coordinator.ledger.get(user.address, 4).status == IntentStatus.REJECTED
        assert asyncio.run(funded.vault.get_last_nonce(user.address)) == -1

        assert asyncio.run(funded.coordinator.submit(_request(signed_swap(user, 4, SOL // 2), SOL // 2))).finalized

    def test_stale_nonce_rejected_before_chain(self, funded, user, signed_swap):
        asyncio.run(funded.coordinator.submit(_request(signed_swap(user, 9, 100), 100)))
        with pytest.raises(NonceReused):
            asyncio.run(funded.coordinator.submit(_request(signed_swap(user, 8, 100), 100)))

    def test_missing_amount_handle(self, funded, user):
        from intentvault.protocol.enums import IntentAction
        from intentvault.protocol.models import Intent
        from intentvault.security.signing import sign_intent

        signed = sign_intent(Intent.draft(IntentAction.EXECUTE_SWAP, user.address, 0), user)
        with pytest.raises(PrivacyPayloadError):
            asyncio.run(funded.coordinator.submit(_request(signed, 100)))


class TestRecovery:
    def _received(self, env, signed, amount, **kw):
        from intentvault.coordinator.ledger import IntentRecord

        return env.coordinator.ledger.put(IntentRecord(
            user=signed.intent.user,
            nonce=signed.intent.nonce,
            intent_hash=signed.intent_hash,
            status=IntentStatus.RECEIVED,
            amount=amount,
            **kw,
        ))

    def test_resumed_reserve_keeps_reserved_amount(self, funded, user, signed_swap):
        from intentvault.security.signing import Keypair

        other = Keypair.generate()
        funded.chain.airdrop(other.address, 10 * SOL)
        asyncio.run(funded.vault.deposit(other, 3 * SOL))
        asyncio.run(funded.vault.execute_with_intent(funded.execution, signed_swap(other, 0, 3 * SOL), 3 * SOL))

        signed = signed_swap(user, 6, 1000)
        record = self._received(funded, signed, 1000)
        tx = asyncio.run(funded.vault.execute_with_intent(funded.execution, signed, 1000))
        funded.coordinator.ledger.put(record.transition(IntentStatus.RESERVED, reserve_tx=tx))

        restarted = funded.build()
        with pytest.raises(NonceReused, match="different swap"):
            asyncio.run(restarted.submit(_request(signed, 3 * SOL)))
        assert funded.chain.get_balance(funded.execution.address) == 3 * SOL + 1000

        result = asyncio.run(restarted.submit(_request(signed, 1000)))
        assert result.finalized
        assert result.amount_out == 995
        assert funded.chain.get_balance(funded.execution.address) == 3 * SOL

    def test_reconciled_reserve_keeps_reserved_mints(self, funded, user, signed_swap):
        from intentvault.protocol.models import SettlementRequest, SwapParams

        signed = signed_swap(user, 2, 1000)
        self._received(funded, signed, 1000, input_mint=WSOL, output_mint=USDC)
        asyncio.run(funded.vault.execute_with_intent(funded.execution, signed, 1000))

        other_mint = SettlementRequest(signed, SwapParams(WSOL, "OtherMint111", 1000))
        with pytest.raises(NonceReused, match="different swap"):
            asyncio.run(funded.coordinator.submit(other_mint))
        assert funded.coordinator.ledger.get(user.address, 2).status == IntentStatus.RECEIVED

        assert asyncio.run(funded.coordinator.submit(_request(signed, 1000))).finalized

    def test_unconfirmed_reserve_is_reconciled_on_retry(self, funded, user, signed_swap, monkeypatch):
        import time

        from intentvault.protocol.errors import TransportError
        from intentvault.vault.client import VaultClient

        send = funded.chain.send_transaction
        slow = {"delay": 0.3}

        def slow_send(tx):
            time.sleep(slow["delay"])
            return send(tx)

        monkeypatch.setattr(funded.chain, "send_transaction", slow_send)
        coordinator = funded.build(vault=VaultClient(funded.chain, funded.program, timeout=0.05))
        request = _request(signed_swap(user, 1, 1_000_000), 1_000_000)

        with pytest.raises(TransportError):
            asyncio.run(coordinator.submit(request))
        # the send finished before the event loop shut down
        assert asyncio.run(funded.vault.get_last_nonce(user.address)) == 1
        assert coordinator.ledger.get(user.address, 1).status == IntentStatus.RECEIVED

        slow["delay"] = 0
        result = asyncio.run(coordinator.submit(request))
        assert result.finalized
        assert _balance(funded, user) == SOL - 1_000_000
        assert funded.chain.get_balance(funded.execution.address) == 0

    def test_resume_reserved_after_restart(self, funded, user, signed_swap):
        signed = signed_swap(user, 6, 1_000_000)
        record = self._received(funded, signed, 1_000_000)
        tx = asyncio.run(funded.vault.execute_with_intent(funded.execution, signed, 1_000_000))
        funded.coordinator.ledger.put(record.transition(IntentStatus.RESERVED, reserve_tx=tx))

        restarted = funded.build()
        assert restarted.ledger.get(user.address, 6).status == IntentStatus.RESERVED
        result = asyncio.run(restarted.submit(_request(signed, 1_000_000)))

        assert result.finalized
        assert result.reserve_tx == tx
        assert _balance(funded, user) == SOL - 1_000_000

    def test_reconcile_received_with_chain(self, funded, user, signed_swap):
        signed = signed_swap(user, 2, 1_000_000)
        self._received(funded, signed, 1_000_000)
        # reserve committed on-chain, coordinator died before recording it
        asyncio.run(funded.vault.execute_with_intent(funded.execution, signed, 1_000_000))

        restarted = funded.build()
        result = asyncio.run(restarted.submit(_request(signed, 1_000_000)))
        assert result.finalized
        assert _balance(funded, user) == SOL - 1_000_000
        assert funded.engine.output_balance(user.address, USDC) == 995_000

    def test_received_without_chain_commit_is_retried(self, funded, user, signed_swap):
        signed = signed_swap(user, 1, 1000)
        self._received(funded, signed, 1000)

        result = asyncio.run(funded.build().submit(_request(signed, 1000)))
        assert result.finalized
        assert asyncio.run(funded.vault.get_last_nonce(user.address)) == 1

    def test_get_result_after_restart(self, funded, user, signed_swap):
        asyncio.run(funded.coordinator.submit(_request(signed_swap(user, 0, 1000), 1000)))
        restarted = funded.build()
        result = restarted.get_result(user.address, 0)
        assert result.status == "finalized"
        assert restarted.get_result(user.address, 1) is None
        assert restarted.ledger.verify_integrity() == (True, None)


class TestApproval:
    def test_approve_signs_plan_without_consuming_nonce(self, funded, user, signed_swap):
        from intentvault.security.signing import verify_approval

        request = _request(signed_swap(user, 0, 1000), 1000)
        approval = asyncio.run(funded.coordinator.approve(request))

        assert approval.approved
        assert approval.intent_hash == request.signed_intent.intent_hash
        assert approval.enclave_id == "test-enclave"
        assert approval.execution_plan["route"] == "solana-swap"
        assert approval.execution_plan["outputMint"] == USDC
        assert verify_approval(approval, funded.approval_key.address)
        assert asyncio.run(funded.vault.get_last_nonce(user.address)) == -1

    def test_approve_rejects_used_nonce(self, funded, user, signed_swap):
        request = _request(signed_swap(user, 0, 1000), 1000)
        asyncio.run(funded.coordinator.submit(request))
        with pytest.raises(NonceReused):
            asyncio.run(funded.coordinator.approve(request))

    def test_raydium_route(self, signed_swap):
        from intentvault.coordinator.approval import RAYDIUM_PROGRAM_IDS, plan_route
        from intentvault.security.signing import Keypair

        kp = Keypair.generate()
        by_program = signed_swap(kp, 0, 1, public_meta={"programIds": [RAYDIUM_PROGRAM_IDS[0]]})
        by_dapp = signed_swap(kp, 1, 1, public_meta={"dappName": "Raydium Swap"})
        assert plan_route(by_program)["route"] == "raydium"
        assert plan_route(by_dapp)["route"] == "raydium"
        assert plan_route(signed_swap(kp, 2, 1))["route"] == "solana-swap"


class TestOpenRequest:
    def test_encrypted_body(self, funded, user, signed_swap, keyring):
        from intentvault.security.hybrid import HybridEncryptor
        from intentvault.security.key_cache import KeyCache

        async def fetch():
            return keyring.public_pem

        request = _request(signed_swap(user, 0, 1000), 1000, slippage=0.02)
        envelope = asyncio.run(HybridEncryptor(KeyCache(fetch)).encrypt_json(request.to_dict()))
        opened = funded.coordinator.open_request({"encryptedIntent": envelope.to_dict()})
        assert opened == request

    def test_plain_body(self, funded, user, signed_swap):
        request = _request(signed_swap(user, 0, 1000), 1000)
        assert funded.coordinator.open_request(request.to_dict()) == request

    def test_body_without_amount_handle(self, funded, user):
        from intentvault.protocol.enums import IntentAction
        from intentvault.protocol.models import Intent
        from intentvault.security.signing import sign_intent

        signed = sign_intent(Intent.draft(IntentAction.EXECUTE_SWAP, user.address, 0), user)
        with pytest.raises(PrivacyPayloadError):
            funded.coordinator.open_request(_request(signed, 1000).to_dict())
