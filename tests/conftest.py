import asyncio
import os
import shutil
import tempfile
from types import SimpleNamespace

import pytest

TEST_PROGRAM_ID = "TestVau1t111111111111111111111111111111111111"
SOL = 1_000_000_000


# ===========================================================================
# Generic fixtures
# ===========================================================================


@pytest.fixture
def tmp_dir():
    """Create a temporary directory for test data."""
    d = tempfile.mkdtemp(prefix="intentvault_test_")
    yield d
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture(scope="session")
def keyring():
    """RSA generation is slow; one coordinator key ring per session."""
    from intentvault.security.hybrid import CoordinatorKeyRing

    return CoordinatorKeyRing.generate()


@pytest.fixture
def fhe():
    from intentvault.fhe.memory import InMemoryHomomorphicProvider

    return InMemoryHomomorphicProvider()


# ===========================================================================
# Vault / chain
# ===========================================================================


@pytest.fixture
def vault_env(fhe):
    """Local chain with an initialized vault program."""
    from intentvault.security.signing import Keypair
    from intentvault.vault.chain import LocalChain
    from intentvault.vault.client import VaultClient
    from intentvault.vault.program import ConfidentialVault

    chain = LocalChain()
    program = ConfidentialVault(TEST_PROGRAM_ID, fhe)
    chain.register_program(program)
    vault = VaultClient(chain, program, timeout=5.0)
    authority = Keypair.generate()
    execution = Keypair.generate()
    asyncio.run(vault.initialize(authority, execution.address))
    return SimpleNamespace(
        chain=chain,
        program=program,
        vault=vault,
        authority=authority,
        execution=execution,
        fhe=fhe,
    )


@pytest.fixture
def user(vault_env):
    """A funded user key pair."""
    from intentvault.security.signing import Keypair

    kp = Keypair.generate()
    vault_env.chain.airdrop(kp.address, 10 * SOL)
    return kp


@pytest.fixture
def signed_swap(fhe):
    """Factory: build a signed execute_swap intent whose amount is a handle."""
    from intentvault.protocol.enums import IntentAction
    from intentvault.protocol.models import Intent
    from intentvault.security.signing import sign_intent

    def make(user, nonce, amount, *, issued_at=None, expiry_window_ms=300_000, public_meta=None):
        meta = {"programId": TEST_PROGRAM_ID}
        meta.update(public_meta or {})
        draft = Intent.draft(
            IntentAction.EXECUTE_SWAP,
            user.address,
            nonce,
            private_values={"amount": amount},
            public_meta=meta,
            expiry_window_ms=expiry_window_ms,
            issued_at=issued_at,
        )
        sealed = draft.with_handles({"amount": fhe.encrypt(amount)})
        return sign_intent(sealed, user)

    return make


# ===========================================================================
# Coordinator
# ===========================================================================


@pytest.fixture
def coordinator_env(vault_env, keyring, tmp_dir):
    from intentvault.coordinator.approval import ApprovalSigner
    from intentvault.coordinator.coordinator import ExecutionCoordinator
    from intentvault.coordinator.ledger import IntentLedger
    from intentvault.coordinator.rate_limit import SlidingWindowRateLimiter
    from intentvault.coordinator.swap import SimulatedSwapEngine
    from intentvault.coordinator.validator import IntentValidator
    from intentvault.security.signing import Keypair

    engine = SimulatedSwapEngine(vault_env.chain)
    ledger_path = os.path.join(tmp_dir, "ledger.jsonl")
    approval_key = Keypair.generate()

    def build(ledger_path=ledger_path, swap_timeout=5.0, vault=None):
        return ExecutionCoordinator(
            vault=vault or vault_env.vault,
            execution=vault_env.execution,
            validator=IntentValidator(SlidingWindowRateLimiter(100, 60.0)),
            ledger=IntentLedger(ledger_path, sync=False),
            swap_engine=engine,
            approval_signer=ApprovalSigner(approval_key, "test-enclave"),
            keyring=keyring,
            swap_timeout=swap_timeout,
        )

    vault_env.engine = engine
    vault_env.approval_key = approval_key
    vault_env.ledger_path = ledger_path
    vault_env.build = build
    vault_env.coordinator = build()
    return vault_env
