"""
Wiring of a coordinator process against the in-process host chain.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from intentvault.core.settings import IntentVaultSettings, get_settings
from intentvault.fhe.memory import InMemoryHomomorphicProvider
from intentvault.security.hybrid import CoordinatorKeyRing
from intentvault.security.signing import Keypair
from intentvault.vault.chain import LocalChain
from intentvault.vault.client import VaultClient
from intentvault.vault.program import ConfidentialVault

from .approval import ApprovalSigner
from .coordinator import ExecutionCoordinator
from .ledger import IntentLedger
from .rate_limit import SlidingWindowRateLimiter
from .swap import SimulatedSwapEngine
from .validator import IntentValidator

logger = logging.getLogger(__name__)


@dataclass
class CoordinatorRuntime:
    settings: IntentVaultSettings
    chain: LocalChain
    fhe: InMemoryHomomorphicProvider
    program: ConfidentialVault
    vault: VaultClient
    keyring: CoordinatorKeyRing
    authority: Keypair
    execution: Keypair
    swap_engine: SimulatedSwapEngine
    coordinator: ExecutionCoordinator
    ip_limiter: SlidingWindowRateLimiter
    started_at: int = 0


async def build_runtime(
    settings: Optional[IntentVaultSettings] = None,
    *,
    ledger_path: Optional[str] = None,
    keyring: Optional[CoordinatorKeyRing] = None,
) -> CoordinatorRuntime:
    """
    Create chain, program, keys, ledger and coordinator, and make sure the
    executor is initialized with this process' execution account.
    """
    settings = settings or get_settings()
    cfg = settings.coordinator

    chain = LocalChain()
    fhe = InMemoryHomomorphicProvider()
    program = ConfidentialVault(settings.chain.program_id, fhe)
    chain.register_program(program)
    vault = VaultClient(chain, program, timeout=settings.client.request_timeout)

    keyring = keyring or CoordinatorKeyRing.load_or_generate(cfg.rsa_key_path)
    signer_key = Keypair.load_or_generate(cfg.signing_key_path)
    execution = Keypair.load_or_generate(cfg.execution_key_path)
    authority = Keypair.generate()

    await vault.ensure_initialized(authority, execution.address)

    swap_engine = SimulatedSwapEngine(chain)
    validator = IntentValidator(
        SlidingWindowRateLimiter(cfg.rate_limit_requests, cfg.rate_limit_window),
        clock_skew_ms=cfg.clock_skew_ms,
        max_age_ms=cfg.max_intent_age_ms,
    )
    coordinator = ExecutionCoordinator(
        vault=vault,
        execution=execution,
        validator=validator,
        ledger=IntentLedger(ledger_path if ledger_path is not None else cfg.ledger_path),
        swap_engine=swap_engine,
        approval_signer=ApprovalSigner(signer_key, cfg.enclave_id),
        keyring=keyring,
        swap_timeout=cfg.swap_timeout,
    )
    logger.info(
        "Coordinator runtime ready: program=%s execution=%s key=%s",
        program.program_id, execution.address[:16], keyring.key_id,
    )
    return CoordinatorRuntime(
        settings=settings,
        chain=chain,
        fhe=fhe,
        program=program,
        vault=vault,
        keyring=keyring,
        authority=authority,
        execution=execution,
        swap_engine=swap_engine,
        coordinator=coordinator,
        ip_limiter=SlidingWindowRateLimiter(cfg.rate_limit_requests, cfg.rate_limit_window),
    )
