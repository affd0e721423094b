"""
Async instruction builder for the confidential vault.

Each call builds one signed transaction with the fixed per-role account
order the program expects and submits it to the host chain off the event
loop, bounded by ``timeout``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from intentvault.protocol.errors import AlreadyInitialized, ChainError, TransportError
from intentvault.protocol.models import SignedIntent
from intentvault.security.signing import Keypair

from .accounts import NO_NONCE, ExecutorState, UserDepositAccount
from .chain import AccountMeta, Instruction, LocalChain, Transaction
from .program import (
    DEPOSIT,
    EXECUTE_WITH_INTENT,
    INITIALIZE,
    REFUND_TO_DEPOSIT,
    WITHDRAW,
    ConfidentialVault,
)

logger = logging.getLogger(__name__)


class VaultClient:
    def __init__(self, chain: LocalChain, program: ConfidentialVault, *, timeout: float = 30.0):
        self.chain = chain
        self.program = program
        self.program_id = program.program_id
        self._timeout = timeout

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------
    async def _send(self, ix: Instruction, *signers: Keypair) -> str:
        tx = Transaction([ix], fee_payer=signers[0].address).sign(*signers)
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.chain.send_transaction, tx),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            raise TransportError(f"Chain did not confirm {ix.name} within {self._timeout}s")

    def _ix(self, name: str, accounts: list, **data) -> Instruction:
        return Instruction(program_id=self.program_id, name=name, accounts=accounts, data=data)

    # ------------------------------------------------------------------
    # Instructions
    # ------------------------------------------------------------------
    async def initialize(self, authority: Keypair, execution_account: str) -> str:
        ix = self._ix(INITIALIZE, [
            AccountMeta(self.program.executor_address, is_writable=True),
            AccountMeta(self.program.vault_address, is_writable=True),
            AccountMeta(authority.address, is_signer=True, is_writable=True),
        ], executionAccount=execution_account)
        return await self._send(ix, authority)

    async def ensure_initialized(self, authority: Keypair, execution_account: str) -> Optional[str]:
        """Initialize unless an executor with the same configuration already exists."""
        try:
            return await self.initialize(authority, execution_account)
        except AlreadyInitialized:
            state = await self.get_executor_state()
            if state is None or state.execution_account != execution_account:
                raise ChainError("Executor already initialized with a different execution account")
            logger.info("Executor already initialized; reusing existing state")
            return None

    async def deposit(self, user: Keypair, lamports: int) -> str:
        ix = self._ix(DEPOSIT, [
            AccountMeta(self.program.vault_address, is_writable=True),
            AccountMeta(user.address, is_signer=True, is_writable=True),
            AccountMeta(self.program.user_deposit_address(user.address), is_writable=True),
        ], amount=lamports)
        return await self._send(ix, user)

    async def withdraw(self, user: Keypair, lamports: int) -> str:
        ix = self._ix(WITHDRAW, [
            AccountMeta(self.program.vault_address, is_writable=True),
            AccountMeta(user.address, is_signer=True, is_writable=True),
            AccountMeta(self.program.user_deposit_address(user.address), is_writable=True),
        ], amount=lamports)
        return await self._send(ix, user)

    async def execute_with_intent(self, execution: Keypair, signed: SignedIntent, lamports: int) -> str:
        user = signed.intent.user
        ix = self._ix(EXECUTE_WITH_INTENT, [
            AccountMeta(self.program.executor_address, is_writable=True),
            AccountMeta(self.program.vault_address, is_writable=True),
            AccountMeta(self.program.user_deposit_address(user), is_writable=True),
            AccountMeta(user),
            AccountMeta(execution.address, is_signer=True, is_writable=True),
        ], signedIntent=signed.to_dict(), amount=lamports)
        return await self._send(ix, execution)

    async def refund_to_deposit(self, execution: Keypair, user: str, lamports: int, nonce: int) -> str:
        ix = self._ix(REFUND_TO_DEPOSIT, [
            AccountMeta(self.program.executor_address),
            AccountMeta(self.program.vault_address, is_writable=True),
            AccountMeta(self.program.user_deposit_address(user), is_writable=True),
            AccountMeta(user),
            AccountMeta(execution.address, is_signer=True, is_writable=True),
        ], amount=lamports, nonce=nonce)
        return await self._send(ix, execution)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def get_executor_state(self) -> Optional[ExecutorState]:
        return await asyncio.to_thread(self.chain.get_account_data, self.program.executor_address)

    async def get_user_deposit(self, user: str) -> Optional[UserDepositAccount]:
        return await asyncio.to_thread(
            self.chain.get_account_data, self.program.user_deposit_address(user)
        )

    async def get_last_nonce(self, user: str) -> int:
        account = await self.get_user_deposit(user)
        return account.last_nonce if account is not None else NO_NONCE

    async def get_balance(self, address: str) -> int:
        return await asyncio.to_thread(self.chain.get_balance, address)
