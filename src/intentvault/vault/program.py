"""
Confidential vault program.

User balances are ciphertext handles; the program only ever combines and
compares them through the HomomorphicProvider and never sees a plaintext
balance. Lamports backing the balances sit in the vault address.

Account order per instruction (by role):

    initialize          executor(w), vault(w), authority(s, w)
    deposit             vault(w), user(s, w), user_deposit(w)
    withdraw            vault(w), user(s, w), user_deposit(w)
    execute_with_intent executor(w), vault(w), user_deposit(w), user, execution_account(s, w)
    refund_to_deposit   executor, vault(w), user_deposit(w), user, execution_account(s, w)
"""

from __future__ import annotations

import logging

from intentvault.fhe.base import HomomorphicProvider
from intentvault.protocol.enums import IntentAction
from intentvault.protocol.errors import (
    AlreadyInitialized,
    ChainError,
    InsufficientBalance,
    IntentExpired,
    InvalidSignature,
    NonceReused,
    PrivacyPayloadError,
)
from intentvault.protocol.models import SignedIntent
from intentvault.security.signing import verify_intent_signature

from .accounts import (
    ExecutorState,
    UserDepositAccount,
    executor_address,
    user_deposit_address,
    vault_address,
)
from .chain import Instruction, InstructionContext

logger = logging.getLogger(__name__)

INITIALIZE = "initialize"
DEPOSIT = "deposit"
WITHDRAW = "withdraw"
EXECUTE_WITH_INTENT = "execute_with_intent"
REFUND_TO_DEPOSIT = "refund_to_deposit"


def _amount(ix: Instruction) -> int:
    value = ix.data.get("amount")
    if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
        raise ChainError("Invalid amount: must be greater than 0")
    return value


class ConfidentialVault:
    def __init__(self, program_id: str, fhe: HomomorphicProvider):
        self.program_id = program_id
        self.fhe = fhe
        self.executor_address = executor_address(program_id)
        self.vault_address = vault_address(program_id)

    def user_deposit_address(self, user: str) -> str:
        return user_deposit_address(self.program_id, user)

    def process(self, ctx: InstructionContext, ix: Instruction) -> None:
        handler = {
            INITIALIZE: self._initialize,
            DEPOSIT: self._deposit,
            WITHDRAW: self._withdraw,
            EXECUTE_WITH_INTENT: self._execute_with_intent,
            REFUND_TO_DEPOSIT: self._refund_to_deposit,
        }.get(ix.name)
        if handler is None:
            raise ChainError(f"Unknown instruction {ix.name!r}")
        handler(ctx, ix)

    # -- account helpers ------------------------------------------------

    def _expect(self, ctx: InstructionContext, index: int, address: str, role: str) -> None:
        if ctx.account(index).address != address:
            raise ChainError(f"Account #{index} is not the {role} address")

    def _executor(self, ctx: InstructionContext) -> ExecutorState:
        self._expect(ctx, 0, self.executor_address, "executor")
        state = ctx.get_data(self.executor_address)
        if not isinstance(state, ExecutorState) or not state.is_initialized:
            raise ChainError("Executor is not initialized")
        return state

    def _execution_account(self, ctx: InstructionContext, state: ExecutorState) -> str:
        execution = ctx.account(4).address
        if execution != state.execution_account:
            raise ChainError("Unauthorized execution account")
        if not ctx.is_signer(execution):
            raise ChainError("Execution account must sign")
        return execution

    def _deposit_account(self, ctx: InstructionContext, index: int, user: str) -> UserDepositAccount:
        address = self.user_deposit_address(user)
        self._expect(ctx, index, address, "user deposit")
        account = ctx.get_data(address)
        if not isinstance(account, UserDepositAccount):
            raise ChainError("User has no deposit account")
        if account.owner != user:
            raise ChainError("Unauthorized user")
        return account

    def _claim_vault(self, ctx: InstructionContext) -> None:
        # program ownership of the vault is what allows it to be debited
        if ctx.get_data(self.vault_address) is None:
            ctx.set_data(self.vault_address, {"kind": "vault"})

    # -- instructions ---------------------------------------------------

    def _initialize(self, ctx: InstructionContext, ix: Instruction) -> None:
        self._expect(ctx, 0, self.executor_address, "executor")
        self._expect(ctx, 1, self.vault_address, "vault")
        authority = ctx.account(2).address
        if not ctx.is_signer(authority):
            raise ChainError("Authority must sign")
        if ctx.get_data(self.executor_address) is not None:
            raise AlreadyInitialized("Executor already initialized")

        execution_account = ix.data.get("executionAccount")
        if not isinstance(execution_account, str) or not execution_account:
            raise ChainError("Missing execution account")

        ctx.set_data(self.executor_address, ExecutorState(
            authority=authority,
            execution_account=execution_account,
            vault_address=self.vault_address,
        ))
        self._claim_vault(ctx)
        logger.info("Executor initialized with execution account %s", execution_account[:16])

    def _deposit(self, ctx: InstructionContext, ix: Instruction) -> None:
        self._expect(ctx, 0, self.vault_address, "vault")
        user = ctx.account(1).address
        if not ctx.is_signer(user):
            raise ChainError("Depositor must sign")
        amount = _amount(ix)
        address = self.user_deposit_address(user)
        self._expect(ctx, 2, address, "user deposit")

        self._claim_vault(ctx)
        ctx.transfer(user, self.vault_address, amount)

        account = ctx.get_data(address)
        if account is None:
            account = UserDepositAccount(owner=user, encrypted_balance=self.fhe.as_encrypted(0))
        elif account.owner != user:
            raise ChainError("Unauthorized user")
        account.encrypted_balance = self.fhe.add(account.encrypted_balance, self.fhe.as_encrypted(amount))
        ctx.set_data(address, account)
        logger.debug("Deposited %d lamports for %s", amount, user[:16])

    def _withdraw(self, ctx: InstructionContext, ix: Instruction) -> None:
        self._expect(ctx, 0, self.vault_address, "vault")
        user = ctx.account(1).address
        if not ctx.is_signer(user):
            raise ChainError("Withdrawer must sign")
        amount = _amount(ix)
        account = self._deposit_account(ctx, 2, user)

        requested = self.fhe.as_encrypted(amount)
        if not self.fhe.ge(account.encrypted_balance, requested):
            raise InsufficientBalance("Insufficient funds")
        account.encrypted_balance = self.fhe.sub(account.encrypted_balance, requested)
        ctx.set_data(self.user_deposit_address(user), account)
        ctx.transfer(self.vault_address, user, amount)
        logger.debug("Withdrew %d lamports for %s", amount, user[:16])

    def _execute_with_intent(self, ctx: InstructionContext, ix: Instruction) -> None:
        state = self._executor(ctx)
        self._expect(ctx, 1, self.vault_address, "vault")
        execution = self._execution_account(ctx, state)
        user = ctx.account(3).address
        account = self._deposit_account(ctx, 2, user)
        amount = _amount(ix)

        signed = SignedIntent.from_dict(ix.data.get("signedIntent") or {})
        intent = signed.intent
        if ctx.now_ms > intent.expires_at:
            raise IntentExpired("Intent expired before execution")
        if intent.user != user or not verify_intent_signature(signed, expected_user=account.owner):
            raise InvalidSignature("Intent signature does not match the deposit owner")
        if intent.action != IntentAction.EXECUTE_SWAP:
            raise ChainError(f"Intent action {intent.action.value!r} cannot be executed")
        program_id = intent.public_meta.get("programId")
        if program_id is not None and program_id != self.program_id:
            raise ChainError("Intent targets a different program")
        if intent.nonce <= account.last_nonce:
            raise NonceReused(f"Nonce {intent.nonce} already used (last={account.last_nonce})")

        handle = intent.sensitive_fields.get("amount")
        if handle is None:
            raise PrivacyPayloadError("Intent has no encrypted amount")
        if not self.fhe.eq(handle, self.fhe.as_encrypted(amount)):
            raise ChainError("Encrypted amount does not match the execution amount")
        if not self.fhe.ge(account.encrypted_balance, handle):
            raise InsufficientBalance("Insufficient funds")

        account.encrypted_balance = self.fhe.sub(account.encrypted_balance, handle)
        account.last_nonce = intent.nonce
        state.global_nonce_counter += 1
        ctx.set_data(self.user_deposit_address(user), account)
        ctx.set_data(self.executor_address, state)
        ctx.transfer(self.vault_address, execution, amount)
        logger.info("Executed intent %s nonce=%d for %s", signed.intent_hash[:18], intent.nonce, user[:16])

    def _refund_to_deposit(self, ctx: InstructionContext, ix: Instruction) -> None:
        state = self._executor(ctx)
        self._expect(ctx, 1, self.vault_address, "vault")
        execution = self._execution_account(ctx, state)
        user = ctx.account(3).address
        account = self._deposit_account(ctx, 2, user)
        amount = _amount(ix)

        nonce = ix.data.get("nonce")
        if not isinstance(nonce, int) or nonce > account.last_nonce:
            raise ChainError("Refund references an intent that was never executed")
        if nonce in account.refunded_nonces:
            raise ChainError(f"Intent nonce {nonce} already refunded")

        ctx.transfer(execution, self.vault_address, amount)
        account.encrypted_balance = self.fhe.add(account.encrypted_balance, self.fhe.as_encrypted(amount))
        account.refunded_nonces.append(nonce)
        ctx.set_data(self.user_deposit_address(user), account)
        logger.info("Refunded %d lamports to %s for nonce %d", amount, user[:16], nonce)
