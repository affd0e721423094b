from .accounts import (
    NO_NONCE,
    ExecutorState,
    UserDepositAccount,
    derive_address,
    executor_address,
    user_deposit_address,
    vault_address,
)
from .chain import SYSTEM_PROGRAM_ID, AccountMeta, Instruction, LocalChain, Transaction
from .client import VaultClient
from .program import ConfidentialVault

__all__ = [
    "NO_NONCE",
    "ExecutorState",
    "UserDepositAccount",
    "derive_address",
    "executor_address",
    "user_deposit_address",
    "vault_address",
    "SYSTEM_PROGRAM_ID",
    "AccountMeta",
    "Instruction",
    "LocalChain",
    "Transaction",
    "VaultClient",
    "ConfidentialVault",
]
