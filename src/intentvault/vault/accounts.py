from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Any, Dict, List

from intentvault.protocol.models import CiphertextHandle

EXECUTOR_SEED = "executor"
VAULT_SEED = "vault"
USER_DEPOSIT_SEED = "user_deposit"

# last_nonce of an account that has not executed any intent yet
NO_NONCE = -1


def derive_address(program_id: str, *seeds: str) -> str:
    """Deterministic program-owned address for ``seeds`` under ``program_id``."""
    h = hashlib.sha256()
    for seed in seeds:
        h.update(seed.encode("utf-8"))
        h.update(b"\x00")
    h.update(program_id.encode("utf-8"))
    h.update(b"ProgramDerivedAddress")
    return h.hexdigest()


def executor_address(program_id: str) -> str:
    return derive_address(program_id, EXECUTOR_SEED)


def vault_address(program_id: str) -> str:
    return derive_address(program_id, VAULT_SEED)


def user_deposit_address(program_id: str, user: str) -> str:
    return derive_address(program_id, USER_DEPOSIT_SEED, user)


@dataclass
class ExecutorState:
    authority: str
    execution_account: str
    vault_address: str
    global_nonce_counter: int = 0
    is_initialized: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "authority": self.authority,
            "executionAccount": self.execution_account,
            "vaultAddress": self.vault_address,
            "globalNonceCounter": self.global_nonce_counter,
            "isInitialized": self.is_initialized,
        }


@dataclass
class UserDepositAccount:
    owner: str
    encrypted_balance: CiphertextHandle
    last_nonce: int = NO_NONCE
    refunded_nonces: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "owner": self.owner,
            "encryptedBalance": self.encrypted_balance.to_dict(),
            "lastNonce": self.last_nonce,
            "refundedNonces": list(self.refunded_nonces),
        }
