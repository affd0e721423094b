from enum import Enum


class ErrorCode(str, Enum):
    KEY_FETCH_ERROR = "key_fetch_error"
    ENCRYPTION_ERROR = "encryption_error"
    PRIVACY_PAYLOAD_ERROR = "privacy_payload_error"
    VALIDATION_ERROR = "validation_error"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    TRANSPORT_ERROR = "transport_error"
    CHAIN_ERROR = "chain_error"
    SWAP_ERROR = "swap_error"
    INTERNAL_ERROR = "internal_error"


class RejectReason(str, Enum):
    INVALID_SIGNATURE = "invalid_signature"
    EXPIRED = "expired"
    NONCE_REUSED = "nonce_reused"
    RATE_LIMITED = "rate_limited"


class IntentAction(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    EXECUTE_SWAP = "execute_swap"


class IntentStatus(str, Enum):
    """Settlement lifecycle tracked by the coordinator ledger."""

    RECEIVED = "received"
    REJECTED = "rejected"
    RESERVED = "reserved"
    FINALIZED = "finalized"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (IntentStatus.FINALIZED, IntentStatus.FAILED)


class ValidationState(str, Enum):
    RECEIVED = "received"
    SIGNATURE_CHECKED = "signature_checked"
    EXPIRY_CHECKED = "expiry_checked"
    NONCE_CHECKED = "nonce_checked"
    RATE_CHECKED = "rate_checked"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
