from .enums import ErrorCode, IntentAction, IntentStatus, RejectReason, ValidationState
from .errors import (
    AlreadyInitialized,
    ChainError,
    EncryptionError,
    InsufficientBalance,
    IntentExpired,
    InvalidSignature,
    KeyFetchError,
    NonceReused,
    PrivacyPayloadError,
    RateLimited,
    SettlementError,
    SwapError,
    TransportError,
    ValidationError,
    error_from_envelope,
)
from .models import (
    LAMPORTS_PER_SOL,
    Approval,
    CiphertextHandle,
    EncryptedEnvelope,
    Intent,
    SettlementRequest,
    SettlementResult,
    SignedIntent,
    SwapParams,
    to_lamports,
)

__all__ = [
    "ErrorCode",
    "IntentAction",
    "IntentStatus",
    "RejectReason",
    "ValidationState",
    "AlreadyInitialized",
    "ChainError",
    "EncryptionError",
    "InsufficientBalance",
    "IntentExpired",
    "InvalidSignature",
    "KeyFetchError",
    "NonceReused",
    "PrivacyPayloadError",
    "RateLimited",
    "SettlementError",
    "SwapError",
    "TransportError",
    "ValidationError",
    "error_from_envelope",
    "LAMPORTS_PER_SOL",
    "Approval",
    "CiphertextHandle",
    "EncryptedEnvelope",
    "Intent",
    "SettlementRequest",
    "SettlementResult",
    "SignedIntent",
    "SwapParams",
    "to_lamports",
]
