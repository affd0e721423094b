from typing import Any, Dict, Optional
from .enums import ErrorCode, RejectReason


class SettlementError(Exception):
    code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, code: Optional[ErrorCode] = None):
        super().__init__(message)
        if code is not None:
            self.code = code

    def to_envelope(self) -> Dict[str, Any]:
        return {"success": False, "error": str(self), "code": self.code.value}


class KeyFetchError(SettlementError):
    """Raised when the coordinator public key is missing, malformed or unreachable."""

    code = ErrorCode.KEY_FETCH_ERROR


class EncryptionError(SettlementError):
    """Raised when a local cipher operation fails."""

    code = ErrorCode.ENCRYPTION_ERROR


class PrivacyPayloadError(SettlementError):
    """Raised when sensitive fields are missing, malformed or could not be encrypted."""

    code = ErrorCode.PRIVACY_PAYLOAD_ERROR


class ValidationError(SettlementError):
    """Raised when an intent is rejected by the coordinator or the vault."""

    code = ErrorCode.VALIDATION_ERROR
    reason: RejectReason = RejectReason.INVALID_SIGNATURE

    def __init__(self, message: str, reason: Optional[RejectReason] = None):
        super().__init__(message)
        if reason is not None:
            self.reason = reason

    def to_envelope(self) -> Dict[str, Any]:
        env = super().to_envelope()
        env["reason"] = self.reason.value
        return env


class InvalidSignature(ValidationError):
    reason = RejectReason.INVALID_SIGNATURE


class IntentExpired(ValidationError):
    reason = RejectReason.EXPIRED


class NonceReused(ValidationError):
    reason = RejectReason.NONCE_REUSED


class RateLimited(ValidationError):
    reason = RejectReason.RATE_LIMITED

    def __init__(self, message: str, retry_after: float = 0.0):
        super().__init__(message)
        self.retry_after = retry_after


class InsufficientBalance(SettlementError):
    """Raised when the homomorphic sufficiency check fails. The instruction is rolled back."""

    code = ErrorCode.INSUFFICIENT_BALANCE

    def __init__(self, message: str = "Insufficient encrypted balance", tx_id: Optional[str] = None):
        super().__init__(message)
        self.tx_id = tx_id


class TransportError(SettlementError):
    """Raised on network failures and timeouts talking to the coordinator or chain."""

    code = ErrorCode.TRANSPORT_ERROR


class ChainError(SettlementError):
    """Raised when the host chain rejects a transaction."""

    code = ErrorCode.CHAIN_ERROR

    def __init__(self, message: str, tx_id: Optional[str] = None):
        super().__init__(message)
        self.tx_id = tx_id

    def to_envelope(self) -> Dict[str, Any]:
        env = super().to_envelope()
        if self.tx_id:
            env["txId"] = self.tx_id
        return env


class AlreadyInitialized(ChainError):
    """Raised when Initialize runs against an existing executor state."""


class SwapError(SettlementError):
    """Raised by swap engines when a swap could not be executed."""

    code = ErrorCode.SWAP_ERROR


class SwapPending(SwapError):
    """Raised when a timed-out swap is still in flight and its outcome is not known yet."""


_REASON_TO_ERROR = {
    RejectReason.INVALID_SIGNATURE: InvalidSignature,
    RejectReason.EXPIRED: IntentExpired,
    RejectReason.NONCE_REUSED: NonceReused,
    RejectReason.RATE_LIMITED: RateLimited,
}

_CODE_TO_ERROR = {
    ErrorCode.KEY_FETCH_ERROR: KeyFetchError,
    ErrorCode.ENCRYPTION_ERROR: EncryptionError,
    ErrorCode.PRIVACY_PAYLOAD_ERROR: PrivacyPayloadError,
    ErrorCode.TRANSPORT_ERROR: TransportError,
    ErrorCode.SWAP_ERROR: SwapError,
}


def error_from_envelope(body: Dict[str, Any]) -> SettlementError:
    """
    Rebuild a typed error from a coordinator error envelope
    ``{success: false, error, code, reason?, txId?}``.
    """
    message = body.get("error") or "Unknown coordinator error"
    try:
        code = ErrorCode(body.get("code", ErrorCode.INTERNAL_ERROR.value))
    except ValueError:
        code = ErrorCode.INTERNAL_ERROR

    if code == ErrorCode.VALIDATION_ERROR:
        try:
            reason = RejectReason(body.get("reason"))
        except ValueError:
            return ValidationError(message)
        if reason == RejectReason.RATE_LIMITED:
            return RateLimited(message, retry_after=float(body.get("retryAfter") or 0))
        return _REASON_TO_ERROR[reason](message)
    if code == ErrorCode.INSUFFICIENT_BALANCE:
        return InsufficientBalance(message, tx_id=body.get("txId"))
    if code == ErrorCode.CHAIN_ERROR:
        return ChainError(message, tx_id=body.get("txId"))
    if code in _CODE_TO_ERROR:
        return _CODE_TO_ERROR[code](message)
    return SettlementError(message, code)
