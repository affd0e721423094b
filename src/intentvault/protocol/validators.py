from typing import Any, Dict

from .errors import PrivacyPayloadError, SettlementError
from .models import EncryptedEnvelope, SettlementRequest

SUPPORTED_WRAP_ALGORITHMS = ("rsa-oaep",)
SUPPORTED_SYMMETRIC_ALGORITHMS = ("AES-GCM",)


def validate_envelope(env: EncryptedEnvelope) -> None:
    if env.key_wrap_algorithm not in SUPPORTED_WRAP_ALGORITHMS:
        raise SettlementError(f"Unsupported key wrap algorithm: {env.key_wrap_algorithm!r}")
    if env.symmetric_algorithm not in SUPPORTED_SYMMETRIC_ALGORITHMS:
        raise SettlementError(f"Unsupported cipher: {env.symmetric_algorithm!r}")
    if env.encryption_type != "hybrid":
        raise SettlementError(f"Unsupported encryption type: {env.encryption_type!r}")


def validate_plain_value(name: str, value: Any) -> int:
    """
    Normalize a sensitive value to an unsigned integer.
    Accepts bools, non-negative ints and decimal digit strings.
    """
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        if value < 0:
            raise PrivacyPayloadError(f"Sensitive field {name!r} must be non-negative")
        return value
    if isinstance(value, str) and value.isdigit():
        return int(value)
    raise PrivacyPayloadError(
        f"Sensitive field {name!r} has unsupported type {type(value).__name__}"
    )


def validate_settlement_request(req: SettlementRequest) -> None:
    intent = req.signed_intent.intent
    if "amount" not in intent.sensitive_fields:
        raise PrivacyPayloadError("Settlement intent is missing the encrypted amount handle")
    if not intent.user:
        raise SettlementError("Intent user must be set")


def parse_settle_body(body: Dict[str, Any]) -> Dict[str, Any]:
    """Return the raw request dict from either an encrypted or a plain settle body."""
    if not isinstance(body, dict):
        raise SettlementError("Request body must be a JSON object")
    if "encryptedIntent" in body:
        enc = body["encryptedIntent"]
        if not isinstance(enc, dict):
            raise SettlementError("encryptedIntent must be an object")
        return enc
    return body
