from __future__ import annotations

import hashlib
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional, Union

from intentvault.utils.json import canonical_json
from intentvault.utils.timestamps import now_ms

from .enums import IntentAction
from .errors import PrivacyPayloadError, SettlementError

INTENT_VERSION = "1.0.0"
LAMPORTS_PER_SOL = 1_000_000_000

PlainValue = Union[int, bool]


def to_lamports(sol: Union[str, int, float, Decimal]) -> int:
    """Convert a SOL amount to integer lamports without float rounding."""
    try:
        value = Decimal(str(sol)) * LAMPORTS_PER_SOL
    except InvalidOperation:
        raise ValueError(f"Invalid SOL amount: {sol!r}")
    if value < 0 or value != value.to_integral_value():
        raise ValueError(f"SOL amount must be non-negative with at most 9 decimals: {sol!r}")
    return int(value)


def _object(value: Any, what: str, error: type = SettlementError) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise error(f"{what} must be a JSON object")
    return value


# -------------------------
# CIPHERTEXT HANDLES
# -------------------------

@dataclass(frozen=True)
class CiphertextHandle:
    """
    Opaque reference to a value encrypted under the homomorphic scheme.
    ``format`` names the scheme, ``bytes`` is a size hint of the ciphertext.
    """
    format: str
    ciphertext: str  # hex
    bytes: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"format": self.format, "ciphertext": self.ciphertext, "bytes": self.bytes}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CiphertextHandle":
        data = _object(data, "Ciphertext handle", PrivacyPayloadError)
        ciphertext = data.get("ciphertext")
        if not isinstance(ciphertext, str) or not ciphertext:
            raise PrivacyPayloadError("Ciphertext handle is missing its ciphertext")
        return cls(
            format=str(data.get("format") or "unknown"),
            ciphertext=ciphertext,
            bytes=int(data.get("bytes") or len(ciphertext) // 2),
        )


# -------------------------
# INTENTS
# -------------------------

@dataclass(frozen=True)
class Intent:
    """
    User-authorized description of a desired operation.

    ``private_values`` only exists on drafts, before HandleBuilder.attach()
    replaces them with ciphertext handles. It is never serialized.
    """
    action: IntentAction
    user: str
    nonce: int
    issued_at: int
    expires_at: int
    sensitive_fields: Dict[str, CiphertextHandle] = field(default_factory=dict)
    public_meta: Dict[str, Any] = field(default_factory=dict)
    version: str = INTENT_VERSION
    private_values: Dict[str, PlainValue] = field(default_factory=dict, compare=False, repr=False)

    def __post_init__(self):
        if not isinstance(self.nonce, int) or isinstance(self.nonce, bool) or self.nonce < 0:
            raise ValueError("nonce must be an unsigned integer")
        if self.expires_at < self.issued_at:
            raise ValueError("expires_at must not precede issued_at")

    @classmethod
    def draft(
        cls,
        action: IntentAction,
        user: str,
        nonce: int,
        *,
        private_values: Optional[Dict[str, PlainValue]] = None,
        public_meta: Optional[Dict[str, Any]] = None,
        expiry_window_ms: int = 300_000,
        issued_at: Optional[int] = None,
    ) -> "Intent":
        issued = issued_at if issued_at is not None else now_ms()
        return cls(
            action=IntentAction(action),
            user=user,
            nonce=nonce,
            issued_at=issued,
            expires_at=issued + expiry_window_ms,
            public_meta=dict(public_meta or {}),
            private_values=dict(private_values or {}),
        )

    def with_handles(self, handles: Dict[str, CiphertextHandle]) -> "Intent":
        return replace(self, sensitive_fields=dict(handles), private_values={})

    def to_dict(self) -> Dict[str, Any]:
        if self.private_values:
            raise PrivacyPayloadError(
                "Intent still carries plaintext sensitive values; attach handles first"
            )
        return {
            "version": self.version,
            "action": self.action.value,
            "user": self.user,
            "nonce": self.nonce,
            "issuedAt": self.issued_at,
            "expiresAt": self.expires_at,
            "sensitiveFields": {k: v.to_dict() for k, v in sorted(self.sensitive_fields.items())},
            "publicMeta": dict(self.public_meta),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Intent":
        data = _object(data, "Intent")
        fields = _object(data.get("sensitiveFields") or {}, "sensitiveFields", PrivacyPayloadError)
        try:
            return cls(
                action=IntentAction(data["action"]),
                user=str(data["user"]),
                nonce=int(data["nonce"]),
                issued_at=int(data["issuedAt"]),
                expires_at=int(data["expiresAt"]),
                sensitive_fields={k: CiphertextHandle.from_dict(v) for k, v in fields.items()},
                public_meta=dict(data.get("publicMeta") or {}),
                version=str(data.get("version", INTENT_VERSION)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise SettlementError(f"Malformed intent: {e}")

    def canonical_bytes(self) -> bytes:
        return canonical_json(self.to_dict())

    @property
    def intent_hash(self) -> str:
        return "0x" + hashlib.sha256(self.canonical_bytes()).hexdigest()


@dataclass(frozen=True)
class SignedIntent:
    intent: Intent
    signature: str  # hex, 64-byte Ed25519

    @property
    def intent_hash(self) -> str:
        return self.intent.intent_hash

    @property
    def user(self) -> str:
        return self.intent.user

    @property
    def nonce(self) -> int:
        return self.intent.nonce

    def to_dict(self) -> Dict[str, Any]:
        data = self.intent.to_dict()
        data["signature"] = self.signature
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SignedIntent":
        body = dict(_object(data, "signedIntent"))
        signature = body.pop("signature", None)
        if not isinstance(signature, str) or not signature:
            raise SettlementError("Signed intent is missing its signature")
        return cls(intent=Intent.from_dict(body), signature=signature)


# -------------------------
# TRANSPORT ENVELOPE
# -------------------------

@dataclass(frozen=True)
class EncryptedEnvelope:
    ciphertext: str  # base64, AES-GCM output with tag
    iv: str  # base64, 96-bit
    wrapped_key: str  # base64, RSA-OAEP
    key_wrap_algorithm: str = "rsa-oaep"
    symmetric_algorithm: str = "AES-GCM"
    encryption_type: str = "hybrid"
    created_at: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ciphertext": self.ciphertext,
            "encryptedKey": self.wrapped_key,
            "encryptedKeyFormat": self.key_wrap_algorithm,
            "iv": self.iv,
            "algorithm": self.symmetric_algorithm,
            "encryptionType": self.encryption_type,
            "timestamp": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EncryptedEnvelope":
        data = _object(data, "Encrypted envelope")
        try:
            return cls(
                ciphertext=data["ciphertext"],
                iv=data["iv"],
                wrapped_key=data["encryptedKey"],
                key_wrap_algorithm=data.get("encryptedKeyFormat", ""),
                symmetric_algorithm=data.get("algorithm", ""),
                encryption_type=data.get("encryptionType", ""),
                created_at=int(data.get("timestamp") or 0),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise SettlementError(f"Malformed encrypted envelope: {e}")


# -------------------------
# SETTLEMENT
# -------------------------

@dataclass(frozen=True)
class SwapParams:
    """Plain routing parameters, only ever sent to the coordinator inside an envelope."""
    input_mint: str
    output_mint: str
    amount_in: int
    slippage: float = 0.01
    pool_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "inputMint": self.input_mint,
            "outputMint": self.output_mint,
            "amountIn": self.amount_in,
            "slippage": self.slippage,
            "poolId": self.pool_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SwapParams":
        data = _object(data, "swap")
        try:
            amount = int(data["amountIn"])
        except (KeyError, TypeError, ValueError):
            raise SettlementError("Missing or invalid swap amount")
        if amount <= 0:
            raise SettlementError(f"Swap amount must be positive, got {amount}")
        if not data.get("inputMint") or not data.get("outputMint"):
            raise SettlementError("Missing swap params (inputMint/outputMint)")
        return cls(
            input_mint=str(data["inputMint"]),
            output_mint=str(data["outputMint"]),
            amount_in=amount,
            slippage=float(data.get("slippage", 0.01)),
            pool_id=data.get("poolId"),
        )


@dataclass(frozen=True)
class SettlementRequest:
    signed_intent: SignedIntent
    swap: SwapParams

    def to_dict(self) -> Dict[str, Any]:
        return {"signedIntent": self.signed_intent.to_dict(), "swap": self.swap.to_dict()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SettlementRequest":
        if "signedIntent" not in data or "swap" not in data:
            raise SettlementError("Settlement request requires signedIntent and swap")
        return cls(
            signed_intent=SignedIntent.from_dict(data["signedIntent"]),
            swap=SwapParams.from_dict(data["swap"]),
        )


@dataclass
class SettlementResult:
    intent_hash: str
    user: str
    nonce: int
    status: str
    reserve_tx: Optional[str] = None
    swap_tx: Optional[str] = None
    output_tx: Optional[str] = None
    refund_tx: Optional[str] = None
    amount_out: Optional[int] = None
    error: Optional[str] = None

    @property
    def finalized(self) -> bool:
        return self.status == "finalized"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.finalized,
            "intentHash": self.intent_hash,
            "user": self.user,
            "nonce": self.nonce,
            "status": self.status,
            "reserveTx": self.reserve_tx,
            "swapTx": self.swap_tx,
            "outputTx": self.output_tx,
            "refundTx": self.refund_tx,
            "amountOut": self.amount_out,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SettlementResult":
        return cls(
            intent_hash=data["intentHash"],
            user=data["user"],
            nonce=int(data["nonce"]),
            status=data["status"],
            reserve_tx=data.get("reserveTx"),
            swap_tx=data.get("swapTx"),
            output_tx=data.get("outputTx"),
            refund_tx=data.get("refundTx"),
            amount_out=data.get("amountOut"),
            error=data.get("error"),
        )


@dataclass
class Approval:
    """
    Coordinator approval of an intent. ``mock`` marks the development
    fallback produced client-side when the coordinator is unreachable.
    """
    approved: bool
    intent_hash: str
    enclave_id: str
    execution_plan: Dict[str, Any] = field(default_factory=dict)
    signature: Optional[str] = None
    timestamp: int = field(default_factory=now_ms)
    mock: bool = False

    def signing_payload(self) -> bytes:
        return canonical_json({
            "intentHash": self.intent_hash,
            "executionPlan": self.execution_plan,
            "enclaveId": self.enclave_id,
            "timestamp": self.timestamp,
        })

    def to_dict(self) -> Dict[str, Any]:
        return {
            "approved": self.approved,
            "intentHash": self.intent_hash,
            "enclaveId": self.enclave_id,
            "executionPlan": self.execution_plan,
            "signature": self.signature,
            "timestamp": self.timestamp,
            "mock": self.mock,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Approval":
        return cls(
            approved=bool(data.get("approved")),
            intent_hash=data.get("intentHash", ""),
            enclave_id=data.get("enclaveId", ""),
            execution_plan=data.get("executionPlan") or {},
            signature=data.get("signature"),
            timestamp=int(data.get("timestamp") or 0),
            mock=bool(data.get("mock", False)),
        )
