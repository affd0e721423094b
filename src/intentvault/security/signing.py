"""
Ed25519 signing for intents, transactions and coordinator approvals.

Identities are the hex encoding of the raw 32-byte Ed25519 public key.
Verification is offline: the verifying key is derived from the identity.
"""

from __future__ import annotations

import hashlib
import os
from typing import Optional

from cryptography.exceptions import InvalidSignature as _BadSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from intentvault.protocol.errors import PrivacyPayloadError
from intentvault.protocol.models import Approval, Intent, SignedIntent


class Keypair:
    """
    Ed25519 key pair.

    Usage:
        kp = Keypair.generate()
        sig = kp.sign(b"data")
        assert verify_signature(kp.address, b"data", sig.hex())
    """

    def __init__(self, private_key: Ed25519PrivateKey):
        self._private_key = private_key
        self._public_key = private_key.public_key()
        self._public_bytes = self._public_key.public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )

    @property
    def address(self) -> str:
        """Hex of the raw public key; used as the on-chain and intent identity."""
        return self._public_bytes.hex()

    @property
    def key_id(self) -> str:
        return hashlib.sha256(self._public_bytes).hexdigest()[:16]

    @property
    def public_key_bytes(self) -> bytes:
        return self._public_bytes

    def sign(self, data: bytes) -> bytes:
        """Returns a 64-byte signature."""
        return self._private_key.sign(data)

    @classmethod
    def generate(cls) -> "Keypair":
        return cls(Ed25519PrivateKey.generate())

    @classmethod
    def from_pem_file(cls, path: str, password: Optional[bytes] = None) -> "Keypair":
        with open(path, "rb") as f:
            private_key = serialization.load_pem_private_key(f.read(), password=password)
        if not isinstance(private_key, Ed25519PrivateKey):
            raise TypeError(f"Expected Ed25519 private key, got {type(private_key)}")
        return cls(private_key)

    @classmethod
    def load_or_generate(cls, path: Optional[str]) -> "Keypair":
        """Load from ``path`` if it exists, otherwise generate (and persist when a path is given)."""
        if path and os.path.exists(path):
            return cls.from_pem_file(path)
        kp = cls.generate()
        if path:
            os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
            with open(path, "wb") as f:
                f.write(kp.export_private_pem())
        return kp

    def export_private_pem(self) -> bytes:
        return self._private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )


def verify_signature(address: str, data: bytes, signature_hex: str) -> bool:
    """
    Verify a detached signature against a hex identity.
    Returns False for malformed identities or signatures rather than raising.
    """
    try:
        public_key = Ed25519PublicKey.from_public_bytes(bytes.fromhex(address))
        signature = bytes.fromhex(signature_hex)
    except ValueError:
        return False
    if len(signature) != 64:
        return False
    try:
        public_key.verify(signature, data)
        return True
    except _BadSignature:
        return False


def sign_intent(intent: Intent, keypair: Keypair) -> SignedIntent:
    """Sign the canonical bytes of an intent whose sensitive fields are already handles."""
    if intent.user != keypair.address:
        raise PrivacyPayloadError("Intent user does not match the signing key")
    return SignedIntent(intent=intent, signature=keypair.sign(intent.canonical_bytes()).hex())


def verify_intent_signature(signed: SignedIntent, expected_user: Optional[str] = None) -> bool:
    user = expected_user if expected_user is not None else signed.intent.user
    if user != signed.intent.user:
        return False
    return verify_signature(user, signed.intent.canonical_bytes(), signed.signature)


def sign_approval(approval: Approval, keypair: Keypair) -> Approval:
    approval.signature = keypair.sign(approval.signing_payload()).hex()
    return approval


def verify_approval(approval: Approval, coordinator_address: str) -> bool:
    if not approval.signature:
        return False
    return verify_signature(coordinator_address, approval.signing_payload(), approval.signature)
