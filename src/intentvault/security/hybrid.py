"""
Hybrid envelope encryption for intents in transit to the coordinator.

Each envelope carries a fresh AES-256-GCM key and 96-bit IV. The AES key is
wrapped with the coordinator's RSA key using OAEP(SHA-256). The GCM tag is
appended to the ciphertext, so any tampering fails authentication.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import os
from typing import Any, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from intentvault.protocol.errors import EncryptionError, KeyFetchError, SettlementError
from intentvault.protocol.models import EncryptedEnvelope
from intentvault.protocol.validators import validate_envelope
from intentvault.utils.json import canonical_json, json_loads
from intentvault.utils.timestamps import now_ms

from .key_cache import KeyCache

logger = logging.getLogger(__name__)

RSA_KEY_SIZE = 2048
AES_KEY_BYTES = 32
IV_BYTES = 12


def _oaep() -> padding.OAEP:
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(value: str, what: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (ValueError, TypeError) as e:
        raise SettlementError(f"Invalid base64 in envelope {what}: {e}")


class CoordinatorKeyRing:
    """
    The coordinator's RSA-OAEP transport key pair.

    Usage:
        ring = CoordinatorKeyRing.load_or_generate(settings.rsa_key_path)
        plaintext = ring.open_envelope(envelope)
    """

    def __init__(self, private_key: rsa.RSAPrivateKey):
        self._private_key = private_key
        self._public_key = private_key.public_key()
        der = self._public_key.public_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        self._key_id = hashlib.sha256(der).hexdigest()[:16]

    @classmethod
    def generate(cls) -> "CoordinatorKeyRing":
        return cls(rsa.generate_private_key(public_exponent=65537, key_size=RSA_KEY_SIZE))

    @classmethod
    def load_or_generate(cls, path: Optional[str]) -> "CoordinatorKeyRing":
        if path and os.path.exists(path):
            with open(path, "rb") as f:
                key = serialization.load_pem_private_key(f.read(), password=None)
            if not isinstance(key, rsa.RSAPrivateKey):
                raise TypeError(f"Expected RSA private key, got {type(key)}")
            logger.info("Loaded coordinator RSA key from %s", path)
            return cls(key)

        ring = cls.generate()
        if path:
            os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
            with open(path, "wb") as f:
                f.write(ring._private_key.private_bytes(
                    encoding=serialization.Encoding.PEM,
                    format=serialization.PrivateFormat.PKCS8,
                    encryption_algorithm=serialization.NoEncryption(),
                ))
            logger.info("Generated coordinator RSA key at %s", path)
        return ring

    @property
    def key_id(self) -> str:
        return self._key_id

    @property
    def public_key(self) -> rsa.RSAPublicKey:
        return self._public_key

    @property
    def public_pem(self) -> str:
        return self._public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode("ascii")

    def public_key_info(self) -> dict:
        return {
            "pem": self.public_pem,
            "format": "RSA-OAEP",
            "keySize": RSA_KEY_SIZE,
            "keyId": self._key_id,
            "algorithm": "RSA-OAEP",
            "hash": "SHA-256",
        }

    def open_envelope(self, envelope: EncryptedEnvelope) -> bytes:
        """Unwrap the AES key and authenticate-decrypt the payload."""
        validate_envelope(envelope)
        wrapped = _unb64(envelope.wrapped_key, "encryptedKey")
        iv = _unb64(envelope.iv, "iv")
        ciphertext = _unb64(envelope.ciphertext, "ciphertext")
        if len(iv) != IV_BYTES:
            raise SettlementError(f"Envelope IV must be {IV_BYTES} bytes")

        try:
            aes_key = self._private_key.decrypt(wrapped, _oaep())
        except ValueError:
            raise SettlementError("Envelope key unwrap failed")
        if len(aes_key) != AES_KEY_BYTES:
            raise SettlementError("Envelope key has the wrong length")

        try:
            return AESGCM(aes_key).decrypt(iv, ciphertext, None)
        except InvalidTag:
            raise SettlementError("Envelope failed authentication")

    def open_json(self, envelope: EncryptedEnvelope) -> Any:
        return json_loads(self.open_envelope(envelope))


class HybridEncryptor:
    """
    Client-side envelope encryption under the cached coordinator key.

    ``decrypt`` exists for round-trip verification only and is disabled unless
    the encryptor is constructed with ``test_harness=True`` and a key ring.
    """

    def __init__(
        self,
        key_cache: KeyCache,
        *,
        test_harness: bool = False,
        keyring: Optional[CoordinatorKeyRing] = None,
    ):
        self._key_cache = key_cache
        self._test_harness = test_harness
        self._keyring = keyring

    async def encrypt(self, intent_bytes: bytes) -> EncryptedEnvelope:
        try:
            public_key = await self._key_cache.get()
        except KeyFetchError as e:
            raise EncryptionError(f"No coordinator key available: {e}") from e

        aes_key = AESGCM.generate_key(bit_length=256)
        iv = os.urandom(IV_BYTES)
        try:
            ciphertext = AESGCM(aes_key).encrypt(iv, intent_bytes, None)
            wrapped = public_key.encrypt(aes_key, _oaep())
        except (ValueError, TypeError) as e:
            raise EncryptionError(f"Envelope encryption failed: {e}") from e

        return EncryptedEnvelope(
            ciphertext=_b64(ciphertext),
            iv=_b64(iv),
            wrapped_key=_b64(wrapped),
            created_at=now_ms(),
        )

    async def encrypt_json(self, obj: Any) -> EncryptedEnvelope:
        return await self.encrypt(canonical_json(obj))

    def decrypt(self, envelope: EncryptedEnvelope) -> bytes:
        if not self._test_harness:
            raise EncryptionError("decrypt is only available on a test-harness encryptor")
        if self._keyring is None:
            raise EncryptionError("Test-harness decrypt requires the coordinator key ring")
        try:
            return self._keyring.open_envelope(envelope)
        except SettlementError as e:
            raise EncryptionError(str(e)) from e
