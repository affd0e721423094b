"""
In-process homomorphic provider for development and tests.

Ciphertexts are random 32-byte tokens; the plaintext lives in a private
table keyed by the sha256 of the token. Nothing in the handle reveals the
value, which is enough to exercise the vault's encrypted-balance logic.

Trivial encryptions of public values (``as_encrypted``) are derived from the
value under a per-provider secret, so each distinct value takes one table
entry. Results of ``add`` and ``sub`` are kept for the lifetime of the
provider: a long-running dev server grows by one entry per balance change.
"""

from __future__ import annotations

import hashlib
import hmac
import os
import threading
from typing import Dict, Optional

from intentvault.protocol.errors import PrivacyPayloadError
from intentvault.protocol.models import CiphertextHandle

from .base import U128_MODULUS

HANDLE_FORMAT = "sha256"


class InMemoryHomomorphicProvider:
    format = HANDLE_FORMAT

    def __init__(self):
        self._values: Dict[str, int] = {}
        self._lock = threading.Lock()
        self._trivial_key = os.urandom(32)

    def handle_count(self) -> int:
        with self._lock:
            return len(self._values)

    def _new_handle(self, value: int, token: Optional[bytes] = None) -> CiphertextHandle:
        token = token or os.urandom(32)
        with self._lock:
            self._values[hashlib.sha256(token).hexdigest()] = value % U128_MODULUS
        return CiphertextHandle(format=self.format, ciphertext=token.hex(), bytes=len(token))

    def _value(self, handle: CiphertextHandle) -> int:
        if handle.format != self.format:
            raise PrivacyPayloadError(f"Unsupported handle format {handle.format!r}")
        try:
            key = hashlib.sha256(bytes.fromhex(handle.ciphertext)).hexdigest()
        except ValueError:
            raise PrivacyPayloadError("Ciphertext handle is not valid hex")
        with self._lock:
            if key not in self._values:
                raise PrivacyPayloadError("Unknown ciphertext handle")
            return self._values[key]

    def encrypt(self, value: int) -> CiphertextHandle:
        if value < 0:
            raise PrivacyPayloadError("Only unsigned values can be encrypted")
        return self._new_handle(value)

    def as_encrypted(self, value: int) -> CiphertextHandle:
        value %= U128_MODULUS
        token = hmac.new(self._trivial_key, str(value).encode("ascii"), hashlib.sha256).digest()
        return self._new_handle(value, token)

    def add(self, a: CiphertextHandle, b: CiphertextHandle) -> CiphertextHandle:
        return self._new_handle(self._value(a) + self._value(b))

    def sub(self, a: CiphertextHandle, b: CiphertextHandle) -> CiphertextHandle:
        return self._new_handle(self._value(a) - self._value(b))

    def ge(self, a: CiphertextHandle, b: CiphertextHandle) -> bool:
        return self._value(a) >= self._value(b)

    def eq(self, a: CiphertextHandle, b: CiphertextHandle) -> bool:
        return self._value(a) == self._value(b)

    def reveal(self, handle: CiphertextHandle) -> int:
        """Test helper. Not part of the provider interface."""
        return self._value(handle)
