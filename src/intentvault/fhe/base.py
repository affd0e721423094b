from __future__ import annotations

from typing import Protocol, runtime_checkable

from intentvault.protocol.models import CiphertextHandle

U128_MODULUS = 1 << 128


@runtime_checkable
class HomomorphicProvider(Protocol):
    """
    External FHE capability consumed by the vault and the handle builder.

    Comparisons return plain booleans and never expose the operands.
    Arithmetic wraps modulo 2**128, so callers must check ``ge`` before ``sub``.
    """

    format: str

    def encrypt(self, value: int) -> CiphertextHandle:
        """Client-side encryption of a plaintext value into a fresh handle."""
        ...

    def as_encrypted(self, value: int) -> CiphertextHandle:
        """Trivial (publicly known) encryption used by on-chain code."""
        ...

    def add(self, a: CiphertextHandle, b: CiphertextHandle) -> CiphertextHandle:
        ...

    def sub(self, a: CiphertextHandle, b: CiphertextHandle) -> CiphertextHandle:
        ...

    def ge(self, a: CiphertextHandle, b: CiphertextHandle) -> bool:
        ...

    def eq(self, a: CiphertextHandle, b: CiphertextHandle) -> bool:
        ...
