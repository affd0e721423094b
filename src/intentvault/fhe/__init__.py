from .base import U128_MODULUS, HomomorphicProvider
from .memory import HANDLE_FORMAT, InMemoryHomomorphicProvider

__all__ = ["U128_MODULUS", "HomomorphicProvider", "HANDLE_FORMAT", "InMemoryHomomorphicProvider"]
