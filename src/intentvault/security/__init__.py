from .hybrid import CoordinatorKeyRing, HybridEncryptor
from .key_cache import KeyCache, KeyCacheEntry, default_key_cache
from .signing import (
    Keypair,
    sign_approval,
    sign_intent,
    verify_approval,
    verify_intent_signature,
    verify_signature,
)

__all__ = [
    "CoordinatorKeyRing",
    "HybridEncryptor",
    "KeyCache",
    "KeyCacheEntry",
    "default_key_cache",
    "Keypair",
    "sign_approval",
    "sign_intent",
    "verify_approval",
    "verify_intent_signature",
    "verify_signature",
]
