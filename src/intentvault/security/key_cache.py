"""
Coordinator public-key cache.

The read path is lock-free: a valid entry is returned directly. A miss or an
expired entry triggers one fetch shared by every concurrent caller. Entries
are immutable and replaced wholesale, so readers never see a half-updated key.
An expired key is never served, even when the refresh fails.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPublicKey

from intentvault.protocol.errors import KeyFetchError
from intentvault.utils.timestamps import monotonic

logger = logging.getLogger(__name__)

KeyFetcher = Callable[[], Awaitable[Union[str, dict]]]

MIN_RSA_KEY_SIZE = 2048


@dataclass(frozen=True)
class KeyCacheEntry:
    public_key: RSAPublicKey
    pem: str
    key_id: str
    fetched_at: float
    ttl: float

    def is_valid(self, now: float) -> bool:
        return now - self.fetched_at < self.ttl


def parse_public_key(payload: Any) -> tuple[RSAPublicKey, str]:
    """
    Accept either a PEM string or the coordinator's public-key response
    ``{success, publicKey: {pem, ...}}`` / ``{publicKey: "<pem>"}``.
    """
    pem = payload
    if isinstance(payload, dict):
        pem = payload.get("publicKey")
        if isinstance(pem, dict):
            pem = pem.get("pem")
    if not isinstance(pem, str) or not pem.strip():
        raise KeyFetchError("Coordinator returned no public key")
    try:
        key = serialization.load_pem_public_key(pem.encode("utf-8"))
    except ValueError as e:
        raise KeyFetchError(f"Malformed coordinator public key: {e}")
    if not isinstance(key, RSAPublicKey):
        raise KeyFetchError(f"Expected RSA public key, got {type(key).__name__}")
    if key.key_size < MIN_RSA_KEY_SIZE:
        raise KeyFetchError(f"Coordinator key too small ({key.key_size} bits)")
    return key, pem


class KeyCache:
    """
    Usage:
        cache = KeyCache(client.fetch_public_key, ttl=3600)
        key = await cache.get()
    """

    def __init__(
        self,
        fetcher: KeyFetcher,
        ttl: float = 3600.0,
        clock: Callable[[], float] = monotonic,
    ):
        self._fetcher = fetcher
        self._ttl = ttl
        self._clock = clock
        self._entry: Optional[KeyCacheEntry] = None
        self._lock = asyncio.Lock()
        self.fetch_count = 0

    @property
    def entry(self) -> Optional[KeyCacheEntry]:
        return self._entry

    async def get(self) -> RSAPublicKey:
        return (await self.get_entry()).public_key

    async def get_entry(self) -> KeyCacheEntry:
        entry = self._entry
        if entry is not None and entry.is_valid(self._clock()):
            return entry

        async with self._lock:
            # another caller may have refreshed while we waited
            entry = self._entry
            if entry is not None and entry.is_valid(self._clock()):
                return entry
            self._entry = None
            entry = await self._fetch()
            self._entry = entry
            return entry

    def invalidate(self) -> None:
        self._entry = None

    async def _fetch(self) -> KeyCacheEntry:
        self.fetch_count += 1
        try:
            payload = await self._fetcher()
        except KeyFetchError:
            raise
        except Exception as e:
            logger.warning("Coordinator public key fetch failed: %s", e)
            raise KeyFetchError(f"Failed to fetch coordinator public key: {e}") from e

        key, pem = parse_public_key(payload)
        der = key.public_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        entry = KeyCacheEntry(
            public_key=key,
            pem=pem,
            key_id=hashlib.sha256(der).hexdigest()[:16],
            fetched_at=self._clock(),
            ttl=self._ttl,
        )
        logger.info("Cached coordinator public key %s (ttl=%ss)", entry.key_id, self._ttl)
        return entry


_default_cache: Optional[KeyCache] = None


def default_key_cache() -> KeyCache:
    """Process-wide cache bound to the configured coordinator, created on first use."""
    global _default_cache
    if _default_cache is None:
        from intentvault.client.transport import CoordinatorClient
        from intentvault.core.settings import get_settings

        settings = get_settings().client
        client = CoordinatorClient(settings.coordinator_url, timeout=settings.request_timeout)
        _default_cache = KeyCache(client.fetch_public_key, ttl=settings.key_cache_ttl)
    return _default_cache
