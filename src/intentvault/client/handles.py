"""
Sensitive-field handles.

Plaintext sensitive values are turned into ciphertext handles before an
intent is signed. The builder is all-or-nothing: either every requested
field gets a handle or a PrivacyPayloadError is raised and nothing is
attached.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Protocol

from intentvault.fhe.base import HomomorphicProvider
from intentvault.protocol.errors import PrivacyPayloadError, SettlementError
from intentvault.protocol.models import CiphertextHandle, Intent
from intentvault.protocol.validators import validate_plain_value

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HandleSet:
    format: str
    handles: Dict[str, CiphertextHandle]


class HandleProvider(Protocol):
    async def build(self, values: Dict[str, int]) -> HandleSet:
        ...


class LocalHandleProvider:
    """Encrypts in-process with a HomomorphicProvider."""

    def __init__(self, fhe: HomomorphicProvider):
        self._fhe = fhe

    async def build(self, values: Dict[str, int]) -> HandleSet:
        return HandleSet(
            format=self._fhe.format,
            handles={name: self._fhe.encrypt(v) for name, v in values.items()},
        )


class RemoteHandleProvider:
    """Asks the coordinator's privacy-handles endpoint for handles."""

    def __init__(self, client: Any):
        self._client = client

    async def build(self, values: Dict[str, int]) -> HandleSet:
        body = await self._client.build_privacy_handles(values)
        raw = body.get("handles")
        if not body.get("success") or not isinstance(raw, dict):
            raise PrivacyPayloadError("Invalid privacy handle response")
        fmt = str(body.get("handleFormat") or "unknown")
        handles = {}
        for name, h in raw.items():
            handles[name] = CiphertextHandle.from_dict({"format": fmt, **h})
        return HandleSet(format=fmt, handles=handles)


class HandleBuilder:
    def __init__(self, provider: HandleProvider):
        self._provider = provider

    async def build_handles(self, fields: Mapping[str, Any]) -> HandleSet:
        if not fields:
            raise PrivacyPayloadError("Missing privacy payload")
        values = {name: validate_plain_value(name, v) for name, v in fields.items()}

        try:
            handle_set = await self._provider.build(values)
        except PrivacyPayloadError:
            raise
        except SettlementError as e:
            raise PrivacyPayloadError(f"Handle creation failed: {e}") from e

        missing = set(values) - set(handle_set.handles)
        if missing:
            raise PrivacyPayloadError(f"Provider returned no handle for {sorted(missing)}")
        extra = set(handle_set.handles) - set(values)
        if extra:
            raise PrivacyPayloadError(f"Provider returned unexpected handles {sorted(extra)}")
        logger.debug("Built %d %s handles", len(handle_set.handles), handle_set.format)
        return handle_set

    @staticmethod
    def attach(intent: Intent, handle_set: HandleSet) -> Intent:
        """New intent carrying the handles and no plaintext sensitive values."""
        missing = set(intent.private_values) - set(handle_set.handles)
        if missing:
            raise PrivacyPayloadError(f"No handle for sensitive fields {sorted(missing)}")
        return intent.with_handles(handle_set.handles)

    async def seal(self, intent: Intent) -> Intent:
        return self.attach(intent, await self.build_handles(intent.private_values))
