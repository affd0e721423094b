"""
HTTP client for the coordinator API.

requests is blocking, so every call runs in a worker thread under
``asyncio.wait_for``. Connection failures and timeouts are retried a
bounded number of times with linear backoff; error envelopes returned by
the coordinator are mapped back to typed errors and never retried.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import requests

from intentvault.protocol.errors import SettlementError, TransportError, error_from_envelope
from intentvault.protocol.models import Approval, SettlementResult

logger = logging.getLogger(__name__)


class CoordinatorClient:
    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        max_retries: int = 2,
        backoff: float = 0.5,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._max_retries = max_retries
        self._backoff = backoff
        self._session = session or requests.Session()

    @property
    def base_url(self) -> str:
        return self._base_url

    # ------------------------------------------------------------------
    # Low-level request
    # ------------------------------------------------------------------
    def _send(self, method: str, path: str, payload: Optional[Dict[str, Any]]) -> requests.Response:
        return self._session.request(
            method,
            self._base_url + path,
            json=payload,
            headers={"Content-Type": "application/json"},
            timeout=self._timeout,
        )

    async def request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        attempt = 0
        while True:
            try:
                response = await asyncio.wait_for(
                    asyncio.to_thread(self._send, method, path, payload),
                    timeout=self._timeout,
                )
                break
            except (requests.RequestException, asyncio.TimeoutError) as e:
                attempt += 1
                if attempt > self._max_retries:
                    raise TransportError(f"{method} {path} failed after {attempt} attempts: {str(e) or 'timeout'}") from e
                logger.warning("%s %s failed (%s); retry %d/%d", method, path, str(e) or "timeout", attempt, self._max_retries)
                await asyncio.sleep(self._backoff * attempt)

        try:
            body = response.json()
        except ValueError:
            raise TransportError(f"Invalid JSON from coordinator (HTTP {response.status_code})")
        if not isinstance(body, dict):
            raise TransportError("Coordinator response is not a JSON object")

        if response.status_code >= 400:
            raise error_from_envelope(body)
        return body

    # ------------------------------------------------------------------
    # API
    # ------------------------------------------------------------------
    async def fetch_public_key(self) -> Dict[str, Any]:
        return await self.request("GET", "/api/public-key")

    async def build_privacy_handles(self, values: Dict[str, int]) -> Dict[str, Any]:
        # values are sent as digit strings so large integers survive JSON
        return await self.request("POST", "/api/privacy-handles", {"values": {k: str(v) for k, v in values.items()}})

    async def approve(self, body: Dict[str, Any]) -> Approval:
        resp = await self.request("POST", "/api/approve", body)
        approval = resp.get("approval")
        if not isinstance(approval, dict):
            raise SettlementError("Coordinator returned no approval")
        return Approval.from_dict(approval)

    async def settle(self, body: Dict[str, Any]) -> SettlementResult:
        return SettlementResult.from_dict(await self.request("POST", "/api/settle", body))

    async def status(self) -> Dict[str, Any]:
        return await self.request("GET", "/api/status")

    async def intent_status(self, user: str, nonce: int) -> SettlementResult:
        return SettlementResult.from_dict(await self.request("GET", f"/api/intent/{user}/{nonce}"))

    async def rpc_url(self) -> str:
        return (await self.request("GET", "/api/rpc-url"))["rpcUrl"]
