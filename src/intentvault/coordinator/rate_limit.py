from __future__ import annotations

import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: float = 0.0

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(math.ceil(self.reset_at))),
        }


class SlidingWindowRateLimiter:
    """
    At most ``max_requests`` accepted requests per ``window`` seconds per key.
    Rejected requests do not consume budget.
    Idle keys are pruned at most once per window from inside ``check``.
    """

    def __init__(
        self,
        max_requests: int = 30,
        window: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        if max_requests <= 0 or window <= 0:
            raise ValueError("max_requests and window must be positive")
        self.max_requests = max_requests
        self.window = window
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()
        self._next_prune = clock() + window

    def check(self, key: str) -> RateDecision:
        now = self._clock()
        with self._lock:
            if now >= self._next_prune:
                self._prune(now)
            hits = self._hits.setdefault(key, deque())
            while hits and now - hits[0] >= self.window:
                hits.popleft()

            if len(hits) >= self.max_requests:
                retry_after = max(0.0, self.window - (now - hits[0]))
                return RateDecision(
                    allowed=False,
                    limit=self.max_requests,
                    remaining=0,
                    reset_at=hits[0] + self.window,
                    retry_after=math.ceil(retry_after),
                )

            hits.append(now)
            return RateDecision(
                allowed=True,
                limit=self.max_requests,
                remaining=self.max_requests - len(hits),
                reset_at=now + self.window,
            )

    def cleanup(self) -> int:
        """Drop keys with no hits inside the window. Returns how many were removed."""
        with self._lock:
            return self._prune(self._clock())

    def _prune(self, now: float) -> int:
        removed = 0
        for key in list(self._hits):
            hits = self._hits[key]
            while hits and now - hits[0] >= self.window:
                hits.popleft()
            if not hits:
                del self._hits[key]
                removed += 1
        self._next_prune = now + self.window
        return removed

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._hits)
