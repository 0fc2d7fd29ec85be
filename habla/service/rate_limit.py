from __future__ import annotations

import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Protocol, Tuple

from habla.logging import get_logger

logger = get_logger(__name__)

DEFAULT_WINDOW_SECONDS = 60


class RateLimitStore(Protocol):
    async def hit(
        self, key: str, limit: int, window_seconds: float, now: float
    ) -> Tuple[bool, int]: ...

    async def sweep(self, now: float) -> int: ...


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int = 0


class MemoryRateLimitStore:
    """Process-local sliding-window counters.

    Each key holds the timestamps of admitted attempts, oldest first. Entries
    older than the window are dropped whenever the key is touched, and
    ``sweep`` clears idle keys on a schedule. The number of tracked keys is
    capped; when the cap is hit the least recently used tenth is evicted.
    """

    def __init__(self, *, max_keys: int = 10000) -> None:
        self.max_keys = max_keys
        self._attempts: Dict[str, Deque[float]] = {}
        self._windows: Dict[str, float] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _prune(attempts: Deque[float], cutoff: float) -> None:
        while attempts and attempts[0] <= cutoff:
            attempts.popleft()

    def _evict_if_full(self) -> None:
        if len(self._attempts) < self.max_keys:
            return
        by_last_seen = sorted(
            self._attempts.items(), key=lambda item: item[1][-1] if item[1] else 0.0
        )
        evict_count = max(1, self.max_keys // 10)
        for key, _ in by_last_seen[:evict_count]:
            self._attempts.pop(key, None)
            self._windows.pop(key, None)
        logger.warning("rate_limit_keys_evicted", evicted=evict_count, max_keys=self.max_keys)

    async def hit(
        self, key: str, limit: int, window_seconds: float, now: float
    ) -> Tuple[bool, int]:
        with self._lock:
            attempts = self._attempts.get(key)
            if attempts is None:
                self._evict_if_full()
                attempts = self._attempts.setdefault(key, deque())
            self._windows[key] = window_seconds
            self._prune(attempts, now - window_seconds)
            if len(attempts) >= limit:
                return False, len(attempts)
            attempts.append(now)
            return True, len(attempts)

    async def sweep(self, now: float) -> int:
        """Drop keys whose attempts have all aged out; returns how many were removed."""
        removed = 0
        with self._lock:
            for key in list(self._attempts):
                attempts = self._attempts[key]
                self._prune(attempts, now - self._windows.get(key, DEFAULT_WINDOW_SECONDS))
                if not attempts:
                    del self._attempts[key]
                    self._windows.pop(key, None)
                    removed += 1
        return removed

    def __len__(self) -> int:
        return len(self._attempts)


class RateLimiter:
    """Sliding-window limiter over a pluggable counter store."""

    def __init__(self, store: RateLimitStore, *, clock: Callable[[], float] = time.time) -> None:
        self.store = store
        self.clock = clock

    async def check(self, key: str, max_attempts: int, window_seconds: float) -> RateLimitDecision:
        """Admit or reject one attempt for ``key``.

        Attempts older than ``window_seconds`` are forgotten; the attempt is
        admitted and recorded while fewer than ``max_attempts`` remain.
        Rejections advertise the full window as ``retry_after``.
        """
        if max_attempts <= 0:
            return RateLimitDecision(True, max_attempts, 0)
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                key=key,
                window_seconds=window_seconds,
                message="Invalid rate limit window; defaulting to 60 seconds",
            )
            window_seconds = DEFAULT_WINDOW_SECONDS
        allowed, count = await self.store.hit(key, max_attempts, window_seconds, self.clock())
        if allowed:
            return RateLimitDecision(True, max_attempts, max(0, max_attempts - count))
        logger.info("rate_limit_rejected", key=key, limit=max_attempts, window_seconds=window_seconds)
        return RateLimitDecision(
            False, max_attempts, 0, retry_after=math.ceil(window_seconds)
        )

    async def sweep(self) -> int:
        return await self.store.sweep(self.clock())
