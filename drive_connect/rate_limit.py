"""
Rate limiting policy for the begin endpoint.

Routes depend only on RateLimiter (approve or reject a key). The default SlidingWindowRateLimiter
is in-memory and per instance: it does not survive restarts and is not shared across instances.
"""
import math
import threading
import time
from dataclasses import dataclass
from typing import Protocol

_WINDOW_SECONDS = 60


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int | None = None

    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
        }
        if self.retry_after is not None:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class RateLimiter(Protocol):
    def check_and_consume(self, key: str) -> RateLimitDecision: ...


class SlidingWindowRateLimiter:
    def __init__(self, limit: int, window_seconds: int = _WINDOW_SECONDS, clock=time.monotonic):
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._store: dict[str, list[float]] = {}
        self._lock = threading.Lock()

    def check_and_consume(self, key: str) -> RateLimitDecision:
        """
        Check if the key is under the limit for the sliding window; if so, record this request.
        When not allowed, retry_after is the suggested Retry-After value (>= 1).
        """
        if self.limit <= 0:
            return RateLimitDecision(allowed=True, limit=0, remaining=0)
        now = self._clock()
        cutoff = now - self.window_seconds
        with self._lock:
            self._prune(cutoff)
            timestamps = self._store.setdefault(key, [])
            timestamps[:] = [t for t in timestamps if t > cutoff]
            if len(timestamps) >= self.limit:
                oldest = min(timestamps)
                retry_after = max(1, math.ceil(self.window_seconds - (now - oldest)))
                return RateLimitDecision(allowed=False, limit=self.limit, remaining=0, retry_after=retry_after)
            timestamps.append(now)
            return RateLimitDecision(allowed=True, limit=self.limit, remaining=self.limit - len(timestamps))

    def _prune(self, cutoff: float) -> None:
        # Timestamps are appended in clock order, so the last one is the newest
        stale = [k for k, timestamps in self._store.items() if not timestamps or timestamps[-1] <= cutoff]
        for k in stale:
            del self._store[k]

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._store)

    def reset(self) -> None:
        with self._lock:
            self._store.clear()
