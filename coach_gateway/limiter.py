"""In-memory rate limiter for the resume coach gateway.

Tracks per-client request counts using a fixed-window approach. Each key gets
its own window that starts with its first request and lasts
``window_seconds``.
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional


@dataclass
class RateLimitResult:
    """Outcome of a single rate-limit check."""

    allowed: bool
    remaining: int
    reset_time: float

    def retry_after(self, now: Optional[float] = None) -> int:
        """Whole seconds until the window resets (at least 1)."""
        now = time.time() if now is None else now
        return max(1, int(self.reset_time - now + 0.999))


@dataclass
class _ClientBucket:
    """Fixed-window counter for a single key."""

    count: int
    reset_time: float


@dataclass
class RateLimiter:
    """Per-key in-memory rate limiter.

    Check-and-increment happens under a lock so concurrent requests for the
    same key never push ``count`` past ``limit``. Expired buckets are swept
    once the store reaches ``max_keys`` entries.
    """

    limit: int = 20
    window_seconds: float = 3600.0
    max_keys: int = 10000
    _buckets: Dict[str, _ClientBucket] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def check(self, key: str) -> RateLimitResult:
        """Count one request for ``key`` and report whether it is allowed.

        A blocked request does not increment the counter.

        Args:
            key: The caller's identity (usually the client IP).

        Returns:
            A RateLimitResult with the remaining quota and window reset time.
        """
        now = time.time()

        with self._lock:
            bucket = self._buckets.get(key)

            if bucket is None or now > bucket.reset_time:
                if bucket is None and len(self._buckets) >= self.max_keys:
                    self._sweep_locked(now)
                bucket = _ClientBucket(count=1, reset_time=now + self.window_seconds)
                self._buckets[key] = bucket
                return RateLimitResult(
                    allowed=True,
                    remaining=self.limit - 1,
                    reset_time=bucket.reset_time,
                )

            if bucket.count >= self.limit:
                return RateLimitResult(
                    allowed=False, remaining=0, reset_time=bucket.reset_time
                )

            bucket.count += 1
            return RateLimitResult(
                allowed=True,
                remaining=self.limit - bucket.count,
                reset_time=bucket.reset_time,
            )

    def reset(self, key: str) -> None:
        """Forget the window for a single key."""
        with self._lock:
            self._buckets.pop(key, None)

    def clear(self) -> None:
        """Forget every window."""
        with self._lock:
            self._buckets.clear()

    def sweep(self, now: Optional[float] = None) -> int:
        """Drop expired windows and return how many were removed."""
        now = time.time() if now is None else now
        with self._lock:
            return self._sweep_locked(now)

    def __len__(self) -> int:
        return len(self._buckets)

    def _sweep_locked(self, now: float) -> int:
        expired = [k for k, b in self._buckets.items() if now > b.reset_time]
        for key in expired:
            del self._buckets[key]
        return len(expired)


def get_client_ip(headers: Mapping[str, str]) -> str:
    """Extract the caller identity from request headers.

    Prefers the edge-injected ``cf-connecting-ip`` header, then the first
    entry of ``x-forwarded-for``. Callers without either share the
    ``"unknown"`` bucket.
    """
    ip = headers.get("cf-connecting-ip")
    if ip:
        return ip

    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    return "unknown"
