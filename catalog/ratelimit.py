import threading
import time
from dataclasses import dataclass, field

from fastapi import Request, status
from fastapi.responses import JSONResponse


@dataclass
class _Bucket:
    tokens: float
    updated: float
    last_seen: float = field(default=0.0)


class TokenBucketLimiter:
    """Per-client token buckets refilled at ``rate`` tokens/second up to ``burst``."""

    def __init__(self, rate: float, burst: int, idle_seconds: float = 180.0):
        self.rate = rate
        self.burst = burst
        self.idle_seconds = idle_seconds
        self.buckets: dict[str, _Bucket] = {}
        self._lock = threading.Lock()

    def allow(self, key: str) -> bool:
        now = time.monotonic()
        with self._lock:
            self._evict_idle(now)
            bucket = self.buckets.get(key)
            if bucket is None:
                bucket = self.buckets[key] = _Bucket(tokens=float(self.burst), updated=now)
            bucket.tokens = min(self.burst, bucket.tokens + (now - bucket.updated) * self.rate)
            bucket.updated = now
            bucket.last_seen = now
            if bucket.tokens < 1:
                return False
            bucket.tokens -= 1
            return True

    def _evict_idle(self, now: float) -> None:
        stale = [key for key, bucket in self.buckets.items() if now - bucket.last_seen > self.idle_seconds]
        for key in stale:
            del self.buckets[key]


def rate_limit_middleware(limiter: TokenBucketLimiter, enabled: bool = True):
    async def middleware(request: Request, call_next):
        if enabled:
            key = request.client.host if request.client else "unknown"
            if not limiter.allow(key):
                return JSONResponse(
                    status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                    content={"detail": "rate limit exceeded"},
                )
        return await call_next(request)

    return middleware
