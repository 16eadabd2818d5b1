from __future__ import annotations

import threading
import time
from dataclasses import dataclass

from fastapi import HTTPException, Request

from server.creditmeter.core.config import Settings


@dataclass
class _Bucket:
    tokens: float
    updated_at: float


class RateLimiter:
    """In-process token buckets keyed by endpoint group and client."""

    def __init__(self, *, clock=time.monotonic) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[str, _Bucket] = {}
        self._clock = clock

    def allow(self, key: str, *, limit: int, window_seconds: int) -> bool:
        now = self._clock()
        rate = limit / max(1.0, float(window_seconds))
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = _Bucket(tokens=float(limit), updated_at=now)
                self._buckets[key] = bucket
            else:
                elapsed = max(0.0, now - bucket.updated_at)
                bucket.tokens = min(float(limit), bucket.tokens + elapsed * rate)
                bucket.updated_at = now

            if bucket.tokens < 1.0:
                return False
            bucket.tokens -= 1.0
            return True


_limiter = RateLimiter()


def _client_id(request: Request, settings: Settings) -> str:
    user_id = getattr(request.state, "user_id", None)
    if user_id:
        return f"user:{user_id}"
    if settings.trust_proxy:
        forwarded = request.headers.get("x-forwarded-for", "")
        if forwarded:
            return forwarded.split(",")[0].strip()
    client = request.client
    return client.host if client else "unknown"


def enforce_rate_limit(
    request: Request,
    *,
    settings: Settings,
    key: str,
    limit: int,
    window_seconds: int,
) -> None:
    if not settings.rate_limit_enabled:
        return
    if limit <= 0:
        raise HTTPException(status_code=429, detail="Rate limit exceeded.")
    bucket_key = f"{key}:{_client_id(request, settings)}"
    if not _limiter.allow(bucket_key, limit=limit, window_seconds=window_seconds):
        raise HTTPException(status_code=429, detail="Rate limit exceeded.")
