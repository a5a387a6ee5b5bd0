# app/infra/rate_limiter.py
from __future__ import annotations
import time
from collections import defaultdict
from threading import Lock
from typing import Optional

from fastapi import Request, HTTPException, status

from app.infra.logging_config import get_logger
from app.infra.metrics import inc_counter

logger = get_logger(__name__)


class InMemoryRateLimiter:
    """
    Sliding-window limiter keyed by acting principal.

    Per process only: with N replicas the effective limit is N x max_requests.
    Guards the gateway-facing endpoints against a misbehaving client app
    (e.g. a helper app retrying accept in a tight loop).
    """

    def __init__(self, max_requests: int, window_seconds: int = 60):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._requests: dict[str, list[float]] = defaultdict(list)
        self._lock = Lock()

    def is_allowed(self, key: str) -> tuple[bool, Optional[int]]:
        """
        Returns:
            (allowed, retry_after_seconds)
        """
        now = time.time()
        cutoff = now - self.window_seconds

        with self._lock:
            window = [ts for ts in self._requests[key] if ts > cutoff]
            self._requests[key] = window

            if len(window) >= self.max_requests:
                retry_after = int(min(window) + self.window_seconds - now) + 1
                masked = key[:8] + "***" if len(key) > 8 else "***"
                logger.warning(
                    "Rate limit exceeded for key=%s", masked,
                    extra={"key_masked": masked, "limit": self.max_requests, "retry_after": retry_after},
                )
                return False, retry_after

            window.append(now)
            return True, None

    def cleanup(self, max_age_seconds: int = 3600) -> int:
        """Remove keys idle for longer than ``max_age_seconds``."""
        cutoff = time.time() - max_age_seconds

        with self._lock:
            stale = [k for k, ts in self._requests.items() if not ts or max(ts) < cutoff]
            for key in stale:
                del self._requests[key]

        if stale:
            logger.info(f"Rate limiter cleanup: removed {len(stale)} keys")
        return len(stale)


class RateLimitDependency:
    """FastAPI dependency: limit per X-Actor-Id, falling back to client IP."""

    def __init__(self, limiter: InMemoryRateLimiter):
        self.limiter = limiter

    async def __call__(self, request: Request) -> None:
        key = request.headers.get("X-Actor-Id")
        if not key:
            key = request.client.host if request.client else "unknown"

        allowed, retry_after = self.limiter.is_allowed(key)
        if not allowed:
            inc_counter("rate_limited_total", path=request.url.path)
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Rate limit exceeded",
                headers={"Retry-After": str(retry_after)} if retry_after else None,
            )
