"""Fixed-window rate limiting backed by Redis, with an in-process fallback."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, Optional, Tuple

from fastapi import Depends, HTTPException, Request
import redis.asyncio as redis
from redis.exceptions import RedisError

from config import settings
from routers.auth_scope import AuthContext

logger = logging.getLogger(__name__)


class FixedWindowLimiter:
    """Counts hits per (bucket, caller) in fixed windows.

    Redis holds the shared counters; when it cannot be reached each process
    counts on its own, which only loosens the limit.
    """

    def __init__(self, redis_url: str, key_prefix: str = "geo:rate"):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self._local: Dict[str, Tuple[int, float]] = {}
        self._lock = asyncio.Lock()

    def reset(self) -> None:
        self._local.clear()

    async def _hit_local(self, key: str, limit: int, window_seconds: int) -> bool:
        now = time.time()
        async with self._lock:
            expired = [stale for stale, (_, reset_at) in self._local.items() if reset_at <= now]
            for stale in expired:
                del self._local[stale]
            count, reset_at = self._local.get(key, (0, now + window_seconds))
            count += 1
            self._local[key] = (count, reset_at)
            return count <= limit

    async def hit(self, bucket: str, caller: str, limit: int, window_seconds: int) -> bool:
        key = f"{self.key_prefix}:{bucket}:{caller}"
        try:
            client = redis.from_url(self.redis_url, decode_responses=True)
            try:
                current = await client.incr(key)
                if current == 1:
                    await client.expire(key, window_seconds)
            finally:
                await client.aclose()
        except (RedisError, OSError) as exc:
            logger.debug("Rate limiter using local counters: %s", exc)
            return await self._hit_local(key, limit, window_seconds)
        return current <= limit


def get_limiter(request: Request) -> FixedWindowLimiter:
    limiter = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        limiter = FixedWindowLimiter(settings.REDIS_URL)
        request.app.state.rate_limiter = limiter
    return limiter


def _client_address(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def rate_limit(
    bucket: str,
    limit: int,
    window_seconds: int,
    auth_dependency: Optional[Callable] = None,
):
    """Return a dependency enforcing ``limit`` hits per ``window_seconds``.

    With ``auth_dependency`` the caller is keyed by authenticated subject,
    otherwise by client address.
    """

    async def _anonymous() -> None:
        return None

    async def _dependency(
        request: Request,
        auth: Optional[AuthContext] = Depends(auth_dependency or _anonymous),
    ) -> None:
        if getattr(request.app.state, "disable_rate_limits", False):
            return
        caller = f"user:{auth.user_id}" if auth is not None else f"ip:{_client_address(request)}"
        allowed = await get_limiter(request).hit(bucket, caller, limit, window_seconds)
        if not allowed:
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded for {bucket}. Try again later.",
            )

    return _dependency
