"""Redis-backed per-client rate limiting dependency."""

from __future__ import annotations

import asyncio
import time
from typing import Callable, Dict, Tuple

from fastapi import HTTPException, Request
import redis.asyncio as redis

from config import settings
from services.session_token import decode_session_token


_local_counters: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()


def _client_identifier(request: Request) -> str:
    """Session subject when a valid Bearer token is sent, otherwise the client address."""
    authorization = request.headers.get("authorization", "")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() == "bearer" and token:
        try:
            return f"user:{decode_session_token(token.strip()).user_id}"
        except ValueError:
            pass
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return f"ip:{forwarded.split(',')[0].strip()}"
    if request.client and request.client.host:
        return f"ip:{request.client.host}"
    return "ip:unknown"


async def _consume_local_quota(key: str, limit: int, window_seconds: int) -> bool:
    now = time.time()
    async with _local_lock:
        count, reset_at = _local_counters.get(key, (0, now + window_seconds))
        if now >= reset_at:
            count = 0
            reset_at = now + window_seconds
        count += 1
        _local_counters[key] = (count, reset_at)
        return count <= limit


def rate_limit(prefix: str, limit: int, window_seconds: int) -> Callable[[], None]:
    """Return a FastAPI dependency that enforces per-client request quotas."""

    async def _dependency(request: Request):
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        key = f"ayf:rate:{prefix}:{_client_identifier(request)}"
        try:
            redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
            try:
                current = await redis_client.incr(key)
                if current == 1:
                    await redis_client.expire(key, window_seconds)
            finally:
                await redis_client.aclose()
            allowed = current <= limit
        except Exception:
            # Redis unavailable: fall back to in-process counters.
            allowed = await _consume_local_quota(key, limit, window_seconds)

        if not allowed:
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded for {prefix}. Try again later.",
                headers={"Retry-After": str(window_seconds)},
            )

    return _dependency
