from __future__ import annotations

import logging
from dataclasses import dataclass

import redis
from fastapi import Depends, HTTPException, Request

from coursebot.core.config import settings
from coursebot.core.redis_client import get_redis


log = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimit:
    key: str
    limit: int
    window_seconds: int
    current: int = 0


def client_ip(request: Request) -> str:
    if settings.trust_proxy_headers:
        xri = str(request.headers.get("x-real-ip") or "").strip()
        if xri:
            return xri
        xff = str(request.headers.get("x-forwarded-for") or "")
        ip = xff.split(",")[0].strip()
        if ip:
            return ip
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def rate_limit(*, key_prefix: str, limit: int, window_seconds: int):
    """Fixed-window counter per client IP and path.

    Fails open when Redis is unavailable; the login endpoint stays usable.
    """

    def _dep(request: Request) -> RateLimit:
        key = f"rl:{key_prefix}:{request.url.path}:{client_ip(request)}"
        r = get_redis()
        try:
            current = int(r.incr(key))
            if current == 1:
                r.expire(key, int(window_seconds))
        except redis.RedisError:
            log.warning("rate limit store unavailable for %s", key_prefix)
            return RateLimit(key=key, limit=int(limit), window_seconds=int(window_seconds))

        if current > int(limit):
            ttl = r.ttl(key)
            retry_after = int(ttl) if ttl and int(ttl) > 0 else int(window_seconds)
            raise HTTPException(
                status_code=429,
                detail="rate limit exceeded",
                headers={"Retry-After": str(retry_after)},
            )

        return RateLimit(key=key, limit=int(limit), window_seconds=int(window_seconds), current=current)

    return Depends(_dep)
