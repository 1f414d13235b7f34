from typing import Any, Optional

import redis
from redis import asyncio as aioredis

from marketplace.core.config import REDIS_URL


def _valid_url(url: Optional[str]) -> bool:
    return bool(url) and url.strip().lower().startswith(("redis://", "rediss://"))


def build_sync_client(url: Optional[str] = None) -> Optional[redis.Redis]:
    """Blocking client used to publish from request threads."""
    url = (url or REDIS_URL or "").strip()
    if not _valid_url(url):
        return None
    return redis.Redis.from_url(
        url,
        decode_responses=True,
        socket_connect_timeout=2,
        socket_timeout=5,
        health_check_interval=30,
        retry_on_timeout=True,
    )


def build_async_client(url: Optional[str] = None) -> Optional[Any]:
    """Asyncio client used by the pub/sub consumer."""
    url = (url or REDIS_URL or "").strip()
    if not _valid_url(url):
        return None
    return aioredis.from_url(
        url,
        decode_responses=True,
        socket_connect_timeout=2,
        health_check_interval=30,
        retry_on_timeout=True,
    )


__all__ = ["build_sync_client", "build_async_client"]
