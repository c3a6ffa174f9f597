import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import redis
import redis.asyncio as aioredis
from fastapi import FastAPI

from cbt.utils.config import settings


logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None


def _connection_kwargs() -> dict:
    return {
        "db": settings.redis_db,
        "port": settings.redis_port,
        "host": settings.redis_host,
        "password": settings.redis_password,
    }


def get_redis() -> redis.Redis:
    """Shared text-mode client (pub/sub, rate limiting). Usable as a FastAPI dependency."""
    assert _redis_client is not None, "Redis not initialized"
    return _redis_client


def get_binary_redis() -> redis.Redis:
    """Client without response decoding; rq stores pickled job payloads."""
    return redis.Redis(**_connection_kwargs())


def get_async_redis() -> aioredis.Redis:
    """Per-connection asyncio client for streaming pub/sub to websockets."""
    return aioredis.Redis(decode_responses=True, **_connection_kwargs())


def init_redis() -> None:
    global _redis_client
    _redis_client = redis.Redis(decode_responses=True, socket_timeout=2.0, **_connection_kwargs())
    logger.info("Redis client configured for %s:%s", settings.redis_host, settings.redis_port)


def close_redis() -> None:
    global _redis_client
    if _redis_client is not None:
        try:
            _redis_client.close()
        finally:
            _redis_client = None


@asynccontextmanager
async def redis_lifespan(app: FastAPI) -> AsyncIterator[None]:
    init_redis()
    try:
        yield
    finally:
        close_redis()
