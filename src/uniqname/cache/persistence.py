"""Snapshot persistence for the membership cache.

The cache snapshot is an opaque string stored under a single Redis key
without TTL. Transport failures never propagate to allocation callers:
``get`` raises PersistenceError so the guard can tell a miss from an
outage, and ``set`` reports failure through its return value.
"""

from __future__ import annotations

from typing import Protocol

import redis.asyncio as aioredis
import structlog

from uniqname.exceptions import PersistenceError

logger = structlog.get_logger()


class PersistenceAdapter(Protocol):
    """Key/value blob store used to persist cache snapshots."""

    async def is_connected(self) -> bool: ...

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, blob: str) -> bool: ...


class RedisPersistenceAdapter:
    """PersistenceAdapter backed by a ``redis.asyncio`` client."""

    def __init__(self, redis_client: aioredis.Redis) -> None:
        self.redis = redis_client

    async def is_connected(self) -> bool:
        try:
            return bool(await self.redis.ping())
        except (aioredis.RedisError, OSError):
            logger.warning("snapshot_store_unreachable", exc_info=True)
            return False

    async def get(self, key: str) -> str | None:
        try:
            value = await self.redis.get(key)
        except (aioredis.RedisError, OSError) as e:
            msg = f"Failed to read snapshot key {key}: {e}"
            raise PersistenceError(msg) from e
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return value

    async def set(self, key: str, blob: str) -> bool:
        try:
            await self.redis.set(key, blob)
        except (aioredis.RedisError, OSError):
            logger.error("snapshot_write_failed", key=key, exc_info=True)
            return False
        return True
