"""Redis client for cache snapshots.

Snapshots are ASCII JSON, so the client decodes responses to ``str`` and
``RedisPersistenceAdapter`` hands them to the decoder unchanged. Socket
timeouts keep a hung Redis from stalling cache startup or shutdown.
"""

import redis.asyncio as redis

_pool: redis.Redis | None = None


async def init_redis(url: str, max_connections: int = 20, socket_timeout: float = 5.0) -> None:
    """Create the shared client for ``url``."""
    global _pool  # noqa: PLW0603
    _pool = redis.from_url(  # type: ignore[no-untyped-call]
        url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=max_connections,
        socket_timeout=socket_timeout,
        socket_connect_timeout=socket_timeout,
        health_check_interval=30,
    )


async def close_redis() -> None:
    global _pool  # noqa: PLW0603
    if _pool:
        await _pool.aclose()
        _pool = None


def get_redis() -> redis.Redis:
    """Get the shared client for the snapshot adapter."""
    if _pool is None:
        msg = "Redis not initialized. Call init_redis() first."
        raise RuntimeError(msg)
    return _pool
