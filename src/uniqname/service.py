"""Service wiring and lifecycle.

Builds the store, snapshot adapter, guard and allocator from settings and
runs the startup/shutdown sequence around them.
"""

from __future__ import annotations

import random
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass

import structlog

from uniqname.cache.guard import ReconciliationGuard
from uniqname.cache.persistence import PersistenceAdapter, RedisPersistenceAdapter
from uniqname.config import Settings, get_settings
from uniqname.database import close_db, get_session_factory, init_db
from uniqname.redis_client import close_redis, get_redis, init_redis
from uniqname.store import AuthoritativeStore, SqlAlchemyUsernameStore
from uniqname.usernames.allocator import UsernameAllocator, UsernameAvailability

logger = structlog.get_logger()


@dataclass
class UsernameService:
    """The pieces an application needs to allocate usernames."""

    settings: Settings
    store: AuthoritativeStore
    persistence: PersistenceAdapter
    guard: ReconciliationGuard
    allocator: UsernameAllocator

    async def ensure_cache(self) -> None:
        """Initialize the cache if needed; allocation proceeds without it on failure."""
        try:
            await self.guard.initialize()
        except Exception:
            logger.warning("bloom_cache_unavailable", state=self.guard.state.value, exc_info=True)

    async def allocate(self, base: str) -> str:
        await self.ensure_cache()
        return await self.allocator.allocate_unique(base, self.settings.username_max_retries)

    async def suggest(self, base: str) -> list[str]:
        await self.ensure_cache()
        return await self.allocator.generate_suggestions(base, self.settings.username_suggestion_count)

    async def check(self, username: str) -> UsernameAvailability:
        await self.ensure_cache()
        return await self.allocator.check_availability(username, self.settings.username_suggestion_count)

    def user_created(self, username: str) -> None:
        """Record a username the application has just committed."""
        self.guard.record(username)
        self.guard.schedule_flush()


def build_username_service(
    settings: Settings,
    store: AuthoritativeStore,
    persistence: PersistenceAdapter,
    rng: random.Random | None = None,
) -> UsernameService:
    """Assemble a service from already-connected collaborators."""
    guard = ReconciliationGuard(
        store,
        persistence,
        capacity=settings.bloom_capacity,
        error_rate=settings.bloom_error_rate,
        snapshot_key=settings.bloom_redis_key,
        page_size=settings.bloom_warm_page_size,
        growth_factor=settings.bloom_growth_factor,
    )
    allocator = UsernameAllocator(guard, store, rng=rng)
    return UsernameService(
        settings=settings,
        store=store,
        persistence=persistence,
        guard=guard,
        allocator=allocator,
    )


@asynccontextmanager
async def username_service(
    settings: Settings | None = None,
    *,
    warm: bool = True,
) -> AsyncGenerator[UsernameService, None]:
    """Connect to PostgreSQL and Redis, initialize the cache, and clean up on exit.

    With ``warm=False`` the cache is left UNINITIALIZED for callers that
    rebuild it themselves.
    """
    settings = settings or get_settings()
    await init_db(settings.database_url)
    await init_redis(
        settings.redis_url,
        max_connections=settings.redis_max_connections,
        socket_timeout=settings.redis_socket_timeout,
    )

    service = build_username_service(
        settings,
        store=SqlAlchemyUsernameStore(get_session_factory()),
        persistence=RedisPersistenceAdapter(get_redis()),
    )
    try:
        if warm:
            await service.ensure_cache()
        yield service
    finally:
        await service.guard.shutdown()
        await close_db()
        await close_redis()
        logger.info("username_service_stopped")
