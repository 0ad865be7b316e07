"""Lifecycle owner for the process-wide username membership cache.

State machine::

    UNINITIALIZED -> INITIALIZING -> READY
          ^               |            |
          +---- failure --+            |
          +------ reinitialize() ------+

Initialization is single-flight: concurrent callers share one asyncio task
and all observe its outcome. The cache is advisory; while it is not READY
every lookup reports "maybe absent" so callers fall through to the
authoritative store.
"""

from __future__ import annotations

import asyncio
import enum
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

import structlog

from uniqname.cache.bloom import MembershipCache
from uniqname.cache.warmer import DEFAULT_GROWTH_FACTOR, DEFAULT_PAGE_SIZE, CacheWarmer, cache_key
from uniqname.exceptions import DecodeError, PersistenceError

if TYPE_CHECKING:
    from uniqname.cache.persistence import PersistenceAdapter
    from uniqname.store import AuthoritativeStore

logger = structlog.get_logger()

DEFAULT_SNAPSHOT_KEY = "bloom:usernames"
DEFAULT_CAPACITY = 1_000_000
DEFAULT_ERROR_RATE = 0.01


class CacheState(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"


class ReconciliationGuard:
    """Restores, warms, persists and hands out the membership cache."""

    def __init__(
        self,
        store: AuthoritativeStore,
        persistence: PersistenceAdapter,
        capacity: int = DEFAULT_CAPACITY,
        error_rate: float = DEFAULT_ERROR_RATE,
        snapshot_key: str = DEFAULT_SNAPSHOT_KEY,
        page_size: int = DEFAULT_PAGE_SIZE,
        growth_factor: float = DEFAULT_GROWTH_FACTOR,
    ) -> None:
        self.store = store
        self.persistence = persistence
        self.capacity = capacity
        self.error_rate = error_rate
        self.snapshot_key = snapshot_key
        self.warmer = CacheWarmer(store, capacity, error_rate, page_size=page_size, growth_factor=growth_factor)

        self._state = CacheState.UNINITIALIZED
        self._cache: MembershipCache | None = None
        self._init_task: asyncio.Task[None] | None = None
        self._pending: list[str] = []
        self._dirty = False
        # Empty fallback cache in use; its snapshot must never be written.
        self._degraded = False
        self._flush_lock = asyncio.Lock()
        self._flush_task: asyncio.Task[bool] | None = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> CacheState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is CacheState.READY and self._cache is not None

    @property
    def cache(self) -> MembershipCache | None:
        """The live cache, or None unless READY."""
        return self._cache if self.is_ready else None

    @property
    def dirty(self) -> bool:
        return self._dirty

    @property
    def degraded(self) -> bool:
        """True while serving the empty fallback built after a failed warm."""
        return self._degraded

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Bring the cache to READY, joining any attempt already in flight.

        Raises whatever aborted the shared attempt (state returns to
        UNINITIALIZED so a later call can retry). Store outages while
        warming do not raise: they fall back to an empty cache.
        """
        if self._state is CacheState.READY:
            return
        await self._join(restore=True)

    async def reinitialize(self, *, rebuild: bool = True) -> None:
        """Discard the current cache and state, then initialize again.

        With ``rebuild`` (the default) the persisted snapshot is not
        consulted and the cache is rebuilt from the store, which is what
        out-of-band data changes need. ``rebuild=False`` reruns the exact
        startup sequence, snapshot restore included.
        """
        logger.info("bloom_cache_reinitializing", rebuild=rebuild)
        if self._init_task is not None:
            await asyncio.wait([self._init_task])
        if self._flush_task is not None:
            await asyncio.wait([self._flush_task])

        self._state = CacheState.UNINITIALIZED
        self._cache = None
        self._dirty = False
        self._degraded = False
        await self._join(restore=not rebuild)

    async def _join(self, restore: bool) -> None:
        if self._init_task is None:
            self._state = CacheState.INITIALIZING
            self._init_task = asyncio.create_task(self._run_initialization(restore))
        # Shielded: one caller timing out must not cancel the shared attempt.
        await asyncio.shield(self._init_task)

    async def _run_initialization(self, restore: bool) -> None:
        logger.info("bloom_cache_initializing", key=self.snapshot_key, restore=restore)
        ready = False
        try:
            cache = await self._restore() if restore else None
            degraded = False
            if cache is None:
                cache, warmed = await self._warm()
                if warmed:
                    await self._persist(cache)
                degraded = not warmed

            if self._pending:
                cache.add_bulk(self._pending)
                self._pending.clear()
                self._dirty = True

            self._cache = cache
            self._degraded = degraded
            self._state = CacheState.READY
            ready = True
            logger.info("bloom_cache_ready", **cache.stats().as_dict())
        finally:
            if not ready:
                self._state = CacheState.UNINITIALIZED
                self._cache = None
                logger.error("bloom_cache_initialization_aborted")
            self._init_task = None

    async def _restore(self) -> MembershipCache | None:
        try:
            if not await self.persistence.is_connected():
                logger.warning("bloom_snapshot_store_disconnected")
                return None
            blob = await self.persistence.get(self.snapshot_key)
        except PersistenceError:
            logger.warning("bloom_snapshot_read_failed", exc_info=True)
            return None

        if not blob:
            logger.info("bloom_snapshot_missing", key=self.snapshot_key)
            return None

        try:
            cache = MembershipCache.deserialize(blob)
        except DecodeError as e:
            logger.warning("bloom_snapshot_invalid", error=str(e))
            return None

        logger.info("bloom_cache_restored", item_count=cache.item_count, capacity=cache.capacity)
        return cache

    async def _warm(self) -> tuple[MembershipCache, bool]:
        """Build from the store; on failure return an empty default-sized cache."""
        try:
            return await self.warmer.build(), True
        except Exception:
            logger.exception("bloom_warm_failed")

        logger.warning(
            "bloom_cache_empty_fallback",
            capacity=self.capacity,
            error_rate=self.error_rate,
        )
        return MembershipCache.create(self.capacity, self.error_rate), False

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def may_contain(self, username: str) -> bool:
        """Cache lookup. Always False (ask the store) when not READY."""
        cache = self.cache
        if cache is None:
            return False
        return cache.may_contain(cache_key(username))

    def record(self, username: str) -> None:
        """Insert a username known to exist in the authoritative store."""
        self.record_many([username])

    def record_many(self, usernames: Iterable[str]) -> None:
        keys = [cache_key(u) for u in usernames if u and u.strip()]
        if not keys:
            return
        cache = self.cache
        if cache is not None:
            if cache.add_bulk(keys):
                self._dirty = True
        elif self._state is CacheState.INITIALIZING:
            self._pending.extend(keys)
        else:
            logger.debug("bloom_record_skipped_uninitialized", count=len(keys))

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _persist(self, cache: MembershipCache) -> bool:
        try:
            if not await self.persistence.is_connected():
                logger.warning("bloom_snapshot_not_saved", reason="disconnected")
                return False
            ok = await self.persistence.set(self.snapshot_key, cache.serialize())
        except PersistenceError:
            logger.error("bloom_snapshot_save_failed", exc_info=True)
            return False
        if ok:
            logger.debug("bloom_snapshot_saved", item_count=cache.item_count)
        else:
            logger.warning("bloom_snapshot_not_saved", reason="write_failed")
        return ok

    async def flush(self) -> bool:
        """Persist the snapshot if anything changed since the last save.

        Returns True when a snapshot was written. Failures leave the cache
        marked dirty for the next flush. Nothing is written while the cache
        is degraded, so the next start warms from the store again.
        """
        async with self._flush_lock:
            written = False
            if self._degraded:
                logger.debug("bloom_snapshot_skipped_degraded", dirty=self._dirty)
                return written
            while self._dirty:
                cache = self.cache
                if cache is None:
                    return written
                self._dirty = False
                if not await self._persist(cache):
                    self._dirty = True
                    return written
                written = True
            return written

    def schedule_flush(self) -> None:
        """Start a background flush unless one is already running."""
        if not self._dirty or self._degraded:
            return
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.create_task(self.flush())

    async def shutdown(self) -> None:
        """Best-effort final snapshot. Never raises."""
        try:
            if self._flush_task is not None:
                await asyncio.wait([self._flush_task])
            await self.flush()
        except Exception:
            logger.exception("bloom_shutdown_flush_failed")

    def stats(self) -> dict[str, Any]:
        cache = self.cache
        return {
            "state": self._state.value,
            "initialized": self.is_ready,
            "dirty": self._dirty,
            "degraded": self._degraded,
            "cache": cache.stats().as_dict() if cache is not None else None,
        }
