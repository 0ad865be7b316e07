"""Cold-start cache build from the authoritative store."""

from __future__ import annotations

import math
from typing import TYPE_CHECKING

import structlog

from uniqname.cache.bloom import MembershipCache

if TYPE_CHECKING:
    from uniqname.store import AuthoritativeStore

logger = structlog.get_logger()

DEFAULT_PAGE_SIZE = 1000
DEFAULT_GROWTH_FACTOR = 2.5


def cache_key(username: str) -> str:
    """Normalize a username the way the cache stores it."""
    return username.strip().lower()


def warm_capacity(configured: int, row_count: int, growth_factor: float = DEFAULT_GROWTH_FACTOR) -> int:
    """Capacity for a fresh cache: the configured size or growth headroom over current rows."""
    return max(configured, math.ceil(row_count * growth_factor))


class CacheWarmer:
    """Builds a MembershipCache by paging through every existing username."""

    def __init__(
        self,
        store: AuthoritativeStore,
        capacity: int,
        error_rate: float,
        page_size: int = DEFAULT_PAGE_SIZE,
        growth_factor: float = DEFAULT_GROWTH_FACTOR,
    ) -> None:
        if page_size <= 0:
            msg = f"Page size must be positive, got {page_size}"
            raise ValueError(msg)
        self.store = store
        self.capacity = capacity
        self.error_rate = error_rate
        self.page_size = page_size
        self.growth_factor = growth_factor

    async def build(self) -> MembershipCache:
        """Create and populate a new cache.

        Raises:
            StoreError: If the store fails mid-scan. The partially filled
                cache is discarded by the caller.
        """
        row_count = await self.store.count_all()
        capacity = warm_capacity(self.capacity, row_count, self.growth_factor)
        cache = MembershipCache.create(capacity, self.error_rate)
        logger.info(
            "bloom_warm_started",
            row_count=row_count,
            capacity=capacity,
            error_rate=self.error_rate,
        )

        offset = 0
        loaded = 0
        while True:
            page = await self.store.list_page(offset, self.page_size)
            cache.add_bulk(cache_key(name) for name in page if name)
            loaded += len(page)
            offset += len(page)
            logger.debug("bloom_warm_page_loaded", loaded=loaded)
            if len(page) < self.page_size:
                break

        logger.info("bloom_warm_finished", loaded=loaded, item_count=cache.item_count)
        return cache
