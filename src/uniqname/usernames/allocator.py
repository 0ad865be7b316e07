"""Username allocation and suggestions on top of the membership cache.

The cache is advisory and the authoritative store is ground truth: no name
is returned as available unless the store confirmed it, with the single
exception of the time-based fallback in :meth:`UsernameAllocator.allocate_unique`.
"""

from __future__ import annotations

import random
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import structlog

from uniqname.exceptions import StoreError
from uniqname.usernames.naming import (
    SEPARATOR,
    fit,
    has_stem,
    is_valid_username,
    normalize_username,
    placeholder_root,
    random_token,
    to_base36,
)
from uniqname.usernames.strategies import STRATEGIES, Strategy, StrategyContext

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from uniqname.cache.guard import ReconciliationGuard
    from uniqname.store import AuthoritativeStore

logger = structlog.get_logger()

RANDOM_SUFFIX_LENGTH = 5
DEFAULT_MAX_RETRIES = 10
DEFAULT_MAX_SUGGESTIONS = 5


@dataclass
class UsernameAvailability:
    username: str
    is_available: bool
    suggestions: list[str] = field(default_factory=list)


@dataclass
class _CheckTally:
    """Authority outcomes within one operation."""

    answered: int = 0
    failed: int = 0

    @property
    def store_unreachable(self) -> bool:
        return self.failed > 0 and self.answered == 0


class UsernameAllocator:
    """Allocates unique usernames and proposes available alternatives."""

    def __init__(
        self,
        guard: ReconciliationGuard,
        store: AuthoritativeStore,
        rng: random.Random | None = None,
        strategies: Sequence[Strategy] = STRATEGIES,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.guard = guard
        self.store = store
        self.rng = rng if rng is not None else random.SystemRandom()
        self.strategies = tuple(strategies)
        self._clock = clock
        self._last_stamp = 0
        self._stamp_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    async def _store_has(self, name: str, tally: _CheckTally) -> bool | None:
        """Authoritative lookup. None when the store failed to answer."""
        try:
            exists = await self.store.exists_case_insensitive(name)
        except StoreError:
            tally.failed += 1
            logger.warning("username_store_check_failed", candidate=name, exc_info=True)
            return None
        tally.answered += 1
        return exists

    async def _is_available(self, name: str, tally: _CheckTally) -> bool:
        """Cache-then-store check for a generated candidate.

        A cache hit is taken as a collision without asking the store. On a
        store hit that the cache missed, the cache is updated to converge.
        """
        if self.guard.may_contain(name):
            return False
        exists = await self._store_has(name, tally)
        if exists is None:
            return False
        if exists:
            self.guard.record(name)
            return False
        return True

    def _accept(self, name: str) -> str:
        self.guard.record(name)
        self.guard.schedule_flush()
        return name

    # ------------------------------------------------------------------
    # Allocation
    # ------------------------------------------------------------------

    async def allocate_unique(self, base: str, max_random_retries: int = DEFAULT_MAX_RETRIES) -> str:
        """Return a username derived from ``base`` that is not taken.

        Raises:
            StoreError: If the store could not answer a single check, so no
                candidate could be verified.
        """
        root = normalize_username(base)
        if not has_stem(root):
            root = placeholder_root(self.rng)
        tally = _CheckTally()

        if is_valid_username(root):
            cached = self.guard.may_contain(root)
            exists = await self._store_has(root, tally)
            if exists is False:
                if cached:
                    logger.info("username_cache_false_positive", candidate=root)
                return self._accept(root)
            if exists and not cached:
                self.guard.record(root)

        for _ in range(max_random_retries):
            candidate = fit(root, SEPARATOR + random_token(self.rng, RANDOM_SUFFIX_LENGTH))
            if await self._is_available(candidate, tally):
                return self._accept(candidate)

        if tally.store_unreachable:
            msg = f"Unable to allocate a username for {base!r}: authoritative store unavailable"
            raise StoreError(msg)

        fallback = fit(root, SEPARATOR + self._time_suffix())
        logger.warning("username_time_fallback", root=root, candidate=fallback, retries=max_random_retries)
        return self._accept(fallback)

    def _time_suffix(self) -> str:
        """Base36 milliseconds, strictly increasing within this process."""
        with self._stamp_lock:
            stamp = max(int(self._clock() * 1000), self._last_stamp + 1)
            self._last_stamp = stamp
        return to_base36(stamp)

    # ------------------------------------------------------------------
    # Suggestions
    # ------------------------------------------------------------------

    async def generate_suggestions(self, base: str, max_suggestions: int = DEFAULT_MAX_SUGGESTIONS) -> list[str]:
        """Propose up to ``max_suggestions`` distinct, store-verified names.

        May return fewer (even none) when candidates run out. Raises
        StoreError only when nothing was found and every store check failed.
        """
        if max_suggestions <= 0:
            return []

        requested = normalize_username(base)
        root = requested if has_stem(requested) else placeholder_root(self.rng)
        ctx = StrategyContext(root=root, rng=self.rng, year=datetime.now(timezone.utc).year)

        tally = _CheckTally()
        attempted: set[str] = {requested}
        found: list[str] = []

        for strategy in self.strategies:
            if len(found) >= max_suggestions:
                break
            for raw in strategy(ctx):
                candidate = normalize_username(raw)
                if candidate in attempted:
                    continue
                attempted.add(candidate)
                if not is_valid_username(candidate):
                    continue
                if await self._is_available(candidate, tally):
                    found.append(candidate)
                    if len(found) >= max_suggestions:
                        break

        if not found and tally.store_unreachable:
            msg = f"Unable to suggest usernames for {base!r}: authoritative store unavailable"
            raise StoreError(msg)

        self.rng.shuffle(found)
        logger.debug(
            "username_suggestions_generated",
            base=requested,
            count=len(found),
            attempted=len(attempted) - 1,
        )
        return found[:max_suggestions]

    async def check_availability(
        self,
        username: str,
        max_suggestions: int = DEFAULT_MAX_SUGGESTIONS,
    ) -> UsernameAvailability:
        """Tell whether ``username`` is free; suggest alternatives when it is not."""
        name = normalize_username(username)
        if is_valid_username(name) and name == username.strip().lower():
            tally = _CheckTally()
            exists = await self._store_has(name, tally)
            if exists is None:
                msg = f"Unable to check username {name!r}: authoritative store unavailable"
                raise StoreError(msg)
            if not exists:
                return UsernameAvailability(username=name, is_available=True)
            if not self.guard.may_contain(name):
                self.guard.record(name)

        suggestions = await self.generate_suggestions(username, max_suggestions)
        return UsernameAvailability(username=name, is_available=False, suggestions=suggestions)
