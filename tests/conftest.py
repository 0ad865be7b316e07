"""Shared test fixtures.

The authoritative store and the snapshot store are replaced by in-memory
fakes that count calls and can be told to fail.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import AsyncGenerator, Iterable

import pytest
import pytest_asyncio

from uniqname.cache.guard import ReconciliationGuard
from uniqname.exceptions import PersistenceError, StoreError
from uniqname.usernames.allocator import UsernameAllocator

TEST_CAPACITY = 1000
TEST_ERROR_RATE = 0.01


class FakeStore:
    """In-memory AuthoritativeStore."""

    def __init__(self, usernames: Iterable[str] = ()) -> None:
        self.usernames: list[str] = list(usernames)
        self.fail_exists = False
        self.fail_scan = False
        self.scan_delay = 0.0
        self.exists_calls: list[str] = []
        self.count_calls = 0
        self.page_calls: list[tuple[int, int]] = []

    def add(self, *names: str) -> None:
        self.usernames.extend(names)

    async def exists_case_insensitive(self, name: str) -> bool:
        self.exists_calls.append(name)
        if self.fail_exists:
            msg = "database unreachable"
            raise StoreError(msg)
        lowered = name.lower()
        return any(u.lower() == lowered for u in self.usernames)

    async def count_all(self) -> int:
        self.count_calls += 1
        if self.fail_scan:
            msg = "database unreachable"
            raise StoreError(msg)
        if self.scan_delay:
            await asyncio.sleep(self.scan_delay)
        return len(self.usernames)

    async def list_page(self, offset: int, limit: int) -> list[str]:
        self.page_calls.append((offset, limit))
        if self.fail_scan:
            msg = "database unreachable"
            raise StoreError(msg)
        return self.usernames[offset : offset + limit]


class FakePersistence:
    """In-memory PersistenceAdapter."""

    def __init__(self, connected: bool = True) -> None:
        self.data: dict[str, str] = {}
        self.connected = connected
        self.fail_get = False
        self.fail_set = False
        self.set_calls = 0

    async def is_connected(self) -> bool:
        return self.connected

    async def get(self, key: str) -> str | None:
        if self.fail_get:
            msg = "redis unreachable"
            raise PersistenceError(msg)
        return self.data.get(key)

    async def set(self, key: str, blob: str) -> bool:
        self.set_calls += 1
        if self.fail_set or not self.connected:
            return False
        self.data[key] = blob
        return True


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def persistence() -> FakePersistence:
    return FakePersistence()


@pytest.fixture
def guard(store: FakeStore, persistence: FakePersistence) -> ReconciliationGuard:
    return ReconciliationGuard(
        store,
        persistence,
        capacity=TEST_CAPACITY,
        error_rate=TEST_ERROR_RATE,
        page_size=100,
    )


@pytest_asyncio.fixture
async def ready_guard(guard: ReconciliationGuard) -> AsyncGenerator[ReconciliationGuard, None]:
    await guard.initialize()
    yield guard
    await guard.shutdown()


@pytest.fixture
def rng() -> random.Random:
    return random.Random(20240601)


@pytest.fixture
def allocator(ready_guard: ReconciliationGuard, store: FakeStore, rng: random.Random) -> UsernameAllocator:
    return UsernameAllocator(ready_guard, store, rng=rng)
