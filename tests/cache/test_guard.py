"""Tests for the cache lifecycle: restore, warm, single-flight, flush."""

from __future__ import annotations

import asyncio
import random

import pytest

from uniqname.cache.bloom import MembershipCache
from uniqname.cache.guard import DEFAULT_SNAPSHOT_KEY, CacheState, ReconciliationGuard
from uniqname.exceptions import ConfigurationError
from uniqname.usernames.allocator import UsernameAllocator

from tests.conftest import TEST_CAPACITY, TEST_ERROR_RATE, FakePersistence, FakeStore

pytestmark = pytest.mark.asyncio


class TestInitialization:
    async def test_starts_uninitialized(self, guard: ReconciliationGuard) -> None:
        assert guard.state is CacheState.UNINITIALIZED
        assert guard.cache is None
        assert guard.stats()["initialized"] is False

    async def test_cold_start_warms_from_store(
        self, guard: ReconciliationGuard, store: FakeStore, persistence: FakePersistence
    ) -> None:
        """No snapshot: scan the store, become READY, persist the snapshot."""
        store.add(*(f"user{i}" for i in range(250)))

        await guard.initialize()

        assert guard.state is CacheState.READY
        assert all(guard.may_contain(f"user{i}") for i in range(250))
        assert DEFAULT_SNAPSHOT_KEY in persistence.data
        assert store.count_calls == 1

    async def test_restores_from_snapshot_without_scanning(
        self, guard: ReconciliationGuard, store: FakeStore, persistence: FakePersistence
    ) -> None:
        snapshot = MembershipCache.create(TEST_CAPACITY, TEST_ERROR_RATE)
        snapshot.add("johndoe")
        persistence.data[DEFAULT_SNAPSHOT_KEY] = snapshot.serialize()

        await guard.initialize()

        assert guard.is_ready
        assert guard.may_contain("johndoe")
        assert store.count_calls == 0
        assert store.page_calls == []

    async def test_corrupt_snapshot_falls_back_to_warm(
        self, guard: ReconciliationGuard, store: FakeStore, persistence: FakePersistence
    ) -> None:
        store.add("alice")
        persistence.data[DEFAULT_SNAPSHOT_KEY] = "garbage"

        await guard.initialize()

        assert guard.is_ready
        assert guard.may_contain("alice")
        assert store.count_calls == 1
        # Replaced with a decodable snapshot
        MembershipCache.deserialize(persistence.data[DEFAULT_SNAPSHOT_KEY])

    async def test_snapshot_read_failure_falls_back_to_warm(
        self, guard: ReconciliationGuard, store: FakeStore, persistence: FakePersistence
    ) -> None:
        store.add("alice")
        persistence.fail_get = True

        await guard.initialize()

        assert guard.is_ready
        assert guard.may_contain("alice")

    async def test_store_outage_falls_back_to_empty_cache(
        self, guard: ReconciliationGuard, store: FakeStore, persistence: FakePersistence
    ) -> None:
        """Warm failure still reaches READY, with an empty default-sized cache that is not persisted."""
        store.add("alice")
        store.fail_scan = True

        await guard.initialize()

        assert guard.is_ready
        assert guard.cache is not None
        assert guard.cache.item_count == 0
        assert guard.cache.capacity == TEST_CAPACITY
        assert guard.degraded
        assert DEFAULT_SNAPSHOT_KEY not in persistence.data

    async def test_persistence_unreachable_on_every_start(self, store: FakeStore) -> None:
        """Adapter down throughout: each cold start rebuilds from the store without error."""
        store.add("alice", "bob")
        persistence = FakePersistence(connected=False)

        first = ReconciliationGuard(store, persistence, capacity=TEST_CAPACITY, error_rate=TEST_ERROR_RATE)
        await first.initialize()
        await first.shutdown()
        assert first.is_ready

        second = ReconciliationGuard(store, persistence, capacity=TEST_CAPACITY, error_rate=TEST_ERROR_RATE)
        await second.initialize()
        assert second.is_ready
        assert second.may_contain("bob")
        assert store.count_calls == 2
        assert persistence.data == {}

    async def test_single_flight(self, guard: ReconciliationGuard, store: FakeStore) -> None:
        """Concurrent callers share one cold-start scan and all observe READY."""
        store.add(*(f"user{i}" for i in range(50)))
        store.scan_delay = 0.01

        await asyncio.gather(*(guard.initialize() for _ in range(20)))

        assert store.count_calls == 1
        assert guard.state is CacheState.READY

    async def test_initialize_is_noop_when_ready(self, ready_guard: ReconciliationGuard, store: FakeStore) -> None:
        await ready_guard.initialize()
        await ready_guard.initialize()
        assert store.count_calls == 1

    async def test_failure_returns_to_uninitialized(self, store: FakeStore, persistence: FakePersistence) -> None:
        """Invalid sizing aborts initialization; state resets so a retry is possible."""
        store.fail_scan = True
        bad = ReconciliationGuard(store, persistence, capacity=0, error_rate=0.01)

        with pytest.raises(ConfigurationError):
            await bad.initialize()
        assert bad.state is CacheState.UNINITIALIZED

        bad.warmer.capacity = 10
        bad.capacity = 10
        store.fail_scan = False
        await bad.initialize()
        assert bad.state is CacheState.READY

    async def test_warm_sizes_with_growth_headroom(self, store: FakeStore) -> None:
        store.add(*(f"user{i}" for i in range(1000)))
        small = ReconciliationGuard(store, FakePersistence(), capacity=100, error_rate=0.01, page_size=300)

        await small.initialize()

        assert small.cache is not None
        assert small.cache.capacity == 2500


class TestRecording:
    async def test_record_marks_dirty(self, ready_guard: ReconciliationGuard) -> None:
        ready_guard.record("NewUser ")
        assert ready_guard.may_contain("newuser")
        assert ready_guard.dirty

    async def test_record_ignored_when_uninitialized(self, guard: ReconciliationGuard) -> None:
        guard.record("alice")
        assert not guard.may_contain("alice")
        assert not guard.dirty

    async def test_records_during_initialization_are_applied(
        self, guard: ReconciliationGuard, store: FakeStore
    ) -> None:
        store.scan_delay = 0.01
        task = asyncio.create_task(guard.initialize())
        await asyncio.sleep(0)
        assert guard.state is CacheState.INITIALIZING

        guard.record("latecomer")
        await task

        assert guard.may_contain("latecomer")
        assert guard.dirty

    async def test_not_ready_reports_absent(self, guard: ReconciliationGuard) -> None:
        assert guard.may_contain("anything") is False


class TestFlush:
    async def test_flush_only_when_dirty(
        self, ready_guard: ReconciliationGuard, persistence: FakePersistence
    ) -> None:
        calls = persistence.set_calls
        assert await ready_guard.flush() is False
        assert persistence.set_calls == calls

        ready_guard.record("alice")
        assert await ready_guard.flush() is True
        assert not ready_guard.dirty
        restored = MembershipCache.deserialize(persistence.data[DEFAULT_SNAPSHOT_KEY])
        assert restored.may_contain("alice")

        assert await ready_guard.flush() is False

    async def test_failed_flush_stays_dirty(
        self, ready_guard: ReconciliationGuard, persistence: FakePersistence
    ) -> None:
        persistence.fail_set = True
        ready_guard.record("alice")

        assert await ready_guard.flush() is False
        assert ready_guard.dirty

    async def test_schedule_flush_runs_in_background(
        self, ready_guard: ReconciliationGuard, persistence: FakePersistence
    ) -> None:
        ready_guard.record("alice")
        ready_guard.schedule_flush()
        await ready_guard.shutdown()

        assert not ready_guard.dirty
        assert MembershipCache.deserialize(persistence.data[DEFAULT_SNAPSHOT_KEY]).may_contain("alice")

    async def test_shutdown_never_raises(self, ready_guard: ReconciliationGuard, persistence: FakePersistence) -> None:
        ready_guard.record("alice")

        async def broken_set(key: str, blob: str) -> bool:
            raise RuntimeError("boom")

        persistence.set = broken_set  # type: ignore[method-assign]
        await ready_guard.shutdown()


class TestReinitialize:
    async def test_reinitialize_rebuilds_from_store(
        self, ready_guard: ReconciliationGuard, store: FakeStore
    ) -> None:
        """Out-of-band rows show up after a forced rebuild, even with a snapshot present."""
        store.add("outofband")
        assert not ready_guard.may_contain("outofband")

        await ready_guard.reinitialize()

        assert ready_guard.state is CacheState.READY
        assert ready_guard.may_contain("outofband")
        assert store.count_calls == 2

    async def test_reinitialize_from_snapshot_reruns_startup(
        self, ready_guard: ReconciliationGuard, store: FakeStore
    ) -> None:
        await ready_guard.reinitialize(rebuild=False)

        assert ready_guard.is_ready
        assert store.count_calls == 1

    async def test_stats_include_cache(self, ready_guard: ReconciliationGuard) -> None:
        stats = ready_guard.stats()
        assert stats["state"] == "ready"
        assert stats["cache"]["capacity"] == TEST_CAPACITY


class TestDegradedStart:
    async def test_fallback_snapshot_is_never_persisted(
        self, store: FakeStore, persistence: FakePersistence, rng: random.Random
    ) -> None:
        """Allocations on the empty fallback must not hide existing rows from the next start."""
        store.add(*(f"user{i}" for i in range(50)))
        store.fail_scan = True
        first = ReconciliationGuard(store, persistence, capacity=TEST_CAPACITY, error_rate=TEST_ERROR_RATE)
        await first.initialize()
        assert first.degraded

        await UsernameAllocator(first, store, rng=rng).allocate_unique("newbie")
        assert first.dirty
        assert await first.flush() is False
        await first.shutdown()
        assert DEFAULT_SNAPSHOT_KEY not in persistence.data

        store.fail_scan = False
        store.count_calls = 0
        second = ReconciliationGuard(store, persistence, capacity=TEST_CAPACITY, error_rate=TEST_ERROR_RATE)
        await second.initialize()

        assert store.count_calls == 1
        assert not second.degraded
        assert all(second.may_contain(f"user{i}") for i in range(50))
        assert DEFAULT_SNAPSHOT_KEY in persistence.data

    async def test_reinitialize_clears_degraded(self, guard: ReconciliationGuard, store: FakeStore) -> None:
        store.add("alice")
        store.fail_scan = True
        await guard.initialize()
        assert guard.stats()["degraded"] is True

        store.fail_scan = False
        await guard.reinitialize()

        assert not guard.degraded
        assert guard.may_contain("alice")
