"""Tests for the shift sync engine.

The in-memory store delivers snapshots on the event loop exactly like a
realtime backend, so these tests exercise the full subscribe / optimistic
write / snapshot-replace cycle.
"""

from __future__ import annotations

import asyncio
import logging
from unittest.mock import AsyncMock

import pytest

from conftest import SHIFT, FlakyStore, session_factory, wait_until
from nightguard_core.cache import LocalSnapshotCache
from nightguard_core.exceptions import StorageConnectionError, StorageIOError, SyncTornDownError
from nightguard_core.session import ShiftSession
from nightguard_core.store.memory import InMemoryVenueStore
from nightguard_core.sync.engine import SyncEngine, SyncState


def make_engine(store, cache: LocalSnapshotCache | None = None, reconnect_delay: float = 0.01) -> SyncEngine:
    return SyncEngine(store, cache, SHIFT, session_factory(), reconnect_delay=reconnect_delay)


async def live_engine(store, cache: LocalSnapshotCache | None = None) -> SyncEngine:
    engine = make_engine(store, cache)
    await engine.start()
    await wait_until(lambda: engine.is_live)
    return engine


class TestConnecting:
    """Tests for the initial subscription."""

    async def test_creates_missing_session(self, store: InMemoryVenueStore) -> None:
        engine = make_engine(store)
        assert engine.state == SyncState.CONNECTING
        assert engine.is_loading is True

        await engine.start()
        await wait_until(lambda: engine.is_live)

        doc = await store.get_session(SHIFT)
        assert doc is not None
        assert doc["venueName"] == "The Vault"
        assert engine.session.shift_date == "2024-03-14"
        assert engine.is_loading is False
        await engine.teardown()

    async def test_adopts_existing_session(self, store: InMemoryVenueStore) -> None:
        existing = ShiftSession.new("2024-03-14", "The Vault", 250)
        for _ in range(7):
            existing.increment()
        await store.set_session(SHIFT, existing.to_document())

        engine = await live_engine(store)

        assert engine.session.current_capacity == 7
        assert len(engine.session.logs) == 7
        await engine.teardown()

    async def test_mutation_before_load_is_ignored(self, store: InMemoryVenueStore) -> None:
        engine = make_engine(store)

        engine.increment()

        assert engine.session is None
        assert engine.pending_writes == 0


class TestLiveWrites:
    """Tests for optimistic writes while LIVE."""

    async def test_increment_applies_locally_before_remote(self, store: InMemoryVenueStore) -> None:
        engine = await live_engine(store)

        engine.increment()

        assert engine.session.current_capacity == 1
        await engine.flush()
        doc = await store.get_session(SHIFT)
        assert doc["currentCapacity"] == 1
        assert len(doc["logs"]) == 1
        await engine.teardown()

    async def test_writes_are_partial(self, flaky_store: FlakyStore) -> None:
        engine = await live_engine(flaky_store)

        engine.increment()
        engine.decrement()
        engine.reset_clickers()
        await engine.flush()

        (_, inc_set, inc_append), (_, dec_set, dec_append), (_, reset_set, reset_append) = flaky_store.update_calls
        assert set(inc_append) == {"logs"}
        assert set(inc_set) == {"currentCapacity", "lastUpdated"}
        assert dec_set["currentCapacity"] == 0
        assert reset_set["logs"] == []
        assert reset_append == {}
        await engine.teardown()

    async def test_remote_snapshot_replaces_local_state(self, store: InMemoryVenueStore) -> None:
        engine = await live_engine(store)

        await store.update_session(SHIFT, {"currentCapacity": 42, "maxCapacity": 300})
        await wait_until(lambda: engine.session.current_capacity == 42)

        assert engine.session.max_capacity == 300
        await engine.teardown()

    async def test_concurrent_devices_appends_both_survive(self, store: InMemoryVenueStore) -> None:
        door_a = await live_engine(store)
        door_b = await live_engine(store)

        door_a.increment()
        door_b.increment()
        door_a.log_patrol("Toilets", "Sam")
        door_b.log_patrol("Car park", "Alex")
        await asyncio.gather(door_a.flush(), door_b.flush())

        doc = await store.get_session(SHIFT)
        assert len(doc["logs"]) == 2
        assert {p["area"] for p in doc["patrolLogs"]} == {"Toilets", "Car park"}
        await wait_until(lambda: len(door_a.session.logs) == 2 and len(door_b.session.logs) == 2)
        await door_a.teardown()
        await door_b.teardown()

    async def test_reset_keeps_remote_periodic_logs(self, store: InMemoryVenueStore) -> None:
        engine = await live_engine(store)
        engine.record_periodic_check("22:30", 12, 2, 10)
        await engine.flush()

        engine.reset_clickers()
        await engine.flush()

        doc = await store.get_session(SHIFT)
        assert doc["logs"] == []
        assert doc["currentCapacity"] == 0
        assert len(doc["periodicLogs"]) == 1
        await engine.teardown()

    async def test_duplicate_periodic_check_warns(self, store: InMemoryVenueStore) -> None:
        engine = await live_engine(store)
        warnings: list[str] = []
        engine.on_warning = warnings.append

        assert engine.record_periodic_check("23:00", 5, 0, 5) is True
        assert engine.record_periodic_check("23:00", 9, 1, 8) is False
        await engine.flush()

        assert len(warnings) == 1
        assert "23:00" in warnings[0]
        doc = await store.get_session(SHIFT)
        assert len(doc["periodicLogs"]) == 1
        assert doc["currentCapacity"] == 5
        await engine.teardown()

    async def test_replace_session_overwrites_document(self, store: InMemoryVenueStore) -> None:
        engine = await live_engine(store)
        engine.increment()
        await engine.flush()

        await engine.replace_session(ShiftSession.new("2024-03-14", "The Vault", 250))

        doc = await store.get_session(SHIFT)
        assert doc["logs"] == []
        assert doc["shiftDate"] == "2024-03-14"
        await engine.teardown()


class TestWriteFailures:
    """Tests for remote write failures while LIVE."""

    async def test_failed_write_is_not_rolled_back(self, store: InMemoryVenueStore, caplog) -> None:
        engine = await live_engine(store)
        store.update_session = AsyncMock(side_effect=StorageIOError("patch_session"))

        with caplog.at_level(logging.ERROR):
            engine.increment()
            await engine.flush()

        assert engine.session.current_capacity == 1
        assert engine.pending_writes == 0
        assert any("Remote write" in r.getMessage() for r in caplog.records)
        await engine.teardown()

    async def test_connection_failure_queues_write(self, store: InMemoryVenueStore) -> None:
        engine = await live_engine(store)
        store.update_session = AsyncMock(side_effect=StorageConnectionError("memory://"))

        engine.increment()
        await engine.flush()

        assert engine.session.current_capacity == 1
        assert engine.pending_writes == 1
        await engine.teardown()


class TestOffline:
    """Tests for DISCONNECTED fallback and reconnection."""

    async def test_disconnect_queue_and_reconnect(self, flaky_store: FlakyStore) -> None:
        engine = await live_engine(flaky_store)
        states: list[SyncState] = []
        engine.on_state_changed = states.append

        flaky_store.go_offline()
        await wait_until(lambda: engine.state == SyncState.DISCONNECTED)

        engine.increment()
        engine.increment()
        assert engine.session.current_capacity == 2
        assert engine.pending_writes == 2
        assert engine.is_live is False

        await asyncio.sleep(0.05)
        assert engine.state == SyncState.DISCONNECTED

        flaky_store.go_online()
        await wait_until(lambda: engine.is_live)

        doc = await flaky_store.get_session(SHIFT)
        assert len(doc["logs"]) == 2
        assert doc["currentCapacity"] == 2
        assert engine.pending_writes == 0
        assert states == [SyncState.DISCONNECTED, SyncState.LIVE]
        await engine.teardown()

    async def test_offline_start_uses_matching_cache(self, flaky_store: FlakyStore, cache: LocalSnapshotCache) -> None:
        cached = ShiftSession.new("2024-03-14", "The Vault", 250)
        cached.set_absolute(9)
        await cache.save_session("venue-1", cached.to_document())
        flaky_store.go_offline()

        engine = make_engine(flaky_store, cache, reconnect_delay=10)
        await engine.start()

        assert engine.state == SyncState.DISCONNECTED
        assert engine.session.current_capacity == 9
        assert engine.is_loading is False
        await engine.teardown()

    async def test_offline_start_ignores_cache_from_other_shift(
        self, flaky_store: FlakyStore, cache: LocalSnapshotCache
    ) -> None:
        stale = ShiftSession.new("2024-03-13", "The Vault", 250)
        stale.set_absolute(80)
        await cache.save_session("venue-1", stale.to_document())
        flaky_store.go_offline()

        engine = make_engine(flaky_store, cache, reconnect_delay=10)
        await engine.start()

        assert engine.session.shift_date == "2024-03-14"
        assert engine.session.current_capacity == 0
        await engine.teardown()

    async def test_live_snapshots_are_cached(self, store: InMemoryVenueStore, cache: LocalSnapshotCache) -> None:
        engine = await live_engine(store, cache)

        engine.increment()
        await engine.flush()

        cached = None
        for _ in range(200):
            cached = await cache.load_session("venue-1")
            if cached and cached["currentCapacity"] == 1:
                break
            await asyncio.sleep(0.01)
        assert cached is not None
        assert cached["currentCapacity"] == 1
        await engine.teardown()

    async def test_unreadable_snapshot_disconnects_and_keeps_session(self, store: InMemoryVenueStore) -> None:
        engine = await live_engine(store)
        engine.increment()
        await engine.flush()

        await store.update_session(SHIFT, {}, {"logs": [{"id": "x", "type": "sideways"}]})
        await wait_until(lambda: engine.state == SyncState.DISCONNECTED)

        assert engine.session.current_capacity == 1
        assert len(engine.session.logs) == 1

        await store.update_session(SHIFT, {"logs": []})
        await wait_until(lambda: engine.is_live)
        assert engine.session.logs == []
        await engine.teardown()

    async def test_unreadable_cache_is_ignored(self, flaky_store: FlakyStore, cache: LocalSnapshotCache) -> None:
        await cache.save_session(
            "venue-1", {"id": "2024-03-14", "shiftDate": "2024-03-14", "logs": [{"type": "sideways"}]}
        )
        flaky_store.go_offline()

        engine = make_engine(flaky_store, cache, reconnect_delay=10)
        await engine.start()

        assert engine.state == SyncState.DISCONNECTED
        assert engine.session.shift_date == "2024-03-14"
        assert engine.session.logs == []
        await engine.teardown()


class TestTeardown:
    """Tests for explicit teardown."""

    async def test_no_writes_after_teardown(self, store: InMemoryVenueStore) -> None:
        engine = await live_engine(store)

        await engine.teardown()

        assert engine.state == SyncState.TORN_DOWN
        with pytest.raises(SyncTornDownError):
            engine.increment()
        with pytest.raises(SyncTornDownError):
            await engine.replace_session(ShiftSession.new("2024-03-14", "The Vault", 250))

    async def test_stale_subscription_does_not_write_into_session(self, store: InMemoryVenueStore) -> None:
        engine = await live_engine(store)
        await engine.teardown()

        await store.update_session(SHIFT, {"currentCapacity": 99})
        await asyncio.sleep(0.02)

        assert engine.session.current_capacity == 0

    async def test_teardown_drains_in_flight_write(self, store: InMemoryVenueStore) -> None:
        engine = await live_engine(store)

        engine.increment()
        await engine.teardown()

        doc = await store.get_session(SHIFT)
        assert len(doc["logs"]) == 1

    async def test_teardown_is_idempotent(self, store: InMemoryVenueStore) -> None:
        engine = await live_engine(store)

        await engine.teardown()
        await engine.teardown()

        assert engine.state == SyncState.TORN_DOWN

    async def test_teardown_discards_offline_queue(self, flaky_store: FlakyStore) -> None:
        engine = await live_engine(flaky_store)
        flaky_store.go_offline()
        await wait_until(lambda: engine.state == SyncState.DISCONNECTED)
        engine.increment()

        await engine.teardown()

        assert engine.pending_writes == 0

    async def test_offline_queue_drains_after_teardown(self, flaky_store: FlakyStore) -> None:
        engine = await live_engine(flaky_store)
        flaky_store.go_offline()
        await wait_until(lambda: engine.state == SyncState.DISCONNECTED)
        engine.increment()
        engine.increment()

        await engine.teardown(discard_pending=False)
        assert engine.pending_writes == 2

        drain = asyncio.create_task(engine.drain_pending())
        await asyncio.sleep(0.05)
        assert not drain.done()
        flaky_store.go_online()
        await asyncio.wait_for(drain, timeout=2)

        doc = await flaky_store.get_session(SHIFT)
        assert len(doc["logs"]) == 2
        assert engine.pending_writes == 0
