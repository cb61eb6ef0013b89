"""
Shared test configuration and fixtures.

Provides an in-memory venue store that can be switched offline, a
controllable shift clock and a polling helper for callback-driven state.
"""

from __future__ import annotations

import asyncio
import tempfile
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest

from nightguard_core.cache import LocalSnapshotCache
from nightguard_core.exceptions import StorageConnectionError
from nightguard_core.session import ShiftSession
from nightguard_core.shift_clock import ShiftClock
from nightguard_core.store.base import ShiftKey, VenueKey
from nightguard_core.store.memory import InMemoryVenueStore

VENUE = VenueKey("co-1", "venue-1")
SHIFT = VENUE.shift("2024-03-14")


class FlakyStore(InMemoryVenueStore):
    """In-memory store whose connectivity can be cut and restored.

    Going offline fails every live subscription and makes every call
    raise StorageConnectionError until ``go_online`` is called.
    """

    def __init__(self) -> None:
        super().__init__()
        self.online = True
        self.update_calls: list[tuple[ShiftKey, dict[str, Any], dict[str, Any]]] = []

    def go_offline(self) -> None:
        self.online = False
        error = StorageConnectionError("memory://", ConnectionError("offline"))
        for registry in [*self._session_watchers.values(), *self._alert_watchers.values()]:
            for watcher in list(registry):
                watcher.fail(error)

    def go_online(self) -> None:
        self.online = True

    def _check(self) -> None:
        if not self.online:
            raise StorageConnectionError("memory://", ConnectionError("offline"))

    async def get_session(self, key):
        self._check()
        return await super().get_session(key)

    async def set_session(self, key, document):
        self._check()
        await super().set_session(key, document)

    async def update_session(self, key, set_fields, append_fields=None):
        self._check()
        self.update_calls.append((key, dict(set_fields), dict(append_fields or {})))
        await super().update_session(key, set_fields, append_fields)

    async def delete_session(self, key):
        self._check()
        return await super().delete_session(key)

    async def list_sessions(self, venue, limit, exclude_shift_date=None):
        self._check()
        return await super().list_sessions(venue, limit, exclude_shift_date)

    async def subscribe_session(self, key, on_snapshot, on_error):
        self._check()
        return await super().subscribe_session(key, on_snapshot, on_error)

    async def add_alert(self, venue, alert):
        self._check()
        return await super().add_alert(venue, alert)

    async def update_alert(self, venue, alert_id, fields):
        self._check()
        await super().update_alert(venue, alert_id, fields)

    async def subscribe_alerts(self, venue, on_change, on_error):
        self._check()
        return await super().subscribe_alerts(venue, on_change, on_error)

    async def get_venue_config(self, venue, name):
        self._check()
        return await super().get_venue_config(venue, name)


class MutableClock:
    """Wall clock that only moves when a test moves it."""

    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def set(self, moment: datetime) -> None:
        self.current = moment


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the event loop until ``predicate()`` is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


def session_factory(venue_name: str = "The Vault", max_capacity: int = 250):
    """Build an async session factory like the lifecycle manager's."""

    async def factory(shift_date: str) -> ShiftSession:
        return ShiftSession.new(shift_date, venue_name, max_capacity)

    return factory


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def cache(temp_dir: Path) -> LocalSnapshotCache:
    return LocalSnapshotCache(temp_dir / "cache")


@pytest.fixture
def store() -> InMemoryVenueStore:
    return InMemoryVenueStore()


@pytest.fixture
def flaky_store() -> FlakyStore:
    return FlakyStore()


@pytest.fixture
def wall_clock() -> MutableClock:
    return MutableClock(datetime(2024, 3, 14, 22, 0, tzinfo=UTC))


@pytest.fixture
def shift_clock(wall_clock: MutableClock) -> ShiftClock:
    return ShiftClock(now=wall_clock, tz=UTC)
