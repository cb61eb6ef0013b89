"""
Shift synchronization engine.

Keeps one device's view of the live shift consistent with the remote
venue store while staying usable offline:
- LIVE: every remote snapshot replaces local state entirely
- Local mutations apply to memory first, then go out as partial
  writes (appends unioned, replaced fields overwritten)
- DISCONNECTED: falls back to the cached snapshot for the same shift,
  queues writes in call order and re-subscribes after a delay
- TORN_DOWN: subscription cancelled, no further writes accepted
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..cache import LocalSnapshotCache
from ..events import (
    BriefingPriority,
    ComplianceType,
    EjectionEvent,
    RejectionReason,
    VerificationMethod,
)
from ..exceptions import NightguardError, StorageConnectionError, SyncTornDownError
from ..logging_utils import ShiftLoggerAdapter
from ..session import MALFORMED_DOCUMENT_ERRORS, SessionMutation, ShiftSession
from ..store.base import ShiftKey, Subscription, VenueStore

logger = logging.getLogger(__name__)

SessionFactory = Callable[[str], Awaitable[ShiftSession]]


class SyncState(Enum):
    """Current state of the sync engine."""

    CONNECTING = "connecting"
    LIVE = "live"
    DISCONNECTED = "disconnected"
    TORN_DOWN = "torn_down"


@dataclass
class _PendingWrite:
    """A remote write waiting for connectivity.

    Exactly one of ``mutation`` (partial update) or ``document`` (full
    overwrite) is set.
    """

    mutation: SessionMutation | None = None
    document: dict[str, Any] | None = None

    @property
    def fields(self) -> list[str]:
        if self.mutation is not None:
            return self.mutation.changed_fields
        return ["<full document>"]


class SyncEngine:
    """Synchronizes one shift session between this device and the venue store.

    Example:
        >>> engine = SyncEngine(store, cache, ShiftKey("co", "venue", "2024-03-14"), factory)
        >>> await engine.start()
        >>> engine.increment()
        >>> await engine.teardown()
    """

    def __init__(
        self,
        store: VenueStore,
        cache: LocalSnapshotCache | None,
        key: ShiftKey,
        session_factory: SessionFactory,
        reconnect_delay: float = 5.0,
        auto_reconnect: bool = True,
    ) -> None:
        """Initialize the sync engine.

        Args:
            store: Remote venue store
            cache: Local snapshot cache used for offline fallback
            key: The shift this engine tracks
            session_factory: Builds a freshly seeded session for a shift date
            reconnect_delay: Seconds to wait before re-subscribing after an error
            auto_reconnect: Re-subscribe automatically after a failure
        """
        self.store = store
        self.cache = cache
        self.key = key
        self.session_factory = session_factory
        self.reconnect_delay = reconnect_delay
        self.auto_reconnect = auto_reconnect

        self._state = SyncState.CONNECTING
        self._session: ShiftSession | None = None
        self._subscription: Subscription | None = None
        self._pending: list[_PendingWrite] = []
        self._write_lock = asyncio.Lock()
        self._write_tasks: set[asyncio.Task[None]] = set()
        self._background: set[asyncio.Task[Any]] = set()
        self._reconnect_task: asyncio.Task[None] | None = None
        self._creating = False

        self.log = ShiftLoggerAdapter.for_shift(logger, key.company_id, key.venue_id, key.shift_date)

        # Callbacks
        self.on_session_changed: Callable[[ShiftSession], None] | None = None
        self.on_state_changed: Callable[[SyncState], None] | None = None
        self.on_warning: Callable[[str], None] | None = None

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def session(self) -> ShiftSession | None:
        return self._session

    @property
    def shift_date(self) -> str:
        return self.key.shift_date

    @property
    def is_live(self) -> bool:
        return self._state == SyncState.LIVE

    @property
    def is_loading(self) -> bool:
        return self._session is None and self._state != SyncState.TORN_DOWN

    @property
    def pending_writes(self) -> int:
        return len(self._pending)

    def _set_state(self, state: SyncState) -> None:
        if state == self._state:
            return
        self.log.info(f"Sync state {self._state.value} -> {state.value}")
        self._state = state
        if self.on_state_changed:
            self.on_state_changed(state)

    def _set_session(self, session: ShiftSession) -> None:
        self._session = session
        if self.on_session_changed:
            self.on_session_changed(session)

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # -------------------------------------------------------------------------
    # Subscription lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Issue the initial subscription."""
        if self._state == SyncState.TORN_DOWN:
            raise SyncTornDownError(self.shift_date)
        await self._subscribe()

    async def _subscribe(self) -> None:
        try:
            self._subscription = await self.store.subscribe_session(self.key, self._on_snapshot, self._on_error)
        except NightguardError as e:
            self.log.error(f"Subscribe failed: {e}")
            await self._enter_disconnected()

    def _on_snapshot(self, document: dict[str, Any] | None) -> None:
        if self._state == SyncState.TORN_DOWN:
            return
        if document is None:
            if not self._creating:
                self._creating = True
                self._spawn(self._create_remote_session())
            return

        try:
            session = ShiftSession.from_document(document)
        except MALFORMED_DOCUMENT_ERRORS as e:
            self._on_error(ValueError(f"Unreadable shift document: {e!r}"))
            return
        self._set_state(SyncState.LIVE)
        self._set_session(session)
        if self.cache is not None:
            self._spawn(self._save_cache(session.to_document()))
        if self._pending:
            self._spawn(self._flush_pending_live())

    def _on_error(self, error: Exception) -> None:
        if self._state == SyncState.TORN_DOWN:
            return
        self.log.error(f"Sync error: {error}")
        if self._subscription is not None:
            self._spawn(self._subscription.unsubscribe())
            self._subscription = None
        self._spawn(self._enter_disconnected())

    async def _create_remote_session(self) -> None:
        try:
            session = await self.session_factory(self.shift_date)
            if self._state == SyncState.TORN_DOWN:
                return
            try:
                await self.store.set_session(self.key, session.to_document())
                self.log.info(f"Created shift session {self.shift_date}")
            except NightguardError as e:
                self.log.error(f"Failed to create shift session remotely: {e}")
                self._pending.append(_PendingWrite(document=session.to_document()))
            if self._session is None:
                self._set_session(session)
        finally:
            self._creating = False

    async def _save_cache(self, document: dict[str, Any]) -> None:
        try:
            await self.cache.save_session(self.key.venue_id, document)  # type: ignore[union-attr]
        except NightguardError as e:
            self.log.warning(f"Failed to cache session snapshot: {e}")

    async def _load_fallback(self) -> ShiftSession:
        if self.cache is not None:
            cached = await self.cache.load_session(self.key.venue_id)
            if cached and cached.get("shiftDate") == self.shift_date:
                try:
                    session = ShiftSession.from_document(cached)
                except MALFORMED_DOCUMENT_ERRORS as e:
                    self.log.warning(f"Ignoring unreadable cached snapshot: {e!r}")
                else:
                    self.log.info("Using cached snapshot while offline")
                    return session
            elif cached:
                self.log.info(f"Cached snapshot is for shift {cached.get('shiftDate')}, starting fresh")
        return await self.session_factory(self.shift_date)

    async def _enter_disconnected(self) -> None:
        if self._state == SyncState.TORN_DOWN:
            return
        self._set_state(SyncState.DISCONNECTED)

        if self._session is None:
            session = await self._load_fallback()
            if self._state == SyncState.TORN_DOWN:
                return
            if self._session is None:
                self._set_session(session)

        if self.auto_reconnect and (self._reconnect_task is None or self._reconnect_task.done()):
            self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        while self._state == SyncState.DISCONNECTED:
            await asyncio.sleep(self.reconnect_delay)
            if self._state != SyncState.DISCONNECTED:
                return
            async with self._write_lock:
                flushed = await self._flush_pending()
            if not flushed:
                continue
            try:
                self._subscription = await self.store.subscribe_session(
                    self.key, self._on_snapshot, self._on_error
                )
                self.log.info("Re-subscribed after disconnect")
                return
            except NightguardError as e:
                self.log.warning(f"Re-subscribe failed: {e}")

    async def teardown(self, drain_timeout: float | None = 5.0, discard_pending: bool = True) -> None:
        """Cancel the subscription and stop accepting writes.

        Writes already dispatched get up to ``drain_timeout`` seconds to
        complete; anything still running after that is cancelled. Writes
        queued while offline are dropped unless ``discard_pending`` is False,
        in which case the caller is expected to :meth:`drain_pending`.
        """
        if self._state == SyncState.TORN_DOWN:
            return
        self._set_state(SyncState.TORN_DOWN)

        if self._subscription is not None:
            await self._subscription.unsubscribe()
            self._subscription = None

        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            await asyncio.gather(self._reconnect_task, return_exceptions=True)
            self._reconnect_task = None

        outstanding = self._write_tasks | self._background
        if outstanding and drain_timeout:
            await asyncio.wait(outstanding, timeout=drain_timeout)
        for task in [*self._write_tasks, *self._background]:
            task.cancel()
        await asyncio.gather(*self._write_tasks, *self._background, return_exceptions=True)

        if discard_pending:
            self.discard_pending()

    async def drain_pending(self, retry_delay: float | None = None) -> None:
        """Send the offline queue, retrying until the store accepts it.

        Works after teardown, which is how a retired shift gets its last
        writes out once the device is back online.
        """
        delay = self.reconnect_delay if retry_delay is None else retry_delay
        while self._pending:
            async with self._write_lock:
                if await self._flush_pending():
                    break
            await asyncio.sleep(delay)
        self.log.info("Offline queue drained")

    def discard_pending(self) -> None:
        if self._pending:
            self.log.warning(f"Discarding {len(self._pending)} unsent writes")
            self._pending.clear()

    # -------------------------------------------------------------------------
    # Remote writes
    # -------------------------------------------------------------------------

    async def _send(self, write: _PendingWrite) -> None:
        if write.document is not None:
            await self.store.set_session(self.key, write.document)
        elif write.mutation is not None:
            await self.store.update_session(self.key, write.mutation.set_fields, write.mutation.append_fields)

    async def _flush_pending(self) -> bool:
        """Send queued writes in order. Caller holds the write lock."""
        while self._pending:
            write = self._pending[0]
            try:
                await self._send(write)
            except StorageConnectionError as e:
                self.log.warning(f"Still offline, {len(self._pending)} writes queued: {e}")
                return False
            except NightguardError as e:
                self.log.error(f"Dropping queued write of {write.fields}: {e}")
            self._pending.pop(0)
        return True

    async def _flush_pending_live(self) -> None:
        async with self._write_lock:
            await self._flush_pending()

    async def _push(self, write: _PendingWrite) -> None:
        async with self._write_lock:
            if self._pending and not await self._flush_pending():
                self._pending.append(write)
                return
            try:
                await self._send(write)
            except StorageConnectionError as e:
                self.log.error(f"Remote write of {write.fields} failed, queued for retry: {e}")
                self._pending.append(write)
            except NightguardError as e:
                self.log.error(f"Remote write of {write.fields} failed: {e}")

    def _dispatch(self, write: _PendingWrite) -> None:
        if self._state != SyncState.LIVE:
            self._pending.append(write)
            return
        task = asyncio.create_task(self._push(write))
        self._write_tasks.add(task)
        task.add_done_callback(self._write_tasks.discard)

    async def flush(self) -> None:
        """Wait until every dispatched write has completed."""
        while self._write_tasks:
            await asyncio.gather(*list(self._write_tasks), return_exceptions=True)

    def _apply(self, operation: Callable[[ShiftSession], SessionMutation | None]) -> SessionMutation | None:
        if self._state == SyncState.TORN_DOWN:
            raise SyncTornDownError(self.shift_date)
        if self._session is None:
            self.log.warning("Mutation ignored, shift session not loaded yet")
            return None

        mutation = operation(self._session)
        if mutation is None or mutation.is_empty:
            return mutation
        self._dispatch(_PendingWrite(mutation=mutation))
        if self.on_session_changed:
            self.on_session_changed(self._session)
        return mutation

    async def replace_session(self, session: ShiftSession) -> None:
        """Overwrite the whole shift document with ``session``."""
        if self._state == SyncState.TORN_DOWN:
            raise SyncTornDownError(self.shift_date)
        self._set_session(session)
        write = _PendingWrite(document=session.to_document())
        if self._state != SyncState.LIVE:
            self._pending.append(write)
            return
        await self._push(write)

    # -------------------------------------------------------------------------
    # Session operations
    # -------------------------------------------------------------------------

    def increment(self) -> None:
        self._apply(lambda s: s.increment())

    def decrement(self) -> None:
        self._apply(lambda s: s.decrement())

    def set_absolute(self, new_value: int) -> None:
        """Manual occupancy correction. Not safe to race across devices."""
        self._apply(lambda s: s.set_absolute(new_value))

    def sync_bulk_counts(self, target_in: int, target_out: int) -> None:
        self._apply(lambda s: s.sync_bulk_counts(target_in, target_out))

    def record_periodic_check(
        self,
        time_label: str,
        count_in: int,
        count_out: int,
        count_total: int,
        sync_counts: bool = True,
    ) -> bool:
        """Record a periodic check.

        Returns:
            False if a check for ``time_label`` already exists (nothing changes
            and a warning is raised through ``on_warning``), True otherwise
        """
        if self._session is not None and self._session.has_periodic_check(time_label):
            message = f"A check for {time_label} has already been logged this shift"
            self.log.warning(message)
            if self.on_warning:
                self.on_warning(message)
            return False
        mutation = self._apply(
            lambda s: s.record_periodic_check(time_label, count_in, count_out, count_total, sync_counts)
        )
        return mutation is not None

    def reset_clickers(self) -> None:
        """Clear the door-count log. Whole-array overwrite."""
        self._apply(lambda s: s.reset_clickers())

    def set_max_capacity(self, max_capacity: int) -> None:
        self._apply(lambda s: s.set_max_capacity(max_capacity))

    def toggle_checklist_item(
        self,
        list_id: str,
        item_id: str,
        checked_by: str | None = None,
        verified: bool = False,
        method: VerificationMethod = VerificationMethod.MANUAL,
    ) -> None:
        """Flip a checklist item. Whole-array overwrite."""
        self._apply(lambda s: s.toggle_checklist_item(list_id, item_id, checked_by, verified, method))

    def set_briefing(
        self,
        text: str,
        priority: BriefingPriority = BriefingPriority.INFO,
        set_by: str = "Admin",
    ) -> None:
        self._apply(lambda s: s.set_briefing(text, priority, set_by))

    def log_rejection(self, reason: RejectionReason) -> None:
        self._apply(lambda s: s.log_rejection(reason))

    def remove_rejection(self, event_id: str) -> None:
        self._apply(lambda s: s.remove_rejection(event_id))

    def add_ejection(self, ejection: EjectionEvent) -> None:
        self._apply(lambda s: s.add_ejection(ejection))

    def remove_ejection(self, event_id: str) -> None:
        """Delete an ejection by id. Whole-array overwrite."""
        self._apply(lambda s: s.remove_ejection(event_id))

    def remove_periodic_log(self, event_id: str) -> None:
        """Delete a periodic check by id. Whole-array overwrite."""
        self._apply(lambda s: s.remove_periodic_log(event_id))

    def log_patrol(
        self,
        area: str,
        checked_by: str,
        method: VerificationMethod = VerificationMethod.MANUAL,
        checkpoint_id: str | None = None,
    ) -> None:
        self._apply(lambda s: s.log_patrol(area, checked_by, method, checkpoint_id))

    def add_compliance_log(
        self,
        compliance_type: ComplianceType,
        location: str,
        description: str,
        logged_by: str,
        photo_url: str = "",
    ) -> None:
        self._apply(lambda s: s.add_compliance_log(compliance_type, location, description, logged_by, photo_url))

    def resolve_compliance_log(self, event_id: str, resolved_by: str, notes: str) -> None:
        self._apply(lambda s: s.resolve_compliance_log(event_id, resolved_by, notes))
