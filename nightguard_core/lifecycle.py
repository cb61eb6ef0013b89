"""
Shift session lifecycle.

Creates the session for the current shift, retires it when the shift
clock rolls over (deleting it if nothing happened during the shift),
resets it on "end shift" and serves the bounded history list.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass

from .cache import LocalSnapshotCache
from .config import CoreConfig
from .events import DEFAULT_POST_CHECKS, DEFAULT_PRE_CHECKS, ChecklistDefinition
from .exceptions import NightguardError, StorageIOError, ValidationError, VenueNotReadyError
from .logging_utils import ShiftLoggerAdapter
from .session import MALFORMED_DOCUMENT_ERRORS, ShiftSession
from .shift_clock import RolloverContext, ShiftClock, check_rollover
from .store.base import ShiftKey, VenueKey, VenueStore
from .sync.engine import SyncEngine, SyncState

logger = logging.getLogger(__name__)

CHECKLISTS_CONFIG = "checklists"


@dataclass(frozen=True)
class VenueContext:
    """Venue identity supplied by the auth/venue collaborator.

    Any missing field means "not ready": nothing is subscribed until
    all four are present.
    """

    company_id: str | None = None
    venue_id: str | None = None
    name: str | None = None
    max_capacity: int | None = None

    @property
    def missing(self) -> list[str]:
        missing = []
        if not self.company_id:
            missing.append("company_id")
        if not self.venue_id:
            missing.append("venue_id")
        if not self.name:
            missing.append("name")
        if self.max_capacity is None:
            missing.append("max_capacity")
        return missing

    @property
    def is_ready(self) -> bool:
        return not self.missing

    @property
    def key(self) -> VenueKey:
        if not self.is_ready:
            raise VenueNotReadyError(self.missing)
        return VenueKey(self.company_id, self.venue_id)  # type: ignore[arg-type]


async def load_checklist_definitions(
    store: VenueStore,
    venue: VenueKey,
) -> tuple[list[ChecklistDefinition], list[ChecklistDefinition]]:
    """Load the venue's pre/post-event checklist definitions.

    Falls back to the built-in defaults when the config document is
    missing, empty or unreachable.
    """
    try:
        doc = await store.get_venue_config(venue, CHECKLISTS_CONFIG)
    except NightguardError as e:
        logger.warning(f"Could not load checklist config for venue {venue.venue_id}, using defaults: {e}")
        doc = None

    if not doc:
        return list(DEFAULT_PRE_CHECKS), list(DEFAULT_POST_CHECKS)

    try:
        pre = [ChecklistDefinition.from_dict(d, "pre") for d in doc.get("pre") or []]
        post = [ChecklistDefinition.from_dict(d, "post") for d in doc.get("post") or []]
    except (KeyError, TypeError) as e:
        logger.warning(f"Malformed checklist config for venue {venue.venue_id}, using defaults: {e}")
        return list(DEFAULT_PRE_CHECKS), list(DEFAULT_POST_CHECKS)

    return pre or list(DEFAULT_PRE_CHECKS), post or list(DEFAULT_POST_CHECKS)


class SessionLifecycleManager:
    """Owns the sync engine for the active shift of one venue."""

    def __init__(
        self,
        store: VenueStore,
        cache: LocalSnapshotCache | None,
        context: VenueContext,
        config: CoreConfig | None = None,
        clock: ShiftClock | None = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.context = context
        self.config = config or CoreConfig()
        self.clock = clock or ShiftClock()

        self._engine: SyncEngine | None = None
        self._history: list[ShiftSession] = []
        self._rollover_task: asyncio.Task[None] | None = None
        self._retiring: dict[asyncio.Task[None], SyncEngine] = {}

        self.on_engine_started: Callable[[SyncEngine], None] | None = None
        self.on_rollover: Callable[[str, str], None] | None = None
        self.on_history_changed: Callable[[list[ShiftSession]], None] | None = None

    @property
    def engine(self) -> SyncEngine | None:
        return self._engine

    @property
    def active_shift_date(self) -> str | None:
        return self._engine.shift_date if self._engine else None

    @property
    def history(self) -> list[ShiftSession]:
        return list(self._history)

    @property
    def is_running(self) -> bool:
        return self._engine is not None

    def _log(self, shift_date: str | None) -> ShiftLoggerAdapter:
        return ShiftLoggerAdapter.for_shift(logger, self.context.company_id, self.context.venue_id, shift_date)

    # -------------------------------------------------------------------------
    # Start / stop
    # -------------------------------------------------------------------------

    async def start(self) -> bool:
        """Start tracking the current shift.

        Returns:
            False if the venue context is not ready (nothing is started)
        """
        if not self.context.is_ready:
            logger.info(f"Venue context not ready, missing: {', '.join(self.context.missing)}")
            return False
        if self._engine is not None:
            return True

        await self._start_engine(self.clock.current_shift_date())
        await self.refresh_history()
        self._rollover_task = asyncio.create_task(self._rollover_loop())
        return True

    async def stop(self) -> None:
        """Cancel the rollover timer and tear down the engine.

        A retired shift still waiting to send its offline queue loses
        those writes here.
        """
        if self._rollover_task is not None:
            self._rollover_task.cancel()
            await asyncio.gather(self._rollover_task, return_exceptions=True)
            self._rollover_task = None
        retiring = list(self._retiring.items())
        for task, _ in retiring:
            task.cancel()
        await asyncio.gather(*(task for task, _ in retiring), return_exceptions=True)
        for _, outgoing in retiring:
            outgoing.discard_pending()
        if self._engine is not None:
            await self._engine.teardown()
            self._engine = None

    async def new_session(self, shift_date: str) -> ShiftSession:
        """Build an empty session seeded with the venue's defaults."""
        pre, post = await load_checklist_definitions(self.store, self.context.key)
        return ShiftSession.new(
            shift_date=shift_date,
            venue_name=self.context.name or "",
            max_capacity=self.context.max_capacity or 0,
            pre_checks=pre,
            post_checks=post,
            now=self.clock.now(),
        )

    async def _start_engine(self, shift_date: str) -> None:
        engine = SyncEngine(
            self.store,
            self.cache,
            self.context.key.shift(shift_date),
            self.new_session,
            reconnect_delay=self.config.reconnect_delay,
        )
        self._engine = engine
        if self.on_engine_started:
            self.on_engine_started(engine)
        await engine.start()
        self._log(shift_date).info(f"Tracking shift {shift_date}")

    # -------------------------------------------------------------------------
    # Rollover
    # -------------------------------------------------------------------------

    async def _rollover_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.rollover_interval)
            try:
                await self.check_rollover()
            except NightguardError as e:
                logger.error(f"Rollover check failed: {e}")

    async def check_rollover(self) -> bool:
        """Run one rollover check. Returns True if the shift rolled over."""
        active = self.active_shift_date
        if active is None:
            return False

        check = check_rollover(RolloverContext(active_shift_date=active, now=self.clock.now()), self.clock.tz)
        if not check.rolled_over:
            return False

        self._log(active).info(f"Shift rollover {check.previous_shift_date} -> {check.current_shift_date}")

        outgoing = self._engine
        if outgoing is not None:
            await outgoing.teardown(discard_pending=False)
        await self._start_engine(check.current_shift_date)
        if self.on_rollover:
            self.on_rollover(check.previous_shift_date, check.current_shift_date)

        previous = self.context.key.shift(check.previous_shift_date)
        if outgoing is not None and outgoing.pending_writes:
            self._log(previous.shift_date).info(
                f"Shift {previous.shift_date} retired with {outgoing.pending_writes} writes queued"
            )
            task = asyncio.create_task(self._retire(outgoing, previous))
            self._retiring[task] = outgoing
            task.add_done_callback(lambda t: self._retiring.pop(t, None))
        else:
            await self._discard_if_empty(previous)
        await self.refresh_history()
        return True

    async def _retire(self, outgoing: SyncEngine, key: ShiftKey) -> None:
        """Send a retired shift's offline queue, then prune it if empty."""
        await outgoing.drain_pending()
        await self._discard_if_empty(key)
        await self.refresh_history()

    async def _discard_if_empty(self, key: ShiftKey) -> None:
        """Delete the outgoing shift if it has no activity.

        Activity is re-read from the store here, after the outgoing engine
        has drained its writes. A document that cannot be parsed is kept.
        Failures are logged and ignored.
        """
        log = self._log(key.shift_date)
        try:
            doc = await self.store.get_session(key)
            if doc is None:
                return
            if not ShiftSession.from_document(doc).is_empty():
                log.info(f"Keeping shift {key.shift_date} as history")
                return
            if await self.store.delete_session(key):
                log.info(f"Deleted empty shift {key.shift_date}")
        except MALFORMED_DOCUMENT_ERRORS as e:
            log.warning(f"Keeping unreadable shift {key.shift_date}: {e!r}")
        except NightguardError as e:
            log.warning(f"Failed to prune empty shift {key.shift_date}: {e}")

    # -------------------------------------------------------------------------
    # End shift / history
    # -------------------------------------------------------------------------

    async def end_shift(self) -> None:
        """Replace tonight's data with a freshly seeded session, same shift date."""
        engine = self._engine
        if engine is None:
            raise VenueNotReadyError(self.context.missing or ["session"])
        fresh = await self.new_session(engine.shift_date)
        if engine.state == SyncState.TORN_DOWN:
            self._log(engine.shift_date).info("Shift rolled over during reset, nothing replaced")
            return
        await engine.replace_session(fresh)
        self._log(engine.shift_date).info("Shift data reset")

    def _set_history(self, sessions: list[ShiftSession]) -> None:
        self._history = sessions
        if self.on_history_changed:
            self.on_history_changed(self.history)

    async def refresh_history(self, limit: int | None = None) -> list[ShiftSession]:
        """Reload past shifts, newest first, excluding the active one.

        Falls back to the locally cached list when the store is unreachable.
        """
        if not self.context.is_ready:
            return []
        venue = self.context.key
        limit = limit or self.config.history_limit
        try:
            docs = await self.store.list_sessions(venue, limit, exclude_shift_date=self.active_shift_date)
        except NightguardError as e:
            logger.error(f"Error loading history: {e}")
            if self.cache is None:
                return self.history
            cached = await self.cache.load_history(venue.venue_id)
            docs = [d for d in cached if d.get("shiftDate") != self.active_shift_date]
        else:
            if self.cache is not None:
                try:
                    await self.cache.save_history(venue.venue_id, docs)
                except StorageIOError as e:
                    logger.warning(f"Failed to cache history: {e}")

        sessions = []
        for doc in docs[:limit]:
            try:
                sessions.append(ShiftSession.from_document(doc))
            except MALFORMED_DOCUMENT_ERRORS as e:
                logger.warning(f"Skipping unreadable shift {doc.get('shiftDate') or doc.get('id')}: {e!r}")
        self._set_history(sessions)
        return self.history

    async def delete_shift(self, shift_date: str) -> bool:
        """Delete a past shift and drop it from the history list.

        Returns:
            False if the delete could not be performed
        """
        if shift_date == self.active_shift_date:
            raise ValidationError("shift_date", "the active shift cannot be deleted", shift_date)
        try:
            await self.store.delete_session(self.context.key.shift(shift_date))
        except NightguardError as e:
            logger.error(f"Failed to delete shift {shift_date}: {e}")
            return False
        self._set_history([s for s in self._history if s.shift_date != shift_date])
        return True

    async def clear_local_cache(self) -> None:
        """Drop the offline snapshot and the cached history for this venue."""
        self._set_history([])
        if self.cache is not None and self.context.venue_id:
            await self.cache.clear(self.context.venue_id)
