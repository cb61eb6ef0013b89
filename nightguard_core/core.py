"""
UI-facing facade over the shift sync core.

Wires together the lifecycle manager (and through it the sync engine
for the active shift), the venue alert feed and the inactivity timer,
and exposes the read state and operations a door-counter UI needs.

Usage:

    >>> core = NightguardCore.create(CoreConfig.from_environment())
    >>> await core.start(VenueContext("co-1", "venue-1", "The Vault", 250))
    >>> core.increment()
    >>> core.session.current_capacity
    1
    >>> await core.logout()
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from .cache import LocalSnapshotCache
from .config import CoreConfig
from .events import (
    Alert,
    AlertType,
    Briefing,
    BriefingPriority,
    ComplianceType,
    EjectionEvent,
    RejectionReason,
    VerificationMethod,
)
from .inactivity import InactivityMonitor
from .lifecycle import SessionLifecycleManager, VenueContext
from .logging_utils import PACKAGE_LOGGER, configure_structured_logging
from .session import ShiftSession
from .shift_clock import ShiftClock
from .store.base import VenueStore
from .sync.alerts import AlertFeed
from .sync.engine import SyncEngine, SyncState

logger = logging.getLogger(__name__)


class NightguardCore:
    """Single entry point for the UI.

    Every mutating operation first records user activity, then delegates
    to the sync engine for the active shift. While the venue context is
    not ready the operations are not attempted.
    """

    def __init__(
        self,
        store: VenueStore,
        config: CoreConfig | None = None,
        cache: LocalSnapshotCache | None = None,
        clock: ShiftClock | None = None,
        enable_inactivity_logout: bool = True,
    ) -> None:
        self.store = store
        self.config = config or CoreConfig()
        self.cache = cache
        self.clock = clock or ShiftClock()
        self.enable_inactivity_logout = enable_inactivity_logout

        self._context = VenueContext()
        self._lifecycle: SessionLifecycleManager | None = None
        self._alert_feed: AlertFeed | None = None
        self._inactivity = InactivityMonitor(
            self.logout,
            limit=self.config.inactivity_limit,
            check_interval=self.config.inactivity_check_interval,
        )

        # Callbacks
        self.on_warning: Callable[[str], None] | None = None
        self.on_logout: Callable[[], None] | None = None

    @classmethod
    def create(cls, config: CoreConfig) -> NightguardCore:
        """Build a core backed by Cosmos DB and the on-disk snapshot cache.

        Also applies the configured log level, switching the package logger
        to JSON output when ``log_json`` is set.
        """
        from .store.cosmos import CosmosVenueStore

        level = logging.getLevelNamesMapping().get(config.log_level, logging.INFO)
        if config.log_json:
            configure_structured_logging(level)
        else:
            logging.getLogger(PACKAGE_LOGGER).setLevel(level)

        return cls(CosmosVenueStore(config), config, LocalSnapshotCache(config.cache_dir))

    # -------------------------------------------------------------------------
    # Read state
    # -------------------------------------------------------------------------

    @property
    def context(self) -> VenueContext:
        return self._context

    @property
    def is_ready(self) -> bool:
        return self._context.is_ready

    @property
    def engine(self) -> SyncEngine | None:
        return self._lifecycle.engine if self._lifecycle else None

    @property
    def session(self) -> ShiftSession | None:
        engine = self.engine
        return engine.session if engine else None

    @property
    def history(self) -> list[ShiftSession]:
        return self._lifecycle.history if self._lifecycle else []

    @property
    def alerts(self) -> list[Alert]:
        return self._alert_feed.alerts if self._alert_feed else []

    @property
    def active_briefing(self) -> Briefing | None:
        session = self.session
        if session is None or session.briefing is None or not session.briefing.active:
            return None
        return session.briefing

    @property
    def is_live(self) -> bool:
        engine = self.engine
        return engine.is_live if engine else False

    @property
    def is_loading(self) -> bool:
        engine = self.engine
        return engine.is_loading if engine else self.is_ready

    # -------------------------------------------------------------------------
    # Venue lifecycle
    # -------------------------------------------------------------------------

    async def start(self, context: VenueContext) -> bool:
        """Begin tracking the venue's current shift.

        Returns:
            False if the context is missing identifiers (nothing is started)
        """
        self._context = context
        if not context.is_ready:
            logger.info(f"Waiting for venue context, missing: {', '.join(context.missing)}")
            return False

        lifecycle = SessionLifecycleManager(self.store, self.cache, context, self.config, self.clock)
        lifecycle.on_engine_started = self._attach_engine
        self._lifecycle = lifecycle
        await lifecycle.start()

        self._alert_feed = AlertFeed(self.store, context.key, reconnect_delay=self.config.reconnect_delay)
        await self._alert_feed.start()

        if self.enable_inactivity_logout:
            self._inactivity.start()
        return True

    def _attach_engine(self, engine: SyncEngine) -> None:
        engine.on_warning = self._warn

    def _warn(self, message: str) -> None:
        if self.on_warning:
            self.on_warning(message)

    async def _teardown(self) -> None:
        if self._lifecycle is not None:
            await self._lifecycle.stop()
            self._lifecycle = None
        if self._alert_feed is not None:
            await self._alert_feed.stop()
            self._alert_feed = None
        await self._inactivity.stop()

    async def switch_venue(self, context: VenueContext) -> bool:
        """Tear everything down and start again for another venue.

        A context with missing identifiers leaves the core stopped.
        """
        logger.info(f"Switching venue {self._context.venue_id} -> {context.venue_id}")
        await self._teardown()
        return await self.start(context)

    async def logout(self) -> None:
        await self._teardown()
        self._context = VenueContext()
        if self.on_logout:
            self.on_logout()

    async def close(self) -> None:
        await self._teardown()
        await self.store.close()

    def touch(self) -> None:
        """Record user activity for the inactivity timer."""
        self._inactivity.touch()

    def _active_engine(self) -> SyncEngine | None:
        self.touch()
        engine = self.engine
        if engine is None:
            logger.debug("No active shift, operation not attempted")
            return None
        if engine.state == SyncState.TORN_DOWN:
            logger.info(f"Shift {engine.shift_date} is being replaced, operation not attempted")
            return None
        return engine

    # -------------------------------------------------------------------------
    # Session operations
    # -------------------------------------------------------------------------

    def increment(self) -> None:
        engine = self._active_engine()
        if engine:
            engine.increment()

    def decrement(self) -> None:
        engine = self._active_engine()
        if engine:
            engine.decrement()

    def set_absolute(self, new_value: int) -> None:
        engine = self._active_engine()
        if engine:
            engine.set_absolute(new_value)

    def sync_bulk_counts(self, target_in: int, target_out: int) -> None:
        engine = self._active_engine()
        if engine:
            engine.sync_bulk_counts(target_in, target_out)

    def record_periodic_check(
        self,
        time_label: str,
        count_in: int,
        count_out: int,
        count_total: int,
        sync_counts: bool = True,
    ) -> bool:
        engine = self._active_engine()
        if engine:
            return engine.record_periodic_check(time_label, count_in, count_out, count_total, sync_counts)
        return False

    def reset_clickers(self) -> None:
        engine = self._active_engine()
        if engine:
            engine.reset_clickers()

    def set_max_capacity(self, max_capacity: int) -> None:
        engine = self._active_engine()
        if engine:
            engine.set_max_capacity(max_capacity)

    def toggle_checklist_item(
        self,
        list_id: str,
        item_id: str,
        checked_by: str | None = None,
        verified: bool = False,
        method: VerificationMethod = VerificationMethod.MANUAL,
    ) -> None:
        engine = self._active_engine()
        if engine:
            engine.toggle_checklist_item(list_id, item_id, checked_by, verified, method)

    def set_briefing(
        self,
        text: str,
        priority: BriefingPriority = BriefingPriority.INFO,
        set_by: str = "Admin",
    ) -> None:
        engine = self._active_engine()
        if engine:
            engine.set_briefing(text, priority, set_by)

    def log_rejection(self, reason: RejectionReason) -> None:
        engine = self._active_engine()
        if engine:
            engine.log_rejection(reason)

    def remove_rejection(self, event_id: str) -> None:
        engine = self._active_engine()
        if engine:
            engine.remove_rejection(event_id)

    def add_ejection(self, ejection: EjectionEvent) -> None:
        engine = self._active_engine()
        if engine:
            engine.add_ejection(ejection)

    def remove_ejection(self, event_id: str) -> None:
        engine = self._active_engine()
        if engine:
            engine.remove_ejection(event_id)

    def remove_periodic_log(self, event_id: str) -> None:
        engine = self._active_engine()
        if engine:
            engine.remove_periodic_log(event_id)

    def log_patrol(
        self,
        area: str,
        checked_by: str,
        method: VerificationMethod = VerificationMethod.MANUAL,
        checkpoint_id: str | None = None,
    ) -> None:
        engine = self._active_engine()
        if engine:
            engine.log_patrol(area, checked_by, method, checkpoint_id)

    def add_compliance_log(
        self,
        compliance_type: ComplianceType,
        location: str,
        description: str,
        logged_by: str,
        photo_url: str = "",
    ) -> None:
        engine = self._active_engine()
        if engine:
            engine.add_compliance_log(compliance_type, location, description, logged_by, photo_url)

    def resolve_compliance_log(self, event_id: str, resolved_by: str, notes: str) -> None:
        engine = self._active_engine()
        if engine:
            engine.resolve_compliance_log(event_id, resolved_by, notes)

    # -------------------------------------------------------------------------
    # Shift records
    # -------------------------------------------------------------------------

    async def end_shift(self) -> None:
        if self._active_engine() is not None and self._lifecycle is not None:
            await self._lifecycle.end_shift()

    async def delete_shift(self, shift_date: str) -> bool:
        self.touch()
        if self._lifecycle is None:
            return False
        return await self._lifecycle.delete_shift(shift_date)

    async def refresh_history(self, limit: int | None = None) -> list[ShiftSession]:
        if self._lifecycle is None:
            return []
        return await self._lifecycle.refresh_history(limit)

    async def clear_local_cache(self) -> None:
        if self._lifecycle is not None:
            await self._lifecycle.clear_local_cache()
        elif self.cache is not None and self._context.venue_id:
            await self.cache.clear(self._context.venue_id)

    # -------------------------------------------------------------------------
    # Alerts
    # -------------------------------------------------------------------------

    async def send_alert(
        self,
        alert_type: AlertType,
        message: str,
        sender_name: str,
        location: str | None = None,
    ) -> str | None:
        self.touch()
        if self._alert_feed is None:
            return None
        return await self._alert_feed.send_alert(alert_type, message, sender_name, location)

    async def dismiss_alert(self, alert_id: str) -> bool:
        self.touch()
        if self._alert_feed is None:
            return False
        return await self._alert_feed.dismiss_alert(alert_id)
