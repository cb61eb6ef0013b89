"""
Venue alert feed.

Alerts belong to the venue rather than to a shift, so the feed keeps
running across rollovers and is only stopped on venue switch or logout.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from ..events import Alert, AlertType, utc_now
from ..exceptions import NightguardError
from ..store.base import Subscription, VenueKey, VenueStore

logger = logging.getLogger(__name__)


class AlertFeed:
    """Live list of a venue's active alerts, newest first."""

    def __init__(
        self,
        store: VenueStore,
        venue: VenueKey,
        reconnect_delay: float = 5.0,
        auto_reconnect: bool = True,
    ) -> None:
        self.store = store
        self.venue = venue
        self.reconnect_delay = reconnect_delay
        self.auto_reconnect = auto_reconnect

        self._alerts: list[Alert] = []
        self._subscription: Subscription | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._running = False

        self.on_alerts_changed: Callable[[list[Alert]], None] | None = None

    @property
    def alerts(self) -> list[Alert]:
        return list(self._alerts)

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        await self._subscribe()

    async def stop(self) -> None:
        self._running = False
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            await asyncio.gather(self._reconnect_task, return_exceptions=True)
            self._reconnect_task = None
        if self._subscription is not None:
            await self._subscription.unsubscribe()
            self._subscription = None

    async def _subscribe(self) -> None:
        try:
            self._subscription = await self.store.subscribe_alerts(self.venue, self._on_change, self._on_error)
        except NightguardError as e:
            self._on_error(e)

    def _on_change(self, documents: list[dict[str, Any]]) -> None:
        if not self._running:
            return
        alerts = []
        for doc in documents:
            try:
                alerts.append(Alert.from_dict(doc))
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping malformed alert {doc.get('id')}: {e}")
        self._alerts = alerts
        if self.on_alerts_changed:
            self.on_alerts_changed(self.alerts)

    def _on_error(self, error: Exception) -> None:
        if not self._running:
            return
        logger.error(f"Alert feed error for venue {self.venue.venue_id}: {error}")
        self._subscription = None
        if self.auto_reconnect and (self._reconnect_task is None or self._reconnect_task.done()):
            self._reconnect_task = asyncio.create_task(self._reconnect())

    async def _reconnect(self) -> None:
        while self._running and self._subscription is None:
            await asyncio.sleep(self.reconnect_delay)
            if not self._running:
                return
            try:
                self._subscription = await self.store.subscribe_alerts(self.venue, self._on_change, self._on_error)
                logger.info(f"Alert feed re-subscribed for venue {self.venue.venue_id}")
            except NightguardError as e:
                logger.warning(f"Alert feed re-subscribe failed: {e}")

    async def send_alert(
        self,
        alert_type: AlertType,
        message: str,
        sender_name: str,
        location: str | None = None,
    ) -> str | None:
        """Broadcast an alert to every device at the venue.

        Returns:
            The new alert id, or None if the store could not be reached
        """
        alert = Alert(
            id="",
            type=alert_type,
            message=message,
            sender_name=sender_name,
            timestamp=utc_now(),
            location=location,
        )
        document = alert.to_dict()
        del document["id"]
        try:
            return await self.store.add_alert(self.venue, document)
        except NightguardError as e:
            logger.error(f"Failed to send alert: {e}")
            return None

    async def dismiss_alert(self, alert_id: str) -> bool:
        try:
            await self.store.update_alert(self.venue, alert_id, {"active": False})
            return True
        except NightguardError as e:
            logger.error(f"Failed to dismiss alert {alert_id}: {e}")
            return False
