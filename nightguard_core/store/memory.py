"""
In-process venue store.

Implements the full VenueStore contract in memory, with push
notifications delivered on the running event loop. Used for
single-host deployments, demos and the test-suite.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from typing import Any

from ..exceptions import SessionNotFoundError
from .base import (
    AlertsCallback,
    ErrorCallback,
    ShiftKey,
    SnapshotCallback,
    Subscription,
    VenueKey,
    VenueStore,
    union_by_id,
)

logger = logging.getLogger(__name__)


class _Watcher(Subscription):
    """A registered callback pair. Deliveries are checked against ``active``
    at run time so nothing arrives after unsubscribe."""

    def __init__(self, on_change: Any, on_error: ErrorCallback, registry: list[_Watcher]) -> None:
        self.on_change = on_change
        self.on_error = on_error
        self._registry = registry
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    async def unsubscribe(self) -> None:
        self._active = False
        if self in self._registry:
            self._registry.remove(self)

    def deliver(self, payload: Any) -> None:
        if self._active:
            self.on_change(payload)

    def fail(self, error: Exception) -> None:
        if self._active:
            self._active = False
            if self in self._registry:
                self._registry.remove(self)
            self.on_error(error)


class InMemoryVenueStore(VenueStore):
    """Venue store held entirely in memory.

    Example:
        >>> store = InMemoryVenueStore()
        >>> key = ShiftKey("co-1", "venue-1", "2024-03-14")
        >>> await store.set_session(key, {"id": "2024-03-14", "logs": []})
    """

    def __init__(self) -> None:
        self._sessions: dict[ShiftKey, dict[str, Any]] = {}
        self._alerts: dict[VenueKey, dict[str, dict[str, Any]]] = {}
        self._configs: dict[tuple[VenueKey, str], dict[str, Any]] = {}
        self._session_watchers: dict[ShiftKey, list[_Watcher]] = {}
        self._alert_watchers: dict[VenueKey, list[_Watcher]] = {}

    # -------------------------------------------------------------------------
    # Notification plumbing
    # -------------------------------------------------------------------------

    def _notify_session(self, key: ShiftKey) -> None:
        loop = asyncio.get_running_loop()
        doc = self._sessions.get(key)
        for watcher in list(self._session_watchers.get(key, [])):
            loop.call_soon(watcher.deliver, copy.deepcopy(doc))

    def _active_alerts(self, venue: VenueKey) -> list[dict[str, Any]]:
        alerts = [copy.deepcopy(a) for a in self._alerts.get(venue, {}).values() if a.get("active")]
        alerts.sort(key=lambda a: a.get("timestamp", ""), reverse=True)
        return alerts

    def _notify_alerts(self, venue: VenueKey) -> None:
        loop = asyncio.get_running_loop()
        for watcher in list(self._alert_watchers.get(venue, [])):
            loop.call_soon(watcher.deliver, self._active_alerts(venue))

    # -------------------------------------------------------------------------
    # Shift sessions
    # -------------------------------------------------------------------------

    async def get_session(self, key: ShiftKey) -> dict[str, Any] | None:
        doc = self._sessions.get(key)
        return copy.deepcopy(doc) if doc is not None else None

    async def set_session(self, key: ShiftKey, document: dict[str, Any]) -> None:
        self._sessions[key] = copy.deepcopy(document)
        self._notify_session(key)

    async def update_session(
        self,
        key: ShiftKey,
        set_fields: dict[str, Any],
        append_fields: dict[str, list[dict[str, Any]]] | None = None,
    ) -> None:
        doc = self._sessions.get(key)
        if doc is None:
            raise SessionNotFoundError(key.shift_date, key.venue_id)

        for field_name, value in set_fields.items():
            doc[field_name] = copy.deepcopy(value)
        for field_name, items in (append_fields or {}).items():
            doc[field_name] = union_by_id(doc.get(field_name) or [], copy.deepcopy(items))

        self._notify_session(key)

    async def delete_session(self, key: ShiftKey) -> bool:
        if key not in self._sessions:
            return False
        del self._sessions[key]
        self._notify_session(key)
        return True

    async def list_sessions(
        self,
        venue: VenueKey,
        limit: int,
        exclude_shift_date: str | None = None,
    ) -> list[dict[str, Any]]:
        docs = [
            copy.deepcopy(doc)
            for key, doc in self._sessions.items()
            if key.venue == venue and key.shift_date != exclude_shift_date
        ]
        docs.sort(key=lambda d: d.get("shiftDate", ""), reverse=True)
        return docs[:limit]

    async def subscribe_session(
        self,
        key: ShiftKey,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback,
    ) -> Subscription:
        registry = self._session_watchers.setdefault(key, [])
        watcher = _Watcher(on_snapshot, on_error, registry)
        registry.append(watcher)
        asyncio.get_running_loop().call_soon(watcher.deliver, copy.deepcopy(self._sessions.get(key)))
        return watcher

    # -------------------------------------------------------------------------
    # Alerts
    # -------------------------------------------------------------------------

    async def add_alert(self, venue: VenueKey, alert: dict[str, Any]) -> str:
        alert_id = alert.get("id") or uuid.uuid4().hex
        self._alerts.setdefault(venue, {})[alert_id] = {**copy.deepcopy(alert), "id": alert_id}
        self._notify_alerts(venue)
        return alert_id

    async def update_alert(self, venue: VenueKey, alert_id: str, fields: dict[str, Any]) -> None:
        alerts = self._alerts.get(venue, {})
        if alert_id not in alerts:
            logger.warning(f"Alert {alert_id} not found for venue {venue.venue_id}")
            return
        alerts[alert_id].update(copy.deepcopy(fields))
        self._notify_alerts(venue)

    async def subscribe_alerts(
        self,
        venue: VenueKey,
        on_change: AlertsCallback,
        on_error: ErrorCallback,
    ) -> Subscription:
        registry = self._alert_watchers.setdefault(venue, [])
        watcher = _Watcher(on_change, on_error, registry)
        registry.append(watcher)
        asyncio.get_running_loop().call_soon(watcher.deliver, self._active_alerts(venue))
        return watcher

    # -------------------------------------------------------------------------
    # Venue configuration
    # -------------------------------------------------------------------------

    async def get_venue_config(self, venue: VenueKey, name: str) -> dict[str, Any] | None:
        doc = self._configs.get((venue, name))
        return copy.deepcopy(doc) if doc is not None else None

    async def put_venue_config(self, venue: VenueKey, name: str, document: dict[str, Any]) -> None:
        self._configs[(venue, name)] = copy.deepcopy(document)

    async def close(self) -> None:
        for registry in [*self._session_watchers.values(), *self._alert_watchers.values()]:
            for watcher in list(registry):
                await watcher.unsubscribe()
