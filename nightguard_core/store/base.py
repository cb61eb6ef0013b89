"""
Abstract venue document store.

Defines the contract the remote realtime store must implement:
snapshot subscriptions with change callbacks, partial-field updates,
array-union appends, full-document overwrites, deletes, and an
ordered+limited history query.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

# Callback types. Store callbacks are plain synchronous callables invoked
# on the event loop; anything slow must be scheduled by the receiver.
SnapshotCallback = Callable[[dict[str, Any] | None], None]
AlertsCallback = Callable[[list[dict[str, Any]]], None]
ErrorCallback = Callable[[Exception], None]


@dataclass(frozen=True)
class VenueKey:
    """Identifies a venue within a company."""

    company_id: str
    venue_id: str

    @property
    def partition_key(self) -> str:
        return f"{self.company_id}_{self.venue_id}"

    def shift(self, shift_date: str) -> ShiftKey:
        return ShiftKey(self.company_id, self.venue_id, shift_date)


@dataclass(frozen=True)
class ShiftKey:
    """Identifies one shift session document."""

    company_id: str
    venue_id: str
    shift_date: str

    @property
    def venue(self) -> VenueKey:
        return VenueKey(self.company_id, self.venue_id)

    @property
    def partition_key(self) -> str:
        return self.venue.partition_key


class Subscription(ABC):
    """Handle for a live subscription."""

    @property
    @abstractmethod
    def active(self) -> bool: ...

    @abstractmethod
    async def unsubscribe(self) -> None:
        """Stop delivering callbacks. Safe to call more than once."""
        ...


class VenueStore(ABC):
    """Abstract interface for the remote venue store.

    Implementations raise StorageConnectionError or StorageIOError for
    remote failures.
    """

    # -------------------------------------------------------------------------
    # Shift sessions
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_session(self, key: ShiftKey) -> dict[str, Any] | None:
        """Read a session document, or None if it does not exist."""
        ...

    @abstractmethod
    async def set_session(self, key: ShiftKey, document: dict[str, Any]) -> None:
        """Create or fully overwrite a session document."""
        ...

    @abstractmethod
    async def update_session(
        self,
        key: ShiftKey,
        set_fields: dict[str, Any],
        append_fields: dict[str, list[dict[str, Any]]] | None = None,
    ) -> None:
        """Apply a partial update to an existing session document.

        Args:
            key: Session to update
            set_fields: Fields to overwrite (only these keys change)
            append_fields: Events to union into sequence fields; entries
                whose ``id`` is already present are skipped

        Raises:
            SessionNotFoundError: If the document does not exist
        """
        ...

    @abstractmethod
    async def delete_session(self, key: ShiftKey) -> bool:
        """Delete a session document. Returns False if it did not exist."""
        ...

    @abstractmethod
    async def list_sessions(
        self,
        venue: VenueKey,
        limit: int,
        exclude_shift_date: str | None = None,
    ) -> list[dict[str, Any]]:
        """Most recent session documents for a venue, newest shift first."""
        ...

    @abstractmethod
    async def subscribe_session(
        self,
        key: ShiftKey,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback,
    ) -> Subscription:
        """Subscribe to a session document.

        ``on_snapshot`` receives the full document (or None if it does not
        exist) once initially and again after every change. ``on_error`` is
        called once if the subscription fails; no further callbacks follow.
        """
        ...

    # -------------------------------------------------------------------------
    # Alerts
    # -------------------------------------------------------------------------

    @abstractmethod
    async def add_alert(self, venue: VenueKey, alert: dict[str, Any]) -> str:
        """Store a new alert and return its id."""
        ...

    @abstractmethod
    async def update_alert(self, venue: VenueKey, alert_id: str, fields: dict[str, Any]) -> None: ...

    @abstractmethod
    async def subscribe_alerts(
        self,
        venue: VenueKey,
        on_change: AlertsCallback,
        on_error: ErrorCallback,
    ) -> Subscription:
        """Subscribe to the venue's active alerts, newest first."""
        ...

    # -------------------------------------------------------------------------
    # Venue configuration
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_venue_config(self, venue: VenueKey, name: str) -> dict[str, Any] | None:
        """Read a named venue configuration document (e.g. ``checklists``)."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close connections and cancel outstanding subscriptions."""
        ...


def union_by_id(existing: list[dict[str, Any]], additions: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Append ``additions`` to ``existing``, skipping ids already present."""
    seen = {item.get("id") for item in existing}
    merged = list(existing)
    for item in additions:
        item_id = item.get("id")
        if item_id is not None and item_id in seen:
            continue
        seen.add(item_id)
        merged.append(item)
    return merged
