"""
Event log model for a shift.

Defines the immutable occurrences that make up a shift's log
(door counts, rejections, ejections, periodic checks, patrols,
compliance issues), the small mutable-by-replacement records that
live alongside them (checklist items, briefing, alerts), and the pure
helpers used to reconcile capacity against the log.

Documents use the camelCase field names shared with the other
clients of the venue store, so every type round-trips through
``to_dict``/``from_dict``.
"""

from __future__ import annotations

import hashlib
import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol, TypeVar

from .exceptions import ValidationError


class Direction(Enum):
    """Direction of a door count."""

    IN = "in"
    OUT = "out"


class RejectionReason(Enum):
    """Why a patron was refused entry."""

    DRESS_CODE = "Dress Code"
    INTOXICATED = "Intoxicated"
    NO_ID = "No ID"
    BANNED = "Banned"
    ATTITUDE = "Attitude"
    FAKE_ID = "Fake ID"


class IncidentType(Enum):
    DISORDERLY = "disorderly"
    INTOX = "intox"
    VIOLENCE = "violence"
    DRUGS = "drugs"
    HARASSMENT = "harassment"
    OTHER = "other"


class VerificationMethod(Enum):
    """How a checklist item or patrol was confirmed."""

    MANUAL = "manual"
    NFC = "nfc"
    QR = "qr"


class ComplianceType(Enum):
    TOILET_CHECK = "toilet_check"
    SPILL = "spill"
    HAZARD = "hazard"
    MAINTENANCE = "maintenance"
    FIRE_EXIT = "fire_exit"
    CLEANING = "cleaning"
    OTHER = "other"


class ComplianceStatus(Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class AlertType(Enum):
    SOS = "sos"
    BOLO = "bolo"
    INFO = "info"


class BriefingPriority(Enum):
    INFO = "info"
    ALERT = "alert"


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def new_event_id() -> str:
    """Generate a unique event id."""
    return uuid.uuid4().hex


def parse_timestamp(value: str | datetime | None) -> datetime:
    """Parse an ISO timestamp from a stored document.

    Accepts the trailing ``Z`` written by browser clients. Naive values
    are taken to be UTC. Missing values fall back to now.
    """
    if value is None or value == "":
        return utc_now()
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _legacy_id(*parts: Any) -> str:
    # Older documents stored capacity logs without ids; derive a stable one
    # so the same legacy entry always maps to the same union key.
    digest = hashlib.sha256("|".join(str(p) for p in parts).encode()).hexdigest()
    return f"legacy-{digest[:16]}"


@dataclass(frozen=True)
class CapacityEvent:
    """One entry in the door-count log.

    Organic taps and manual corrections always carry ``count >= 1``.
    Bulk reconciliation may append a ``correction`` event with a negative
    count so that the per-direction sums land exactly on the targets.
    """

    id: str
    timestamp: datetime
    direction: Direction
    count: int = 1
    correction: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "type": self.direction.value,
            "count": self.count,
        }
        if self.correction:
            data["correction"] = True
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CapacityEvent:
        count = data.get("count") or 1
        event_id = data.get("id") or _legacy_id(data.get("timestamp"), data.get("type"), count)
        return cls(
            id=event_id,
            timestamp=parse_timestamp(data.get("timestamp")),
            direction=Direction(data["type"]),
            count=count,
            correction=bool(data.get("correction", False)),
        )


@dataclass(frozen=True)
class RejectionEvent:
    id: str
    timestamp: datetime
    reason: RejectionReason

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "timestamp": self.timestamp.isoformat(), "reason": self.reason.value}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RejectionEvent:
        return cls(
            id=data.get("id") or _legacy_id(data.get("timestamp"), data.get("reason")),
            timestamp=parse_timestamp(data.get("timestamp")),
            reason=RejectionReason(data["reason"]),
        )


@dataclass(frozen=True)
class EjectionEvent:
    """Formal incident record for a patron removed from the venue.

    Attributes:
        id: Unique id, used for deletion
        timestamp: When the ejection happened
        gender: Subject gender as recorded by staff
        age_range: Subject age band (18-21, 22-30, 31-40, 41+)
        reason: Incident type
        location: Where in the venue it happened
        details: Free-text narrative
        action_taken: What staff did
        departure: How the subject left
        authorities_involved: Police, ambulance, etc.
        cctv_recorded: Whether CCTV captured the incident
        body_cam_recorded: Whether body cameras captured the incident
        security_badge_number: Badge of the reporting officer
        manager_name: Duty manager
        ic_code: Optional identity code (IC1-IC6)
        custom_fields: Company-defined extra fields
    """

    id: str
    timestamp: datetime
    gender: str
    age_range: str
    reason: IncidentType
    location: str
    details: str = ""
    action_taken: str = ""
    departure: str = ""
    authorities_involved: tuple[str, ...] = ()
    cctv_recorded: bool = False
    body_cam_recorded: bool = False
    security_badge_number: str = ""
    manager_name: str = ""
    ic_code: str | None = None
    custom_fields: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "gender": self.gender,
            "ageRange": self.age_range,
            "reason": self.reason.value,
            "location": self.location,
            "details": self.details,
            "actionTaken": self.action_taken,
            "departure": self.departure,
            "authoritiesInvolved": list(self.authorities_involved),
            "cctvRecorded": self.cctv_recorded,
            "bodyCamRecorded": self.body_cam_recorded,
            "securityBadgeNumber": self.security_badge_number,
            "managerName": self.manager_name,
        }
        if self.ic_code:
            data["icCode"] = self.ic_code
        if self.custom_fields:
            data["customData"] = dict(self.custom_fields)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EjectionEvent:
        return cls(
            id=data.get("id") or new_event_id(),
            timestamp=parse_timestamp(data.get("timestamp")),
            gender=data.get("gender", "other"),
            age_range=data.get("ageRange", ""),
            reason=IncidentType(data.get("reason", "other")),
            location=data.get("location", ""),
            details=data.get("details", ""),
            action_taken=data.get("actionTaken", ""),
            departure=data.get("departure", ""),
            authorities_involved=tuple(data.get("authoritiesInvolved") or ()),
            cctv_recorded=bool(data.get("cctvRecorded", False)),
            body_cam_recorded=bool(data.get("bodyCamRecorded", False)),
            security_badge_number=data.get("securityBadgeNumber", ""),
            manager_name=data.get("managerName", ""),
            ic_code=data.get("icCode"),
            custom_fields=dict(data.get("customData") or {}),
        )


@dataclass(frozen=True)
class PeriodicCheckEvent:
    """Half-hourly confirmed snapshot of the in/out/total counts."""

    id: str
    timestamp: datetime
    time_label: str
    count_in: int
    count_out: int
    count_total: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "timeLabel": self.time_label,
            "countIn": self.count_in,
            "countOut": self.count_out,
            "countTotal": self.count_total,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PeriodicCheckEvent:
        return cls(
            id=str(data.get("id") or _legacy_id(data.get("timestamp"), data.get("timeLabel"))),
            timestamp=parse_timestamp(data.get("timestamp")),
            time_label=data["timeLabel"],
            count_in=int(data.get("countIn", 0)),
            count_out=int(data.get("countOut", 0)),
            count_total=int(data.get("countTotal", 0)),
        )


@dataclass(frozen=True)
class PatrolEvent:
    id: str
    time: datetime
    area: str
    checked_by: str
    method: VerificationMethod = VerificationMethod.MANUAL
    checkpoint_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "time": self.time.isoformat(),
            "area": self.area,
            "checkedBy": self.checked_by,
            "method": self.method.value,
        }
        if self.checkpoint_id:
            data["checkpointId"] = self.checkpoint_id
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PatrolEvent:
        return cls(
            id=data.get("id") or _legacy_id(data.get("time"), data.get("area")),
            time=parse_timestamp(data.get("time")),
            area=data.get("area", ""),
            checked_by=data.get("checkedBy", ""),
            method=VerificationMethod(data.get("method", "manual")),
            checkpoint_id=data.get("checkpointId"),
        )


@dataclass(frozen=True)
class ComplianceEvent:
    """A logged compliance issue (spill, hazard, blocked fire exit...)."""

    id: str
    timestamp: datetime
    type: ComplianceType
    location: str
    description: str
    logged_by: str
    status: ComplianceStatus = ComplianceStatus.OPEN
    photo_url: str = ""
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    resolution_notes: str | None = None

    def resolve(self, resolved_by: str, notes: str, when: datetime | None = None) -> ComplianceEvent:
        """Return a resolved copy of this issue."""
        return replace(
            self,
            status=ComplianceStatus.RESOLVED,
            resolved_at=when or utc_now(),
            resolved_by=resolved_by,
            resolution_notes=notes,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "type": self.type.value,
            "location": self.location,
            "description": self.description,
            "photoUrl": self.photo_url,
            "status": self.status.value,
            "loggedBy": self.logged_by,
        }
        if self.resolved_at:
            data["resolvedAt"] = self.resolved_at.isoformat()
        if self.resolved_by:
            data["resolvedBy"] = self.resolved_by
        if self.resolution_notes is not None:
            data["resolutionNotes"] = self.resolution_notes
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ComplianceEvent:
        resolved_at = data.get("resolvedAt")
        return cls(
            id=data.get("id") or new_event_id(),
            timestamp=parse_timestamp(data.get("timestamp")),
            type=ComplianceType(data.get("type", "other")),
            location=data.get("location", ""),
            description=data.get("description", ""),
            logged_by=data.get("loggedBy", ""),
            status=ComplianceStatus(data.get("status", "open")),
            photo_url=data.get("photoUrl", ""),
            resolved_at=parse_timestamp(resolved_at) if resolved_at else None,
            resolved_by=data.get("resolvedBy"),
            resolution_notes=data.get("resolutionNotes"),
        )


@dataclass(frozen=True)
class ChecklistDefinition:
    """Venue-configured checklist entry used to seed a new shift."""

    id: str
    label: str
    type: str  # "pre" or "post"
    checkpoint_id: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any], default_type: str = "pre") -> ChecklistDefinition:
        return cls(
            id=data["id"],
            label=data.get("label", ""),
            type=data.get("type", default_type),
            checkpoint_id=data.get("checkpointId"),
        )


DEFAULT_PRE_CHECKS: tuple[ChecklistDefinition, ...] = (
    ChecklistDefinition("def_1", "Fire exits unlocked and clear", "pre"),
    ChecklistDefinition("def_2", "Door staff signed-in", "pre"),
    ChecklistDefinition("def_3", "SIA Licenses displayed", "pre"),
    ChecklistDefinition("def_4", "Briefing conducted", "pre"),
    ChecklistDefinition("def_5", "Radios/Cams issued", "pre"),
)

DEFAULT_POST_CHECKS: tuple[ChecklistDefinition, ...] = (
    ChecklistDefinition("def_6", "Venue clear of customers", "post"),
    ChecklistDefinition("def_7", "Fire Exits secured", "post"),
    ChecklistDefinition("def_8", "Equipment returned", "post"),
    ChecklistDefinition("def_9", "Debrief completed", "post"),
    ChecklistDefinition("def_10", "Paperwork filed", "post"),
)


@dataclass(frozen=True)
class ChecklistItem:
    id: str
    label: str
    checked: bool = False
    timestamp: datetime | None = None
    checked_by: str | None = None
    verified: bool = False
    method: VerificationMethod | None = None
    checkpoint_id: str | None = None

    @classmethod
    def from_definition(cls, definition: ChecklistDefinition) -> ChecklistItem:
        return cls(id=definition.id, label=definition.label, checkpoint_id=definition.checkpoint_id)

    def toggled(
        self,
        checked_by: str | None = None,
        verified: bool = False,
        method: VerificationMethod = VerificationMethod.MANUAL,
        when: datetime | None = None,
    ) -> ChecklistItem:
        """Return a copy with ``checked`` flipped.

        Checking stamps the time and who did it; unchecking clears them.
        """
        if self.checked:
            return replace(self, checked=False, timestamp=None, checked_by=None, verified=False, method=None)
        return replace(
            self,
            checked=True,
            timestamp=when or utc_now(),
            checked_by=checked_by,
            verified=verified,
            method=method,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"id": self.id, "label": self.label, "checked": self.checked}
        if self.timestamp:
            data["timestamp"] = self.timestamp.isoformat()
        if self.checked_by:
            data["checkedBy"] = self.checked_by
        if self.checked:
            data["verified"] = self.verified
        if self.method:
            data["method"] = self.method.value
        if self.checkpoint_id:
            data["checkpointId"] = self.checkpoint_id
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChecklistItem:
        timestamp = data.get("timestamp")
        method = data.get("method")
        return cls(
            id=data["id"],
            label=data.get("label", ""),
            checked=bool(data.get("checked", False)),
            timestamp=parse_timestamp(timestamp) if timestamp else None,
            checked_by=data.get("checkedBy"),
            verified=bool(data.get("verified", False)),
            method=VerificationMethod(method) if method else None,
            checkpoint_id=data.get("checkpointId"),
        )


@dataclass(frozen=True)
class Briefing:
    """The duty manager's briefing for the night."""

    id: str
    text: str
    set_by: str
    timestamp: datetime
    priority: BriefingPriority = BriefingPriority.INFO
    active: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "setBy": self.set_by,
            "timestamp": self.timestamp.isoformat(),
            "priority": self.priority.value,
            "active": self.active,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Briefing:
        return cls(
            id=str(data.get("id") or new_event_id()),
            text=data.get("text", ""),
            set_by=data.get("setBy", ""),
            timestamp=parse_timestamp(data.get("timestamp")),
            priority=BriefingPriority(data.get("priority", "info")),
            active=bool(data.get("active", True)),
        )


@dataclass(frozen=True)
class Alert:
    """Cross-device notification owned by the venue, not by a shift."""

    id: str
    type: AlertType
    message: str
    sender_name: str
    timestamp: datetime
    active: bool = True
    location: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "message": self.message,
            "senderName": self.sender_name,
            "location": self.location or "",
            "timestamp": self.timestamp.isoformat(),
            "active": self.active,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Alert:
        return cls(
            id=data["id"],
            type=AlertType(data.get("type", "info")),
            message=data.get("message", ""),
            sender_name=data.get("senderName", ""),
            timestamp=parse_timestamp(data.get("timestamp")),
            active=bool(data.get("active", True)),
            location=data.get("location") or None,
        )


# =============================================================================
# Log helpers
# =============================================================================


class _HasId(Protocol):
    @property
    def id(self) -> str: ...


E = TypeVar("E", bound=_HasId)


def append_capacity_event(
    direction: Direction,
    count: int = 1,
    when: datetime | None = None,
) -> CapacityEvent:
    """Build a door-count event ready to append to the log.

    Args:
        direction: IN or OUT
        count: Number of people; 1 for a clicker tap, larger for bulk corrections
        when: Event time (defaults to now)

    Returns:
        The new CapacityEvent

    Raises:
        ValidationError: If count is not a positive integer
    """
    if isinstance(count, bool) or not isinstance(count, int) or count < 1:
        raise ValidationError("count", "must be a positive integer", str(count))
    return CapacityEvent(id=new_event_id(), timestamp=when or utc_now(), direction=direction, count=count)


def correction_event(direction: Direction, delta: int, when: datetime | None = None) -> CapacityEvent:
    """Build a reconciliation event moving a direction's total by ``delta``."""
    if delta == 0:
        raise ValidationError("delta", "correction must be non-zero")
    return CapacityEvent(
        id=new_event_id(),
        timestamp=when or utc_now(),
        direction=direction,
        count=delta,
        correction=True,
    )


def sum_by_direction(events: Iterable[CapacityEvent], direction: Direction) -> int:
    """Total people counted in one direction across the whole log."""
    return sum(event.count for event in events if event.direction == direction)


def remove_by_id(events: Sequence[E], event_id: str) -> list[E]:
    """Return the log without the entry carrying ``event_id``."""
    return [event for event in events if event.id != event_id]
