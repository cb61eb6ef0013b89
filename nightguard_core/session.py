"""
Shift session aggregate.

A ShiftSession holds one shift's complete state: the event logs, the
cached occupancy total, the two checklists and the briefing. Every
mutating operation applies to the in-memory session immediately and
returns a SessionMutation describing the remote write needed to
propagate it.

Remote writes come in two kinds:
- APPEND: new events are unioned into the remote sequence. Two devices
  appending concurrently both survive.
- REPLACE: the whole field is overwritten. Last writer wins, so removals,
  clicker resets, checklist toggles and scalar sets are not safe to race
  across devices.
"""

from __future__ import annotations

import copy
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .events import (
    DEFAULT_POST_CHECKS,
    DEFAULT_PRE_CHECKS,
    Briefing,
    BriefingPriority,
    CapacityEvent,
    ChecklistDefinition,
    ChecklistItem,
    ComplianceEvent,
    ComplianceType,
    Direction,
    EjectionEvent,
    PatrolEvent,
    PeriodicCheckEvent,
    RejectionEvent,
    RejectionReason,
    VerificationMethod,
    append_capacity_event,
    correction_event,
    new_event_id,
    parse_timestamp,
    remove_by_id,
    sum_by_direction,
    utc_now,
)
from .exceptions import ValidationError

# Document field names
LOGS = "logs"
REJECTIONS = "rejections"
EJECTIONS = "ejections"
PERIODIC_LOGS = "periodicLogs"
PATROL_LOGS = "patrolLogs"
COMPLIANCE_LOGS = "complianceLogs"
PRE_EVENT_CHECKS = "preEventChecks"
POST_EVENT_CHECKS = "postEventChecks"
CURRENT_CAPACITY = "currentCapacity"
MAX_CAPACITY = "maxCapacity"
BRIEFING = "briefing"
LAST_UPDATED = "lastUpdated"

EVENT_SEQUENCE_FIELDS = (LOGS, REJECTIONS, EJECTIONS, PERIODIC_LOGS, PATROL_LOGS, COMPLIANCE_LOGS)
CHECKLIST_FIELDS = (PRE_EVENT_CHECKS, POST_EVENT_CHECKS)

# Raised by from_document on a document another client wrote badly
MALFORMED_DOCUMENT_ERRORS = (KeyError, ValueError, TypeError)

_CHECKLIST_ALIASES = {
    "pre": PRE_EVENT_CHECKS,
    "post": POST_EVENT_CHECKS,
    PRE_EVENT_CHECKS: PRE_EVENT_CHECKS,
    POST_EVENT_CHECKS: POST_EVENT_CHECKS,
}


class WriteKind(Enum):
    """How a field change must be sent to the remote store."""

    APPEND = "append"
    REPLACE = "replace"


@dataclass
class FieldWrite:
    """One field-level remote write.

    For APPEND writes ``value`` is a list of serialized events; for
    REPLACE writes it is the serialized new field value.
    """

    field: str
    kind: WriteKind
    value: Any


@dataclass
class SessionMutation:
    """The remote writes produced by one session operation."""

    writes: list[FieldWrite] = field(default_factory=list)

    def append_events(self, field_name: str, events: Iterable[Any]) -> SessionMutation:
        items = [event.to_dict() for event in events]
        if items:
            self.writes.append(FieldWrite(field_name, WriteKind.APPEND, items))
        return self

    def replace_field(self, field_name: str, value: Any) -> SessionMutation:
        self.writes.append(FieldWrite(field_name, WriteKind.REPLACE, value))
        return self

    @property
    def is_empty(self) -> bool:
        return not self.writes

    @property
    def set_fields(self) -> dict[str, Any]:
        """REPLACE writes as a field -> value mapping (later writes win)."""
        return {w.field: w.value for w in self.writes if w.kind == WriteKind.REPLACE}

    @property
    def append_fields(self) -> dict[str, list[dict[str, Any]]]:
        """APPEND writes grouped by field, in call order."""
        result: dict[str, list[dict[str, Any]]] = {}
        for write in self.writes:
            if write.kind == WriteKind.APPEND:
                result.setdefault(write.field, []).extend(write.value)
        return result

    @property
    def changed_fields(self) -> list[str]:
        seen: list[str] = []
        for write in self.writes:
            if write.field not in seen:
                seen.append(write.field)
        return seen

    def extend(self, other: SessionMutation) -> None:
        self.writes.extend(other.writes)


def _serialize(items: Sequence[Any]) -> list[dict[str, Any]]:
    return [item.to_dict() for item in items]


@dataclass
class ShiftSession:
    """Live record of one shift, identified by its shift date.

    ``current_capacity`` is a cache. The capacity log is the source of
    truth and ``sum_by_direction`` over it is used whenever counts are
    reconciled in bulk.
    """

    shift_date: str
    venue_name: str
    max_capacity: int
    current_capacity: int = 0
    start_time: datetime = field(default_factory=utc_now)
    last_updated: datetime = field(default_factory=utc_now)
    date: str = ""
    logs: list[CapacityEvent] = field(default_factory=list)
    rejections: list[RejectionEvent] = field(default_factory=list)
    ejections: list[EjectionEvent] = field(default_factory=list)
    periodic_logs: list[PeriodicCheckEvent] = field(default_factory=list)
    patrol_logs: list[PatrolEvent] = field(default_factory=list)
    compliance_logs: list[ComplianceEvent] = field(default_factory=list)
    pre_event_checks: list[ChecklistItem] = field(default_factory=list)
    post_event_checks: list[ChecklistItem] = field(default_factory=list)
    briefing: Briefing | None = None

    @property
    def id(self) -> str:
        return self.shift_date

    # -------------------------------------------------------------------------
    # Construction and serialization
    # -------------------------------------------------------------------------

    @classmethod
    def new(
        cls,
        shift_date: str,
        venue_name: str,
        max_capacity: int,
        pre_checks: Sequence[ChecklistDefinition] = DEFAULT_PRE_CHECKS,
        post_checks: Sequence[ChecklistDefinition] = DEFAULT_POST_CHECKS,
        now: datetime | None = None,
    ) -> ShiftSession:
        """Create an empty session seeded with venue defaults."""
        now = now or utc_now()
        return cls(
            shift_date=shift_date,
            venue_name=venue_name,
            max_capacity=max_capacity,
            start_time=now,
            last_updated=now,
            date=now.date().isoformat(),
            pre_event_checks=[ChecklistItem.from_definition(d) for d in pre_checks],
            post_event_checks=[ChecklistItem.from_definition(d) for d in post_checks],
        )

    def to_document(self) -> dict[str, Any]:
        doc: dict[str, Any] = {
            "id": self.shift_date,
            "shiftDate": self.shift_date,
            "date": self.date,
            "startTime": self.start_time.isoformat(),
            LAST_UPDATED: self.last_updated.isoformat(),
            "venueName": self.venue_name,
            CURRENT_CAPACITY: self.current_capacity,
            MAX_CAPACITY: self.max_capacity,
            LOGS: _serialize(self.logs),
            REJECTIONS: _serialize(self.rejections),
            EJECTIONS: _serialize(self.ejections),
            PERIODIC_LOGS: _serialize(self.periodic_logs),
            PATROL_LOGS: _serialize(self.patrol_logs),
            COMPLIANCE_LOGS: _serialize(self.compliance_logs),
            PRE_EVENT_CHECKS: _serialize(self.pre_event_checks),
            POST_EVENT_CHECKS: _serialize(self.post_event_checks),
        }
        if self.briefing:
            doc[BRIEFING] = self.briefing.to_dict()
        return doc

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> ShiftSession:
        """Load a session document, filling in fields older documents lack."""
        shift_date = doc.get("shiftDate") or doc["id"]
        briefing = doc.get(BRIEFING)
        return cls(
            shift_date=shift_date,
            venue_name=doc.get("venueName", ""),
            max_capacity=int(doc.get(MAX_CAPACITY) or 0),
            current_capacity=int(doc.get(CURRENT_CAPACITY) or 0),
            start_time=parse_timestamp(doc.get("startTime")),
            last_updated=parse_timestamp(doc.get(LAST_UPDATED)),
            date=doc.get("date", ""),
            logs=[CapacityEvent.from_dict(d) for d in doc.get(LOGS) or []],
            rejections=[RejectionEvent.from_dict(d) for d in doc.get(REJECTIONS) or []],
            ejections=[EjectionEvent.from_dict(d) for d in doc.get(EJECTIONS) or []],
            periodic_logs=[PeriodicCheckEvent.from_dict(d) for d in doc.get(PERIODIC_LOGS) or []],
            patrol_logs=[PatrolEvent.from_dict(d) for d in doc.get(PATROL_LOGS) or []],
            compliance_logs=[ComplianceEvent.from_dict(d) for d in doc.get(COMPLIANCE_LOGS) or []],
            pre_event_checks=[ChecklistItem.from_dict(d) for d in doc.get(PRE_EVENT_CHECKS) or []],
            post_event_checks=[ChecklistItem.from_dict(d) for d in doc.get(POST_EVENT_CHECKS) or []],
            briefing=Briefing.from_dict(briefing) if briefing else None,
        )

    def copy(self) -> ShiftSession:
        return copy.deepcopy(self)

    # -------------------------------------------------------------------------
    # Derived views
    # -------------------------------------------------------------------------

    @property
    def total_in(self) -> int:
        return sum_by_direction(self.logs, Direction.IN)

    @property
    def total_out(self) -> int:
        return sum_by_direction(self.logs, Direction.OUT)

    def has_periodic_check(self, time_label: str) -> bool:
        return any(log.time_label == time_label for log in self.periodic_logs)

    def is_empty(self) -> bool:
        """True when nothing at all was recorded during this shift.

        Every event sequence, every checklist item and the briefing are
        inspected; a single entry anywhere makes the shift non-empty.
        """
        if self.logs:
            return False
        if self.rejections:
            return False
        if self.ejections:
            return False
        if self.periodic_logs:
            return False
        if self.patrol_logs:
            return False
        if self.compliance_logs:
            return False
        if any(item.checked for item in self.pre_event_checks):
            return False
        if any(item.checked for item in self.post_event_checks):
            return False
        if self.briefing is not None:
            return False
        return True

    # -------------------------------------------------------------------------
    # Capacity operations
    # -------------------------------------------------------------------------

    def _commit(self, mutation: SessionMutation, now: datetime | None = None) -> SessionMutation:
        if not mutation.is_empty:
            self.last_updated = now or utc_now()
            mutation.replace_field(LAST_UPDATED, self.last_updated.isoformat())
        return mutation

    def increment(self, when: datetime | None = None) -> SessionMutation:
        """One person in."""
        event = append_capacity_event(Direction.IN, 1, when)
        self.logs.append(event)
        self.current_capacity += 1
        mutation = SessionMutation().append_events(LOGS, [event])
        mutation.replace_field(CURRENT_CAPACITY, self.current_capacity)
        return self._commit(mutation)

    def decrement(self, when: datetime | None = None) -> SessionMutation:
        """One person out. Occupancy never drops below zero."""
        event = append_capacity_event(Direction.OUT, 1, when)
        self.logs.append(event)
        self.current_capacity = max(0, self.current_capacity - 1)
        mutation = SessionMutation().append_events(LOGS, [event])
        mutation.replace_field(CURRENT_CAPACITY, self.current_capacity)
        return self._commit(mutation)

    def set_absolute(self, new_value: int) -> SessionMutation:
        """Manually correct occupancy to ``new_value``.

        The correction is recorded as a single event carrying its
        magnitude and direction, and the cached total is set directly.
        """
        _require_count("new_value", new_value)
        diff = new_value - self.current_capacity
        if diff == 0:
            return SessionMutation()
        direction = Direction.IN if diff > 0 else Direction.OUT
        event = append_capacity_event(direction, abs(diff))
        self.logs.append(event)
        self.current_capacity = new_value
        mutation = SessionMutation().append_events(LOGS, [event])
        mutation.replace_field(CURRENT_CAPACITY, self.current_capacity)
        return self._commit(mutation)

    def _reconcile(self, target_in: int, target_out: int) -> tuple[list[CapacityEvent], bool]:
        corrections: list[CapacityEvent] = []
        diff_in = target_in - sum_by_direction(self.logs, Direction.IN)
        diff_out = target_out - sum_by_direction(self.logs, Direction.OUT)
        if diff_in != 0:
            corrections.append(correction_event(Direction.IN, diff_in))
        if diff_out != 0:
            corrections.append(correction_event(Direction.OUT, diff_out))
        self.logs.extend(corrections)
        new_capacity = target_in - target_out
        capacity_changed = new_capacity != self.current_capacity
        self.current_capacity = new_capacity
        return corrections, capacity_changed

    def sync_bulk_counts(self, target_in: int, target_out: int) -> SessionMutation:
        """Reconcile the log against two external in/out counters.

        Appends at most one corrective event per direction, so calling
        twice with the same targets appends nothing the second time.
        """
        _require_count("target_in", target_in)
        _require_count("target_out", target_out)
        corrections, capacity_changed = self._reconcile(target_in, target_out)
        mutation = SessionMutation().append_events(LOGS, corrections)
        if corrections or capacity_changed:
            mutation.replace_field(CURRENT_CAPACITY, self.current_capacity)
        return self._commit(mutation)

    def record_periodic_check(
        self,
        time_label: str,
        count_in: int,
        count_out: int,
        count_total: int,
        sync_counts: bool = True,
    ) -> SessionMutation | None:
        """Record the half-hourly check for ``time_label``.

        Returns None, changing nothing, if a check with the same label
        already exists for this shift.
        """
        if self.has_periodic_check(time_label):
            return None
        _require_count("count_in", count_in)
        _require_count("count_out", count_out)

        check = PeriodicCheckEvent(
            id=new_event_id(),
            timestamp=utc_now(),
            time_label=time_label,
            count_in=count_in,
            count_out=count_out,
            count_total=count_total,
        )
        self.periodic_logs.append(check)
        mutation = SessionMutation().append_events(PERIODIC_LOGS, [check])

        if sync_counts:
            corrections, _ = self._reconcile(count_in, count_out)
            mutation.append_events(LOGS, corrections)
            mutation.replace_field(CURRENT_CAPACITY, self.current_capacity)
        return self._commit(mutation)

    def reset_clickers(self) -> SessionMutation:
        """Clear the door-count log and occupancy. Periodic checks are kept."""
        self.logs = []
        self.current_capacity = 0
        mutation = SessionMutation().replace_field(LOGS, []).replace_field(CURRENT_CAPACITY, 0)
        return self._commit(mutation)

    def set_max_capacity(self, max_capacity: int) -> SessionMutation:
        _require_count("max_capacity", max_capacity)
        if max_capacity == self.max_capacity:
            return SessionMutation()
        self.max_capacity = max_capacity
        return self._commit(SessionMutation().replace_field(MAX_CAPACITY, max_capacity))

    # -------------------------------------------------------------------------
    # Checklists and briefing
    # -------------------------------------------------------------------------

    def toggle_checklist_item(
        self,
        list_id: str,
        item_id: str,
        checked_by: str | None = None,
        verified: bool = False,
        method: VerificationMethod = VerificationMethod.MANUAL,
    ) -> SessionMutation:
        """Flip one checklist item and send the whole list."""
        field_name = _CHECKLIST_ALIASES.get(list_id)
        if field_name is None:
            raise ValidationError("list_id", "must be 'pre' or 'post'", list_id)
        items: list[ChecklistItem] = getattr(self, _attr_name(field_name))
        if not any(item.id == item_id for item in items):
            raise ValidationError("item_id", f"not in {field_name}", item_id)

        updated = [
            item.toggled(checked_by=checked_by, verified=verified, method=method) if item.id == item_id else item
            for item in items
        ]
        setattr(self, _attr_name(field_name), updated)
        return self._commit(SessionMutation().replace_field(field_name, _serialize(updated)))

    def set_briefing(
        self,
        text: str,
        priority: BriefingPriority = BriefingPriority.INFO,
        set_by: str = "Admin",
    ) -> SessionMutation:
        self.briefing = Briefing(
            id=new_event_id(),
            text=text,
            set_by=set_by,
            timestamp=utc_now(),
            priority=priority,
        )
        return self._commit(SessionMutation().replace_field(BRIEFING, self.briefing.to_dict()))

    # -------------------------------------------------------------------------
    # Incident logs
    # -------------------------------------------------------------------------

    def log_rejection(self, reason: RejectionReason) -> SessionMutation:
        rejection = RejectionEvent(id=new_event_id(), timestamp=utc_now(), reason=reason)
        self.rejections.append(rejection)
        return self._commit(SessionMutation().append_events(REJECTIONS, [rejection]))

    def remove_rejection(self, event_id: str) -> SessionMutation:
        if not _has_id(self.rejections, event_id):
            return SessionMutation()
        self.rejections = remove_by_id(self.rejections, event_id)
        return self._commit(SessionMutation().replace_field(REJECTIONS, _serialize(self.rejections)))

    def add_ejection(self, ejection: EjectionEvent) -> SessionMutation:
        self.ejections.append(ejection)
        return self._commit(SessionMutation().append_events(EJECTIONS, [ejection]))

    def remove_ejection(self, event_id: str) -> SessionMutation:
        if not _has_id(self.ejections, event_id):
            return SessionMutation()
        self.ejections = remove_by_id(self.ejections, event_id)
        return self._commit(SessionMutation().replace_field(EJECTIONS, _serialize(self.ejections)))

    def remove_periodic_log(self, event_id: str) -> SessionMutation:
        if not _has_id(self.periodic_logs, event_id):
            return SessionMutation()
        self.periodic_logs = remove_by_id(self.periodic_logs, event_id)
        return self._commit(SessionMutation().replace_field(PERIODIC_LOGS, _serialize(self.periodic_logs)))

    def log_patrol(
        self,
        area: str,
        checked_by: str,
        method: VerificationMethod = VerificationMethod.MANUAL,
        checkpoint_id: str | None = None,
    ) -> SessionMutation:
        patrol = PatrolEvent(
            id=new_event_id(),
            time=utc_now(),
            area=area,
            checked_by=checked_by,
            method=method,
            checkpoint_id=checkpoint_id,
        )
        self.patrol_logs.append(patrol)
        return self._commit(SessionMutation().append_events(PATROL_LOGS, [patrol]))

    def add_compliance_log(
        self,
        compliance_type: ComplianceType,
        location: str,
        description: str,
        logged_by: str,
        photo_url: str = "",
    ) -> SessionMutation:
        entry = ComplianceEvent(
            id=new_event_id(),
            timestamp=utc_now(),
            type=compliance_type,
            location=location,
            description=description,
            logged_by=logged_by,
            photo_url=photo_url,
        )
        self.compliance_logs.append(entry)
        return self._commit(SessionMutation().append_events(COMPLIANCE_LOGS, [entry]))

    def resolve_compliance_log(self, event_id: str, resolved_by: str, notes: str) -> SessionMutation:
        """Mark a compliance entry resolved. Unknown ids change nothing."""
        if not _has_id(self.compliance_logs, event_id):
            return SessionMutation()
        self.compliance_logs = [
            entry.resolve(resolved_by, notes) if entry.id == event_id else entry for entry in self.compliance_logs
        ]
        return self._commit(SessionMutation().replace_field(COMPLIANCE_LOGS, _serialize(self.compliance_logs)))


def _has_id(entries: list[Any], event_id: str) -> bool:
    return any(entry.id == event_id for entry in entries)


def _attr_name(field_name: str) -> str:
    return {PRE_EVENT_CHECKS: "pre_event_checks", POST_EVENT_CHECKS: "post_event_checks"}[field_name]


def _require_count(name: str, value: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(name, "must be a non-negative integer", str(value))
