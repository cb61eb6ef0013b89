"""
Nightguard Core

Offline-first shift session sync for venue door and compliance staff.

Provides:
- Event log model and session aggregate with a single reconciliation algorithm
- Noon-rollover shift clock
- Realtime sync engine with optimistic local updates and offline fallback
- Session lifecycle (creation, rollover pruning, end shift, history)
- Venue store backends (Cosmos DB, in-memory)

Usage:

    >>> from nightguard_core import CoreConfig, NightguardCore, VenueContext
    >>> core = NightguardCore.create(CoreConfig.from_environment())
    >>> await core.start(VenueContext("co-1", "venue-1", "The Vault", 250))
    >>> core.increment()
"""

from .cache import LocalSnapshotCache
from .config import CoreConfig, CosmosAuthMethod
from .core import NightguardCore
from .events import (
    Alert,
    AlertType,
    Briefing,
    BriefingPriority,
    CapacityEvent,
    ChecklistDefinition,
    ChecklistItem,
    ComplianceEvent,
    ComplianceStatus,
    ComplianceType,
    Direction,
    EjectionEvent,
    IncidentType,
    PatrolEvent,
    PeriodicCheckEvent,
    RejectionEvent,
    RejectionReason,
    VerificationMethod,
    append_capacity_event,
    remove_by_id,
    sum_by_direction,
)
from .exceptions import (
    AuthenticationError,
    NightguardError,
    SessionNotFoundError,
    StorageConnectionError,
    StorageIOError,
    SyncTornDownError,
    ValidationError,
    VenueNotReadyError,
)
from .inactivity import InactivityMonitor
from .lifecycle import SessionLifecycleManager, VenueContext
from .session import FieldWrite, SessionMutation, ShiftSession, WriteKind
from .shift_clock import ShiftClock, shift_date
from .store import CosmosVenueStore, InMemoryVenueStore, ShiftKey, VenueKey, VenueStore
from .sync import AlertFeed, SyncEngine, SyncState

__version__ = "0.1.0"

__all__ = [
    # Facade
    "NightguardCore",
    "VenueContext",
    "SessionLifecycleManager",
    "InactivityMonitor",
    # Sync
    "SyncEngine",
    "SyncState",
    "AlertFeed",
    # Session
    "ShiftSession",
    "SessionMutation",
    "FieldWrite",
    "WriteKind",
    # Events
    "Alert",
    "AlertType",
    "Briefing",
    "BriefingPriority",
    "CapacityEvent",
    "ChecklistDefinition",
    "ChecklistItem",
    "ComplianceEvent",
    "ComplianceStatus",
    "ComplianceType",
    "Direction",
    "EjectionEvent",
    "IncidentType",
    "PatrolEvent",
    "PeriodicCheckEvent",
    "RejectionEvent",
    "RejectionReason",
    "VerificationMethod",
    "append_capacity_event",
    "remove_by_id",
    "sum_by_direction",
    # Shift clock
    "ShiftClock",
    "shift_date",
    # Stores
    "VenueStore",
    "VenueKey",
    "ShiftKey",
    "InMemoryVenueStore",
    "CosmosVenueStore",
    "LocalSnapshotCache",
    # Config
    "CoreConfig",
    "CosmosAuthMethod",
    # Exceptions
    "NightguardError",
    "SessionNotFoundError",
    "StorageIOError",
    "StorageConnectionError",
    "AuthenticationError",
    "VenueNotReadyError",
    "SyncTornDownError",
    "ValidationError",
]
