"""
Realtime synchronization for shift sessions and venue alerts.
"""

from .alerts import AlertFeed
from .engine import SessionFactory, SyncEngine, SyncState

__all__ = [
    "AlertFeed",
    "SessionFactory",
    "SyncEngine",
    "SyncState",
]
