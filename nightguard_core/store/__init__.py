"""
Venue store backends.

Provides an in-memory store and a Cosmos DB store behind the same
VenueStore interface.

Example:
    >>> from nightguard_core.config import CoreConfig, CosmosAuthMethod
    >>> from nightguard_core.store import CosmosVenueStore
    >>> config = CoreConfig(
    ...     cosmos_endpoint="https://example.documents.azure.com:443/",
    ...     cosmos_auth_method=CosmosAuthMethod.DEFAULT_CREDENTIAL,
    ... )
    >>> store = CosmosVenueStore(config)
"""

from .base import ShiftKey, Subscription, VenueKey, VenueStore, union_by_id
from .cosmos import CosmosVenueStore
from .memory import InMemoryVenueStore

__all__ = [
    "VenueStore",
    "Subscription",
    "ShiftKey",
    "VenueKey",
    "union_by_id",
    "InMemoryVenueStore",
    "CosmosVenueStore",
]
