"""
Cosmos DB venue store.

Stores one document per (venue, shift) in Azure Cosmos DB, alerts in
a per-venue partition of a second container, and venue configuration
in a third.

Partition key value for every container: {company_id}_{venue_id}

Change delivery polls each subscribed document (or query) and fires
the callback whenever its ``_etag`` signature changes, so any Cosmos
account works without a change-feed processor deployment.

Supports multiple authentication methods through CoreConfig:
- Key-based authentication
- Azure AD via DefaultAzureCredential (recommended)
- Azure Managed Identity
- Service Principal
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

from azure.core import MatchConditions
from azure.core.exceptions import ServiceRequestError
from azure.cosmos import PartitionKey
from azure.cosmos.aio import ContainerProxy, CosmosClient, DatabaseProxy
from azure.cosmos.exceptions import (
    CosmosAccessConditionFailedError,
    CosmosHttpResponseError,
    CosmosResourceNotFoundError,
)

from ..config import CoreConfig, get_credential
from ..exceptions import (
    AuthenticationError,
    NightguardError,
    SessionNotFoundError,
    StorageConnectionError,
    StorageIOError,
)
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

PARTITION_KEY_PATH = "/partitionKey"

# Cosmos rejects patch requests with more than 10 operations
MAX_PATCH_OPERATIONS = 10

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = 0.5  # seconds

_SYSTEM_FIELDS = ("_rid", "_self", "_etag", "_attachments", "_ts", "partitionKey")


def _strip_system_fields(doc: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in doc.items() if k not in _SYSTEM_FIELDS}


class _PollingSubscription(Subscription):
    """Polls a fetch coroutine and reports changes by signature."""

    def __init__(
        self,
        fetch: Callable[[], Awaitable[Any]],
        signature: Callable[[Any], Any],
        on_change: Callable[[Any], None],
        on_error: ErrorCallback,
        poll_interval: float,
        describe: str,
        registry: list[_PollingSubscription],
    ) -> None:
        self._fetch = fetch
        self._signature = signature
        self._on_change = on_change
        self._on_error = on_error
        self._poll_interval = poll_interval
        self._describe = describe
        self._registry = registry
        self._active = True
        self._task: asyncio.Task[None] = asyncio.create_task(self._run())

    @property
    def active(self) -> bool:
        return self._active

    async def _run(self) -> None:
        last: Any = object()
        while self._active:
            try:
                payload = await self._fetch()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._deactivate()
                logger.error(f"Subscription to {self._describe} failed: {e}")
                self._on_error(e)
                return

            current = self._signature(payload)
            if current != last and self._active:
                last = current
                self._on_change(payload)
            await asyncio.sleep(self._poll_interval)

    def _deactivate(self) -> None:
        self._active = False
        if self in self._registry:
            self._registry.remove(self)

    async def unsubscribe(self) -> None:
        self._deactivate()
        if not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass


class CosmosVenueStore(VenueStore):
    """Venue store backed by Azure Cosmos DB.

    Document schema (shifts container):
    {
        "id": "{shift_date}",
        "partitionKey": "{company_id}_{venue_id}",
        "shiftDate": "{shift_date}",
        "currentCapacity": {int},
        "logs": [...], "ejections": [...], ...
    }
    """

    def __init__(
        self,
        config: CoreConfig,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
    ) -> None:
        if not config.cosmos_endpoint:
            raise NightguardError("Cosmos endpoint is required")

        self.config = config
        self.max_retries = max_retries
        self.retry_delay = retry_delay

        self._credential: Any = None
        self._client: CosmosClient | None = None
        self._database: DatabaseProxy | None = None
        self._containers: dict[str, ContainerProxy] = {}
        self._subscriptions: list[_PollingSubscription] = []
        self._initialized = False

    async def _ensure_initialized(self) -> None:
        """Ensure client and containers are initialized."""
        if self._initialized:
            return

        self._credential = get_credential(self.config)
        endpoint = self.config.cosmos_endpoint or ""

        try:
            client = CosmosClient(endpoint, credential=self._credential)
            self._client = client

            database = await client.create_database_if_not_exists(id=self.config.cosmos_database)
            self._database = database

            for name in (
                self.config.shifts_container,
                self.config.alerts_container,
                self.config.config_container,
            ):
                self._containers[name] = await database.create_container_if_not_exists(
                    id=name,
                    partition_key=PartitionKey(path=PARTITION_KEY_PATH),
                )

            self._initialized = True
            logger.info(
                f"Connected to Cosmos DB: {endpoint} "
                f"(database={self.config.cosmos_database}, "
                f"auth={self.config.cosmos_auth_method.value})"
            )

        except CosmosHttpResponseError as e:
            if e.status_code in (401, 403):
                raise AuthenticationError(endpoint, str(e)) from e
            raise StorageConnectionError(endpoint, e) from e
        except ServiceRequestError as e:
            raise StorageConnectionError(endpoint, e) from e

    def _container(self, name: str) -> ContainerProxy:
        if name not in self._containers:
            raise StorageIOError("get_container", name, KeyError(name))
        return self._containers[name]

    @property
    def _shifts(self) -> ContainerProxy:
        return self._container(self.config.shifts_container)

    @property
    def _alerts(self) -> ContainerProxy:
        return self._container(self.config.alerts_container)

    async def _with_retry(self, operation: Callable[[], Awaitable[Any]], name: str) -> Any:
        """Execute an operation with retry logic for transient failures.

        Not-found and precondition failures propagate unchanged so callers
        can react to them.
        """
        last_error: Exception | None = None

        for attempt in range(self.max_retries):
            try:
                return await operation()
            except (CosmosResourceNotFoundError, CosmosAccessConditionFailedError):
                raise
            except CosmosHttpResponseError as e:
                # Don't retry client errors (4xx) other than throttling
                if e.status_code is not None and 400 <= e.status_code < 500 and e.status_code != 429:
                    raise StorageIOError(name, cause=e) from e
                last_error = e
            except ServiceRequestError as e:
                last_error = e

            if attempt < self.max_retries - 1:
                await asyncio.sleep(self.retry_delay * (2**attempt))

        raise StorageConnectionError(self.config.cosmos_endpoint or "cosmos", last_error)

    # -------------------------------------------------------------------------
    # Shift sessions
    # -------------------------------------------------------------------------

    async def _read_raw(self, key: ShiftKey) -> dict[str, Any] | None:
        await self._ensure_initialized()
        try:
            return await self._with_retry(
                lambda: self._shifts.read_item(item=key.shift_date, partition_key=key.partition_key),
                "read_session",
            )
        except CosmosResourceNotFoundError:
            return None

    async def get_session(self, key: ShiftKey) -> dict[str, Any] | None:
        doc = await self._read_raw(key)
        return _strip_system_fields(doc) if doc else None

    async def set_session(self, key: ShiftKey, document: dict[str, Any]) -> None:
        await self._ensure_initialized()
        body = {**document, "id": key.shift_date, "partitionKey": key.partition_key}
        await self._with_retry(lambda: self._shifts.upsert_item(body=body), "set_session")

    async def update_session(
        self,
        key: ShiftKey,
        set_fields: dict[str, Any],
        append_fields: dict[str, list[dict[str, Any]]] | None = None,
    ) -> None:
        await self._ensure_initialized()
        if append_fields:
            await self._merge_update(key, set_fields, append_fields)
        else:
            await self._patch_update(key, set_fields)

    async def _patch_update(self, key: ShiftKey, set_fields: dict[str, Any]) -> None:
        operations = [{"op": "set", "path": f"/{name}", "value": value} for name, value in set_fields.items()]
        try:
            for start in range(0, len(operations), MAX_PATCH_OPERATIONS):
                batch = operations[start : start + MAX_PATCH_OPERATIONS]
                await self._with_retry(
                    lambda batch=batch: self._shifts.patch_item(
                        item=key.shift_date,
                        partition_key=key.partition_key,
                        patch_operations=batch,
                    ),
                    "patch_session",
                )
        except CosmosResourceNotFoundError as e:
            raise SessionNotFoundError(key.shift_date, key.venue_id) from e

    async def _merge_update(
        self,
        key: ShiftKey,
        set_fields: dict[str, Any],
        append_fields: dict[str, list[dict[str, Any]]],
    ) -> None:
        # Union by event id under optimistic concurrency: a concurrent
        # writer invalidates the etag and the merge is redone on fresh data.
        for attempt in range(self.max_retries * 2):
            doc = await self._read_raw(key)
            if doc is None:
                raise SessionNotFoundError(key.shift_date, key.venue_id)

            etag = doc.get("_etag")
            for name, value in set_fields.items():
                doc[name] = value
            for name, items in append_fields.items():
                doc[name] = union_by_id(doc.get(name) or [], items)

            body = {k: v for k, v in doc.items() if k not in _SYSTEM_FIELDS}
            body["partitionKey"] = key.partition_key
            try:
                await self._with_retry(
                    lambda: self._shifts.replace_item(
                        item=key.shift_date,
                        body=body,
                        etag=etag,
                        match_condition=MatchConditions.IfNotModified,
                    ),
                    "merge_session",
                )
                return
            except CosmosAccessConditionFailedError:
                logger.debug(f"Concurrent write on {key.shift_date}, retrying merge ({attempt + 1})")
            except CosmosResourceNotFoundError as e:
                raise SessionNotFoundError(key.shift_date, key.venue_id) from e

        raise StorageIOError("merge_session", key.shift_date)

    async def delete_session(self, key: ShiftKey) -> bool:
        await self._ensure_initialized()
        try:
            await self._with_retry(
                lambda: self._shifts.delete_item(item=key.shift_date, partition_key=key.partition_key),
                "delete_session",
            )
            return True
        except CosmosResourceNotFoundError:
            return False

    async def list_sessions(
        self,
        venue: VenueKey,
        limit: int,
        exclude_shift_date: str | None = None,
    ) -> list[dict[str, Any]]:
        await self._ensure_initialized()

        query = "SELECT * FROM c WHERE c.partitionKey = @pk"
        params: list[dict[str, Any]] = [{"name": "@pk", "value": venue.partition_key}]
        if exclude_shift_date:
            query += " AND c.shiftDate != @exclude"
            params.append({"name": "@exclude", "value": exclude_shift_date})
        query += f" ORDER BY c.shiftDate DESC OFFSET 0 LIMIT {int(limit)}"

        async def run() -> list[dict[str, Any]]:
            results = []
            async for doc in self._shifts.query_items(
                query=query, parameters=params, partition_key=venue.partition_key
            ):
                results.append(_strip_system_fields(doc))
            return results

        return await self._with_retry(run, "list_sessions")

    async def subscribe_session(
        self,
        key: ShiftKey,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback,
    ) -> Subscription:
        await self._ensure_initialized()
        subscription = _PollingSubscription(
            fetch=lambda: self._read_raw(key),
            signature=lambda doc: doc.get("_etag") if doc else None,
            on_change=lambda doc: on_snapshot(_strip_system_fields(doc) if doc else None),
            on_error=on_error,
            poll_interval=self.config.poll_interval,
            describe=f"shift {key.partition_key}/{key.shift_date}",
            registry=self._subscriptions,
        )
        self._subscriptions.append(subscription)
        return subscription

    # -------------------------------------------------------------------------
    # Alerts
    # -------------------------------------------------------------------------

    async def add_alert(self, venue: VenueKey, alert: dict[str, Any]) -> str:
        await self._ensure_initialized()
        alert_id = alert.get("id") or uuid.uuid4().hex
        body = {**alert, "id": alert_id, "partitionKey": venue.partition_key}
        await self._with_retry(lambda: self._alerts.create_item(body=body), "add_alert")
        return alert_id

    async def update_alert(self, venue: VenueKey, alert_id: str, fields: dict[str, Any]) -> None:
        await self._ensure_initialized()
        operations = [{"op": "set", "path": f"/{name}", "value": value} for name, value in fields.items()]
        try:
            await self._with_retry(
                lambda: self._alerts.patch_item(
                    item=alert_id, partition_key=venue.partition_key, patch_operations=operations
                ),
                "update_alert",
            )
        except CosmosResourceNotFoundError:
            logger.warning(f"Alert {alert_id} not found for venue {venue.venue_id}")

    async def _active_alerts(self, venue: VenueKey) -> list[dict[str, Any]]:
        query = "SELECT * FROM c WHERE c.partitionKey = @pk AND c.active = true ORDER BY c.timestamp DESC"
        params = [{"name": "@pk", "value": venue.partition_key}]

        async def run() -> list[dict[str, Any]]:
            return [
                doc
                async for doc in self._alerts.query_items(
                    query=query, parameters=params, partition_key=venue.partition_key
                )
            ]

        return await self._with_retry(run, "query_alerts")

    async def subscribe_alerts(
        self,
        venue: VenueKey,
        on_change: AlertsCallback,
        on_error: ErrorCallback,
    ) -> Subscription:
        await self._ensure_initialized()
        subscription = _PollingSubscription(
            fetch=lambda: self._active_alerts(venue),
            signature=lambda docs: tuple((d["id"], d.get("_etag")) for d in docs),
            on_change=lambda docs: on_change([_strip_system_fields(d) for d in docs]),
            on_error=on_error,
            poll_interval=self.config.poll_interval,
            describe=f"alerts {venue.partition_key}",
            registry=self._subscriptions,
        )
        self._subscriptions.append(subscription)
        return subscription

    # -------------------------------------------------------------------------
    # Venue configuration
    # -------------------------------------------------------------------------

    async def get_venue_config(self, venue: VenueKey, name: str) -> dict[str, Any] | None:
        await self._ensure_initialized()
        container = self._container(self.config.config_container)
        try:
            doc = await self._with_retry(
                lambda: container.read_item(item=name, partition_key=venue.partition_key),
                "get_venue_config",
            )
        except CosmosResourceNotFoundError:
            return None
        return _strip_system_fields(doc)

    async def close(self) -> None:
        """Cancel subscriptions and close the Cosmos client."""
        for subscription in list(self._subscriptions):
            await subscription.unsubscribe()

        if self._client:
            await self._client.close()
            self._client = None
            self._database = None
            self._containers = {}
            self._initialized = False

        # Close credential if it has a close method (AAD credentials do)
        if self._credential and hasattr(self._credential, "close"):
            await self._credential.close()
            self._credential = None
