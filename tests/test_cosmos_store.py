"""
Tests for the Cosmos DB venue store.

The unit tests replace the container proxies with mocks so no account is
needed. The integration class at the bottom runs only when
NIGHTGUARD_COSMOS_ENDPOINT is set.

Run the integration tests with: pytest -m integration tests/test_cosmos_store.py
"""

from __future__ import annotations

import asyncio
import os
import uuid
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from azure.core import MatchConditions
from azure.cosmos.exceptions import (
    CosmosAccessConditionFailedError,
    CosmosHttpResponseError,
    CosmosResourceNotFoundError,
)

from conftest import SHIFT, VENUE, wait_until
from nightguard_core.config import CoreConfig, CosmosAuthMethod
from nightguard_core.exceptions import (
    NightguardError,
    SessionNotFoundError,
    StorageConnectionError,
    StorageIOError,
)
from nightguard_core.store.base import VenueKey
from nightguard_core.store.cosmos import CosmosVenueStore


def not_found() -> CosmosResourceNotFoundError:
    return CosmosResourceNotFoundError(status_code=404, message="Entity with the specified id does not exist")


def unavailable() -> CosmosHttpResponseError:
    return CosmosHttpResponseError(status_code=503, message="Service unavailable")


async def items(docs: list[dict[str, Any]]):
    for doc in docs:
        yield doc


def stored_shift(etag: str = "etag-1", **fields: Any) -> dict[str, Any]:
    doc = {
        "id": "2024-03-14",
        "partitionKey": "co-1_venue-1",
        "shiftDate": "2024-03-14",
        "currentCapacity": 0,
        "logs": [],
        "_rid": "rid",
        "_self": "self",
        "_etag": etag,
        "_attachments": "attachments/",
        "_ts": 1710453600,
    }
    doc.update(fields)
    return doc


@pytest.fixture
def containers() -> dict[str, MagicMock]:
    return {"shifts": MagicMock(), "alerts": MagicMock(), "venue_config": MagicMock()}


@pytest.fixture
def cosmos_store(containers: dict[str, MagicMock]) -> CosmosVenueStore:
    config = CoreConfig(
        cosmos_endpoint="https://nightguard-test.documents.azure.com:443/",
        cosmos_auth_method=CosmosAuthMethod.KEY,
        cosmos_key="test-key",
        poll_interval=0.01,
    )
    store = CosmosVenueStore(config, retry_delay=0)
    store._containers = containers
    store._initialized = True
    return store


class TestConstruction:
    """Tests for store construction."""

    def test_endpoint_required(self) -> None:
        with pytest.raises(NightguardError):
            CosmosVenueStore(CoreConfig())

    async def test_close_releases_client(self, cosmos_store: CosmosVenueStore) -> None:
        client = AsyncMock()
        cosmos_store._client = client

        await cosmos_store.close()

        client.close.assert_awaited_once()
        assert cosmos_store._initialized is False
        assert cosmos_store._containers == {}


class TestReadWrite:
    """Tests for reading, writing and deleting shift documents."""

    async def test_get_strips_system_fields(self, cosmos_store: CosmosVenueStore, containers) -> None:
        containers["shifts"].read_item = AsyncMock(return_value=stored_shift(currentCapacity=17))

        doc = await cosmos_store.get_session(SHIFT)

        assert doc["currentCapacity"] == 17
        assert "_etag" not in doc
        assert "partitionKey" not in doc
        containers["shifts"].read_item.assert_awaited_once_with(item="2024-03-14", partition_key="co-1_venue-1")

    async def test_get_missing_returns_none(self, cosmos_store: CosmosVenueStore, containers) -> None:
        containers["shifts"].read_item = AsyncMock(side_effect=not_found())

        assert await cosmos_store.get_session(SHIFT) is None

    async def test_set_upserts_with_keys(self, cosmos_store: CosmosVenueStore, containers) -> None:
        containers["shifts"].upsert_item = AsyncMock()

        await cosmos_store.set_session(SHIFT, {"shiftDate": "2024-03-14", "logs": []})

        body = containers["shifts"].upsert_item.call_args.kwargs["body"]
        assert body["id"] == "2024-03-14"
        assert body["partitionKey"] == "co-1_venue-1"

    async def test_delete_missing_returns_false(self, cosmos_store: CosmosVenueStore, containers) -> None:
        containers["shifts"].delete_item = AsyncMock(side_effect=not_found())

        assert await cosmos_store.delete_session(SHIFT) is False

    async def test_list_sessions_query(self, cosmos_store: CosmosVenueStore, containers) -> None:
        containers["shifts"].query_items = MagicMock(
            return_value=items([stored_shift(shiftDate="2024-03-13"), stored_shift(shiftDate="2024-03-12")])
        )

        docs = await cosmos_store.list_sessions(VENUE, limit=5, exclude_shift_date="2024-03-14")

        assert [d["shiftDate"] for d in docs] == ["2024-03-13", "2024-03-12"]
        assert all("_etag" not in d for d in docs)
        kwargs = containers["shifts"].query_items.call_args.kwargs
        assert "ORDER BY c.shiftDate DESC" in kwargs["query"]
        assert "LIMIT 5" in kwargs["query"]
        assert {"name": "@exclude", "value": "2024-03-14"} in kwargs["parameters"]


class TestPartialUpdates:
    """Tests for set-only patches and append merges."""

    async def test_patch_is_batched(self, cosmos_store: CosmosVenueStore, containers) -> None:
        containers["shifts"].patch_item = AsyncMock()
        fields = {f"field{i}": i for i in range(12)}

        await cosmos_store.update_session(SHIFT, fields)

        calls = containers["shifts"].patch_item.call_args_list
        assert len(calls) == 2
        assert len(calls[0].kwargs["patch_operations"]) == 10
        assert calls[1].kwargs["patch_operations"] == [
            {"op": "set", "path": "/field10", "value": 10},
            {"op": "set", "path": "/field11", "value": 11},
        ]

    async def test_patch_missing_document(self, cosmos_store: CosmosVenueStore, containers) -> None:
        containers["shifts"].patch_item = AsyncMock(side_effect=not_found())

        with pytest.raises(SessionNotFoundError):
            await cosmos_store.update_session(SHIFT, {"currentCapacity": 3})

    async def test_append_unions_by_id(self, cosmos_store: CosmosVenueStore, containers) -> None:
        containers["shifts"].read_item = AsyncMock(return_value=stored_shift(logs=[{"id": "a", "count": 1}]))
        containers["shifts"].replace_item = AsyncMock()

        await cosmos_store.update_session(
            SHIFT,
            {"currentCapacity": 2},
            {"logs": [{"id": "a", "count": 1}, {"id": "b", "count": 1}]},
        )

        kwargs = containers["shifts"].replace_item.call_args.kwargs
        assert [e["id"] for e in kwargs["body"]["logs"]] == ["a", "b"]
        assert kwargs["body"]["currentCapacity"] == 2
        assert kwargs["body"]["partitionKey"] == "co-1_venue-1"
        assert "_etag" not in kwargs["body"]
        assert kwargs["etag"] == "etag-1"
        assert kwargs["match_condition"] == MatchConditions.IfNotModified

    async def test_concurrent_writer_triggers_remerge(self, cosmos_store: CosmosVenueStore, containers) -> None:
        containers["shifts"].read_item = AsyncMock(
            side_effect=[
                stored_shift("etag-1", logs=[]),
                stored_shift("etag-2", logs=[{"id": "other-device"}]),
            ]
        )
        containers["shifts"].replace_item = AsyncMock(
            side_effect=[CosmosAccessConditionFailedError(status_code=412, message="Precondition failed"), None]
        )

        await cosmos_store.update_session(SHIFT, {}, {"logs": [{"id": "mine"}]})

        final = containers["shifts"].replace_item.call_args_list[-1].kwargs
        assert [e["id"] for e in final["body"]["logs"]] == ["other-device", "mine"]
        assert final["etag"] == "etag-2"

    async def test_append_missing_document(self, cosmos_store: CosmosVenueStore, containers) -> None:
        containers["shifts"].read_item = AsyncMock(side_effect=not_found())

        with pytest.raises(SessionNotFoundError):
            await cosmos_store.update_session(SHIFT, {}, {"logs": [{"id": "a"}]})


class TestRetry:
    """Tests for transient failure handling."""

    async def test_transient_then_success(self, cosmos_store: CosmosVenueStore, containers) -> None:
        containers["shifts"].read_item = AsyncMock(side_effect=[unavailable(), stored_shift()])

        doc = await cosmos_store.get_session(SHIFT)

        assert doc["shiftDate"] == "2024-03-14"
        assert containers["shifts"].read_item.await_count == 2

    async def test_exhausted_retries_raise_connection_error(
        self, cosmos_store: CosmosVenueStore, containers
    ) -> None:
        containers["shifts"].read_item = AsyncMock(side_effect=unavailable())

        with pytest.raises(StorageConnectionError):
            await cosmos_store.get_session(SHIFT)
        assert containers["shifts"].read_item.await_count == 3

    async def test_client_error_is_not_retried(self, cosmos_store: CosmosVenueStore, containers) -> None:
        containers["shifts"].upsert_item = AsyncMock(
            side_effect=CosmosHttpResponseError(status_code=400, message="Bad request")
        )

        with pytest.raises(StorageIOError):
            await cosmos_store.set_session(SHIFT, {"shiftDate": "2024-03-14"})
        assert containers["shifts"].upsert_item.await_count == 1


class TestSubscriptions:
    """Tests for etag polling subscriptions."""

    async def test_snapshot_fires_on_etag_change(self, cosmos_store: CosmosVenueStore, containers) -> None:
        current = {"doc": stored_shift("etag-1", currentCapacity=1)}
        containers["shifts"].read_item = AsyncMock(side_effect=lambda **kwargs: current["doc"])
        snapshots: list[dict[str, Any] | None] = []

        subscription = await cosmos_store.subscribe_session(SHIFT, snapshots.append, lambda e: None)
        await wait_until(lambda: len(snapshots) == 1)
        await asyncio.sleep(0.05)
        assert len(snapshots) == 1

        current["doc"] = stored_shift("etag-2", currentCapacity=2)
        await wait_until(lambda: len(snapshots) == 2)

        assert snapshots[1]["currentCapacity"] == 2
        assert "_etag" not in snapshots[1]
        await subscription.unsubscribe()
        assert subscription.active is False

    async def test_missing_document_delivers_none(self, cosmos_store: CosmosVenueStore, containers) -> None:
        containers["shifts"].read_item = AsyncMock(side_effect=not_found())
        snapshots: list[dict[str, Any] | None] = []

        subscription = await cosmos_store.subscribe_session(SHIFT, snapshots.append, lambda e: None)
        await wait_until(lambda: len(snapshots) == 1)

        assert snapshots == [None]
        await subscription.unsubscribe()

    async def test_unsubscribe_drops_registration(self, cosmos_store: CosmosVenueStore, containers) -> None:
        containers["shifts"].read_item = AsyncMock(side_effect=not_found())
        first = await cosmos_store.subscribe_session(SHIFT, lambda doc: None, lambda e: None)
        second = await cosmos_store.subscribe_session(SHIFT, lambda doc: None, lambda e: None)
        assert cosmos_store._subscriptions == [first, second]

        await first.unsubscribe()
        await first.unsubscribe()

        assert cosmos_store._subscriptions == [second]
        await cosmos_store.close()
        assert cosmos_store._subscriptions == []

    async def test_read_failure_reports_error(self, cosmos_store: CosmosVenueStore, containers) -> None:
        containers["shifts"].read_item = AsyncMock(side_effect=unavailable())
        errors: list[Exception] = []

        subscription = await cosmos_store.subscribe_session(SHIFT, lambda doc: None, errors.append)
        await wait_until(lambda: len(errors) == 1)

        assert isinstance(errors[0], StorageConnectionError)
        assert subscription.active is False
        assert cosmos_store._subscriptions == []

    async def test_alert_feed_polls_active_alerts(self, cosmos_store: CosmosVenueStore, containers) -> None:
        alert = {"id": "al-1", "type": "sos", "message": "Fight", "active": True, "_etag": "a1"}
        containers["alerts"].query_items = MagicMock(side_effect=lambda **kwargs: items([alert]))
        received: list[list[dict[str, Any]]] = []

        subscription = await cosmos_store.subscribe_alerts(VENUE, received.append, lambda e: None)
        await wait_until(lambda: len(received) == 1)

        assert received[0] == [{"id": "al-1", "type": "sos", "message": "Fight", "active": True}]
        await cosmos_store.close()
        assert subscription.active is False


class TestAlertsAndConfig:
    """Tests for alert writes and venue configuration reads."""

    async def test_add_alert(self, cosmos_store: CosmosVenueStore, containers) -> None:
        containers["alerts"].create_item = AsyncMock()

        alert_id = await cosmos_store.add_alert(VENUE, {"type": "bolo", "message": "Red jacket"})

        body = containers["alerts"].create_item.call_args.kwargs["body"]
        assert body["id"] == alert_id
        assert body["partitionKey"] == "co-1_venue-1"

    async def test_dismiss_missing_alert_is_logged(self, cosmos_store: CosmosVenueStore, containers) -> None:
        containers["alerts"].patch_item = AsyncMock(side_effect=not_found())

        await cosmos_store.update_alert(VENUE, "al-404", {"active": False})

    async def test_missing_venue_config(self, cosmos_store: CosmosVenueStore, containers) -> None:
        containers["venue_config"].read_item = AsyncMock(side_effect=not_found())

        assert await cosmos_store.get_venue_config(VENUE, "checklists") is None


@pytest.mark.integration
@pytest.mark.skipif(
    not os.environ.get("NIGHTGUARD_COSMOS_ENDPOINT"),
    reason="NIGHTGUARD_COSMOS_ENDPOINT not set",
)
class TestCosmosLive:
    """Round trip against a real Cosmos DB account."""

    async def test_shift_round_trip(self) -> None:
        store = CosmosVenueStore(CoreConfig.from_environment())
        key = VenueKey("test-co", f"venue-{uuid.uuid4().hex[:8]}").shift("2024-03-14")
        try:
            await store.set_session(key, {"shiftDate": "2024-03-14", "currentCapacity": 0, "logs": []})
            await store.update_session(key, {"currentCapacity": 1}, {"logs": [{"id": "e1", "type": "in"}]})

            doc = await store.get_session(key)
            assert doc["currentCapacity"] == 1
            assert [e["id"] for e in doc["logs"]] == ["e1"]
        finally:
            await store.delete_session(key)
            await store.close()
