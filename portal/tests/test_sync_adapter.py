"""Sync adapter: live queries into state slices, fallback sorting, teardown."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from portal.backend.documents import DocumentStore, Query
from portal.state import StateStore
from portal.sync.adapter import QuerySpec, SyncAdapter


def ts(day: int) -> datetime:
    return datetime(2026, 1, day, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def store(engine):
    return DocumentStore(async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False))


@pytest.fixture
def state():
    return StateStore()


@pytest.fixture
def adapter(store, state):
    return SyncAdapter(store, state)


@pytest.mark.asyncio
async def test_collection_subscription_mirrors_writes(adapter, store, state):
    await adapter.subscribe_to_collection("leads", order_by="createdAt", descending=True)
    await store.set("leads", "a", {"createdAt": ts(1)})
    await store.set("leads", "b", {"createdAt": ts(2)})

    assert [row["id"] for row in state.get("leads")] == ["b", "a"]


@pytest.mark.asyncio
async def test_same_subscription_is_not_opened_twice(adapter, store):
    first = await adapter.subscribe_to_collection("leads")
    second = await adapter.subscribe_to_collection("leads")

    assert first is second
    assert store.listener_count == 1
    assert adapter.tracked_count == 1


@pytest.mark.asyncio
async def test_missing_index_falls_back_to_client_side_sort(adapter, store, state):
    await store.set("messages", "m1", {"projectId": "p1", "clientTimestamp": "2026-01-03T00:00:00+00:00"})
    await store.set("messages", "m2", {"projectId": "p1", "timestamp": ts(1)})
    await store.set("messages", "m3", {"projectId": "p2", "timestamp": ts(2)})

    await adapter.subscribe_to_collection(
        "messages",
        filters=[("projectId", "==", "p1")],
        order_by="timestamp",
        descending=False,
        date_fields=("timestamp", "clientTimestamp"),
    )

    # m1 has no server timestamp yet, so an ordered query would have hidden it.
    assert [row["id"] for row in state.get("messages")] == ["m2", "m1"]


@pytest.mark.asyncio
async def test_fallback_applies_limit_after_sorting(adapter, store):
    for day in (1, 5, 3, 4, 2):
        await store.set("leads", f"l{day}", {"status": "noted", "createdAt": ts(day)})

    query = Query("leads").where("status", "==", "noted").order_by("createdAt", descending=True).limit(2)
    rows = await adapter.fetch(query)

    assert [row["id"] for row in rows] == ["l5", "l4"]


@pytest.mark.asyncio
async def test_merged_subscription_dedupes_and_sorts(adapter, store, state):
    await store.set("tickets", "t1", {"clientId": "u1", "createdAt": ts(1)})
    await store.set("tickets", "t2", {"submittedById": "u1", "clientId": "u1", "createdAt": ts(3)})
    await store.set("tickets", "t3", {"projectId": "p1", "clientId": "other", "createdAt": ts(2)})
    await store.set("tickets", "t4", {"projectId": "p9", "clientId": "other", "createdAt": ts(4)})

    await adapter.subscribe_merged(
        "tickets",
        "tickets",
        [
            QuerySpec(filters=(("clientId", "==", "u1"),)),
            QuerySpec(filters=(("submittedById", "==", "u1"),)),
            QuerySpec(filters=(("projectId", "in", ("p1",)),)),
        ],
    )

    assert [row["id"] for row in state.get("tickets")] == ["t2", "t3", "t1"]

    await store.set("tickets", "t5", {"clientId": "u1", "createdAt": ts(9)})
    assert [row["id"] for row in state.get("tickets")][0] == "t5"


@pytest.mark.asyncio
async def test_transform_applies_to_every_row(adapter, store, state):
    await store.set("tickets", "t1", {"status": "open"})
    await adapter.subscribe_to_collection("tickets", transform=lambda row: {**row, "seen": True})
    assert state.get("tickets")[0]["seen"] is True


@pytest.mark.asyncio
async def test_new_query_on_a_slice_closes_the_previous_one(adapter, store, state):
    await adapter.subscribe_to_collection("messages", filters=[("projectId", "==", "pA")])
    await adapter.subscribe_merged(
        "messages", "messages", [QuerySpec(filters=(("projectId", "==", "pB"),))]
    )

    await store.set("messages", "b1", {"projectId": "pB", "createdAt": ts(1)})
    await store.set("messages", "a1", {"projectId": "pA", "createdAt": ts(2)})

    assert [row["id"] for row in state.get("messages")] == ["b1"]
    assert store.listener_count == 1
    assert adapter.tracked_count == 1
    assert len(adapter.subscription_keys) == 1


@pytest.mark.asyncio
async def test_closing_a_subscription_untracks_it(adapter, store):
    leads = await adapter.subscribe_to_collection("leads")
    await adapter.subscribe_to_collection("projects")

    leads()
    leads()

    assert adapter.tracked_count == 1
    assert store.listener_count == 1
    again = await adapter.subscribe_to_collection("leads")
    assert again is not leads
    assert adapter.tracked_count == 2


@pytest.mark.asyncio
async def test_teardown_calls_each_handle_once(adapter, store, state):
    await adapter.subscribe_to_collection("leads")
    await adapter.subscribe_to_collection("projects")
    calls = []
    handle = adapter.track(lambda: calls.append("extra"))
    adapter.track(handle)

    adapter.teardown()
    adapter.teardown()

    assert calls == ["extra"]
    assert store.listener_count == 0
    assert adapter.subscription_keys == []

    await store.set("leads", "late", {"companyName": "Late"})
    assert state.get("leads") == []


@pytest.mark.asyncio
async def test_teardown_survives_failing_handle(adapter):
    def broken():
        raise RuntimeError("boom")

    calls = []
    adapter.track(broken)
    adapter.track(lambda: calls.append(1))
    adapter.teardown()
    assert calls == [1]
    assert adapter.tracked_count == 0


@pytest.mark.asyncio
async def test_publish_replaces_slice(adapter, state):
    adapter.publish("projects", [{"id": "p1"}])
    adapter.publish("projects", [{"id": "p2"}])
    assert state.get("projects") == [{"id": "p2"}]
