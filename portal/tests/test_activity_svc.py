"""Activity log tests."""

from __future__ import annotations

import pytest

from portal.backend.documents import Query
from portal.constants import ACTIVITY
from portal.services import activity_svc


@pytest.mark.asyncio
async def test_log_activity_records_user_and_label(ctx, admin):
    assert await activity_svc.log_activity(ctx, "ticket_created", {"ticketId": "t1"})

    (snap,) = await ctx.documents.get_docs(Query(ACTIVITY))
    assert snap.get("type") == "ticket_created"
    assert snap.get("label") == "Ticket Submitted"
    assert snap.get("userId") == admin.uid
    assert snap.get("data") == {"ticketId": "t1"}
    assert snap.get("timestamp") is not None


@pytest.mark.asyncio
async def test_log_activity_never_raises(ctx):
    # Signed out, so the write is refused.
    assert await activity_svc.log_activity(ctx, "lead_created") is False
    assert await ctx.documents.get_docs(Query(ACTIVITY)) == []


@pytest.mark.asyncio
async def test_log_activity_can_be_disabled(ctx, admin):
    ctx.settings.activity_log_enabled = False
    assert await activity_svc.log_activity(ctx, "lead_created") is False


def test_unknown_type_uses_raw_label():
    assert activity_svc.activity_label("custom_event") == "custom_event"


@pytest.mark.asyncio
async def test_load_activity_filters_newest_first(ctx, admin):
    await activity_svc.log_activity(ctx, "ticket_created", {"projectId": "p1"})
    await activity_svc.log_activity(ctx, "message_sent", {"projectId": "p2"})
    await activity_svc.log_activity(ctx, "ticket_resolved", {"projectId": "p1"})

    rows = await activity_svc.load_activity(ctx)
    assert [r["type"] for r in rows] == ["ticket_resolved", "message_sent", "ticket_created"]
    assert ctx.state.get("activity") == rows

    project = await activity_svc.get_project_activity(ctx, "p1")
    assert [r["type"] for r in project] == ["ticket_resolved", "ticket_created"]

    limited = await activity_svc.load_activity(ctx, limit=1, activity_type="ticket_created")
    assert [r["type"] for r in limited] == ["ticket_created"]
    assert await activity_svc.get_user_activity(ctx, "nobody") == []


@pytest.mark.asyncio
async def test_activity_feed_keeps_latest(ctx, admin):
    ctx.settings.activity_feed_limit = 2
    await activity_svc.subscribe_to_activity(ctx)
    for activity_type in ("lead_created", "lead_updated", "lead_archived"):
        await activity_svc.log_activity(ctx, activity_type)

    assert [r["type"] for r in ctx.state.get("activity")] == ["lead_archived", "lead_updated"]
