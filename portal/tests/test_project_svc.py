"""Project service tests."""

from __future__ import annotations

import pytest

from portal.backend.documents import Query
from portal.constants import ACTIVITY, LEADS
from portal.helpers import today_iso
from portal.schemas.documents import FilePayload
from portal.services import project_svc


async def make_project(ctx, **overrides):
    data = {"companyName": "Acme", "clientName": "Al", "tier": "host"}
    data.update(overrides)
    result = await project_svc.create_project(ctx, data)
    assert result.success, result.error
    return result.id


async def logged(ctx, activity_type):
    return [s.data["data"] for s in await ctx.documents.get_docs(Query(ACTIVITY)) if s.get("type") == activity_type]


@pytest.mark.asyncio
async def test_create_project_defaults(ctx, admin):
    project_id = await make_project(ctx, tier=None)
    project = await project_svc.get_project(ctx, project_id)

    assert project["status"] == "active"
    assert project["tier"] == "farmer"
    assert project["progress"] == 0
    assert project["assignedClients"] == []
    assert project["invoices"] == [] and project["clientFiles"] == []
    assert project["milestones"] == [
        {"id": "m1", "title": "Kickoff", "status": "current", "date": today_iso()}
    ]


@pytest.mark.asyncio
async def test_create_project_clamps_progress_and_maps_legacy_tier(ctx, admin):
    project_id = await make_project(ctx, progress=150, tier="Premium")
    project = await project_svc.get_project(ctx, project_id)
    assert project["progress"] == 100
    assert project["tier"] == "watchfuleye"

    await project_svc.update_project(ctx, project_id, {"progress": -5, "tier": "starter"})
    project = await project_svc.get_project(ctx, project_id)
    assert project["progress"] == 0
    assert project["tier"] == "bugcatcher"


@pytest.mark.asyncio
async def test_update_progress_is_clamped(ctx, admin):
    project_id = await make_project(ctx)
    result = await project_svc.update_project_progress(ctx, project_id, "250")
    assert result.data["progress"] == 100
    assert (await project_svc.get_project(ctx, project_id))["progress"] == 100


@pytest.mark.asyncio
async def test_assign_and_remove_clients(ctx, admin):
    project_id = await make_project(ctx)
    await project_svc.assign_client_to_project(ctx, project_id, "c1")
    await project_svc.assign_client_to_project(ctx, project_id, "c1")
    await project_svc.assign_client_to_project(ctx, project_id, "c2")
    await project_svc.remove_client_from_project(ctx, project_id, "c1")
    assert (await project_svc.get_project(ctx, project_id))["assignedClients"] == ["c2"]


@pytest.mark.asyncio
async def test_milestone_lifecycle(ctx, admin):
    project_id = await make_project(ctx)
    added = await project_svc.add_milestone(ctx, project_id, {"title": "Design", "date": "2026-03-01"})
    milestone_id = added.data["milestone_id"]

    assert not (await project_svc.update_milestone(ctx, project_id, milestone_id, {"status": "done"})).success
    await project_svc.update_milestone(ctx, project_id, milestone_id, {"status": "completed"})
    await project_svc.update_milestone(ctx, project_id, milestone_id, {"status": "completed"})

    completions = await logged(ctx, "milestone_completed")
    assert len(completions) == 1
    assert completions[0]["milestoneTitle"] == "Design"

    await project_svc.delete_milestone(ctx, project_id, "m1")
    milestones = (await project_svc.get_project(ctx, project_id))["milestones"]
    assert [m["title"] for m in milestones] == ["Design"]


@pytest.mark.asyncio
async def test_updates_keep_server_managed_fields(ctx, admin):
    project_id = await make_project(ctx)
    before = await project_svc.get_project(ctx, project_id)
    invoice_id = (
        await project_svc.add_invoice(ctx, project_id, {"number": "7", "amount": 10, "dueDate": "2026-02-01"})
    ).data["invoice_id"]

    await project_svc.update_project(
        ctx,
        project_id,
        {
            "notes": "Phase two",
            "createdAt": "2999-01-01T00:00:00+00:00",
            "createdBy": "intruder",
            "milestones": [],
            "convertedFromLead": "lead-x",
        },
    )
    await project_svc.update_milestone(ctx, project_id, "m1", {"id": "hijacked", "title": "Start"})
    await project_svc.update_invoice(
        ctx, project_id, invoice_id, {"id": "hijacked", "createdAt": "1999-01-01", "amount": "12"}
    )

    project = await project_svc.get_project(ctx, project_id)
    assert project["notes"] == "Phase two"
    assert project["createdAt"] == before["createdAt"] <= project["updatedAt"]
    assert project["createdBy"] == admin.uid
    assert project.get("convertedFromLead") is None
    assert [(m["id"], m["title"]) for m in project["milestones"]] == [("m1", "Start")]
    invoice = project["invoices"][0]
    assert invoice["id"] == invoice_id
    assert invoice["amount"] == 12.0
    assert invoice["createdAt"] != "1999-01-01"


@pytest.mark.asyncio
async def test_invoices(ctx, admin):
    project_id = await make_project(ctx)
    added = await project_svc.add_invoice(
        ctx, project_id, {"number": 42, "amount": "99.50", "dueDate": "2026-02-01"}
    )
    invoice_id = added.data["invoice_id"]
    invoice = (await project_svc.get_project(ctx, project_id))["invoices"][0]
    assert invoice["number"] == "42"
    assert invoice["amount"] == 99.5
    assert invoice["status"] == "pending"

    stats = await project_svc.get_project_stats(ctx)
    assert stats["pendingInvoices"] == 1
    assert stats["pendingRevenue"] == 99.5

    await project_svc.update_invoice(ctx, project_id, invoice_id, {"status": "paid"})
    assert len(await logged(ctx, "invoice_paid")) == 1
    assert (await project_svc.get_project_stats(ctx))["pendingInvoices"] == 0

    missing = await project_svc.update_invoice(ctx, project_id, "nope", {"status": "paid"})
    assert missing.error == "Invoice not found"


@pytest.mark.asyncio
async def test_client_files(ctx, admin):
    project_id = await make_project(ctx)
    progress = []
    result = await project_svc.add_client_file(
        ctx,
        project_id,
        FilePayload(name="brief.pdf", content=b"%PDF" + b"x" * 100, content_type="application/pdf"),
        on_progress=progress.append,
    )
    assert result.success
    assert progress[-1].state == "success"

    entry = (await project_svc.get_project(ctx, project_id))["clientFiles"][0]
    assert entry["name"] == "brief.pdf"
    assert entry["uploadedBy"] == "Ada Admin"
    assert ctx.storage.exists(entry["path"])

    await project_svc.remove_client_file(ctx, project_id, entry["id"])
    assert (await project_svc.get_project(ctx, project_id))["clientFiles"] == []
    assert not ctx.storage.exists(entry["path"])


@pytest.mark.asyncio
async def test_client_file_rejects_disallowed_type(ctx, admin):
    project_id = await make_project(ctx)
    result = await project_svc.add_client_file(
        ctx, project_id, FilePayload(name="run.exe", content=b"MZ", content_type="application/x-msdownload")
    )
    assert not result.success
    assert result.error.startswith("File type not allowed")


@pytest.mark.asyncio
async def test_return_project_to_lead(ctx, admin):
    project_id = await make_project(ctx, notes="Keen")
    result = await project_svc.return_project_to_lead(ctx, project_id)

    assert await project_svc.get_project(ctx, project_id) is None
    lead = (await ctx.documents.get(LEADS, result.id)).data
    assert lead["status"] == "noted"
    assert lead["notes"] == "Returned from project. Keen"
    assert lead["returnedFromProject"] == project_id


@pytest.mark.asyncio
async def test_clients_only_see_assigned_projects(ctx, admin, sign_in):
    client = await sign_in("client@example.com")
    await sign_in("admin@example.com", role="admin")
    mine = await make_project(ctx, companyName="Mine")
    await make_project(ctx, companyName="Theirs")
    await project_svc.assign_client_to_project(ctx, mine, client.uid)

    await sign_in("client@example.com")
    projects = await project_svc.load_projects(ctx)
    assert [p["id"] for p in projects] == [mine]
    assert ctx.state.get("projects") == projects


def test_sort_projects_by_tier_then_progress():
    projects = [
        {"id": "a", "tier": "host", "progress": 90},
        {"id": "b", "tier": "watchfuleye", "progress": 10},
        {"id": "c", "tier": "watchfuleye", "progress": 60},
        {"id": "d", "tier": "mystery", "progress": 100},
        {"id": "e", "tier": "premium", "progress": 0},
    ]
    assert [p["id"] for p in project_svc.sort_projects(projects)] == ["c", "b", "e", "a", "d"]
