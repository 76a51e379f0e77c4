"""Project service - projects, milestones, invoices and client files."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable, Iterable

from ..backend.documents import SERVER_TIMESTAMP, ArrayRemove, ArrayUnion, Query
from ..backend.storage import ProgressCallback
from ..constants import (
    FILES_PATH,
    INVOICE_STATUSES,
    LEADS,
    MILESTONE_STATUSES,
    PROJECTS,
    normalize_tier,
    tier_order,
)
from ..schemas.documents import (
    ClientFile,
    FilePayload,
    Invoice,
    Milestone,
    ProjectCreate,
    clamp_progress,
    only_fields,
    parse_amount,
)
from ..security.sanitize import RICH_TEXT_FIELDS, escape_html, sanitize_document
from ..validation import (
    validate_invoice_form,
    validate_milestone_form,
    validate_project_form,
    validate_select,
)
from . import archive_svc, storage_svc
from .activity_svc import log_activity
from .lead_svc import TRANSFER_FIELDS
from .results import CommandResult, failed, invalid, ok, rejected

if TYPE_CHECKING:
    from ..context import AppContext

logger = logging.getLogger(__name__)

PROJECT_NOT_FOUND = "Project not found"
# Nested lists have their own commands; ids, stamps and conversion links are server-managed.
PROJECT_EDITABLE_FIELDS = ProjectCreate.document_fields(
    exclude=("milestones", "invoices", "client_files", "demo_files", "converted_from_lead")
) | {"githubLink", "githubUrl"}
MILESTONE_EDITABLE_FIELDS = Milestone.document_fields(exclude=("id",))
INVOICE_EDITABLE_FIELDS = Invoice.document_fields(exclude=("id", "created_at"))


def _project_query(ctx: AppContext) -> Query:
    """Staff see every project; clients only the ones they are assigned to."""
    if ctx.state.is_admin:
        return Query(PROJECTS).order_by("createdAt", descending=True)
    return Query(PROJECTS).where("assignedClients", "array-contains", ctx.state.current_user_id or "")


def sort_projects(projects: Iterable[dict]) -> list[dict]:
    """Tier order first, then most progressed first."""
    return sorted(
        projects,
        key=lambda p: (tier_order(p.get("tier")), -clamp_progress(p.get("progress"))),
    )


async def load_projects(
    ctx: AppContext, *, status: str | None = None, tier: str | None = None
) -> list[dict]:
    try:
        projects = await ctx.sync.fetch(_project_query(ctx))
    except Exception as exc:
        failed(ctx, logger, exc, "Failed to load projects")
        return []

    if status:
        projects = [p for p in projects if p.get("status") == status]
    if tier:
        wanted = normalize_tier(tier)
        projects = [p for p in projects if normalize_tier(p.get("tier")) == wanted]

    ctx.sync.publish("projects", projects)
    logger.info("Loaded %d projects", len(projects))
    return projects


async def subscribe_to_projects(ctx: AppContext) -> Callable[[], None]:
    if ctx.state.is_admin:
        return await ctx.sync.subscribe_to_collection(
            PROJECTS, order_by="createdAt", descending=True
        )
    return await ctx.sync.subscribe_to_collection(
        PROJECTS,
        filters=[("assignedClients", "array-contains", ctx.state.current_user_id or "")],
    )


async def get_project(ctx: AppContext, project_id: str) -> dict | None:
    try:
        snap = await ctx.documents.get(PROJECTS, project_id)
    except Exception:
        logger.exception("Failed to get project %s", project_id)
        return None
    return snap.to_dict() if snap is not None else None


async def create_project(
    ctx: AppContext, data: dict[str, Any], logo: FilePayload | None = None
) -> CommandResult:
    validation = validate_project_form(data)
    if not validation.valid:
        return invalid(ctx, validation)

    try:
        project = ProjectCreate.model_validate(data).to_document()
        project = sanitize_document(project, RICH_TEXT_FIELDS)
        logger.info("Creating project %s", project["companyName"])
        project_id = await ctx.documents.add(
            PROJECTS,
            {
                **project,
                "invoices": [],
                "clientFiles": [],
                "createdAt": SERVER_TIMESTAMP,
                "updatedAt": SERVER_TIMESTAMP,
                "createdBy": ctx.state.current_user_id,
            },
        )

        if logo is not None:
            uploaded = await storage_svc.upload_logo(ctx, logo, project_id, "project")
            if uploaded.success:
                await ctx.documents.update(PROJECTS, project_id, {"logo": uploaded.data["url"]})
    except Exception as exc:
        return failed(ctx, logger, exc, "Failed to create project", context={"data": data})

    await log_activity(
        ctx, "project_created", {"projectId": project_id, "companyName": project["companyName"]}
    )
    logger.info("Project created: %s", project_id)
    ctx.notifier.success("Project created!")
    return ok(id=project_id)


def _editable(updates: dict[str, Any], allowed: frozenset[str], kind: str) -> dict[str, Any]:
    changes = only_fields(updates, allowed)
    if len(changes) < len(updates):
        logger.warning("Ignoring read-only %s fields: %s", kind, sorted(set(updates) - set(changes)))
    return changes


def _normalize_changes(updates: dict[str, Any]) -> dict[str, Any]:
    changes = _editable(updates, PROJECT_EDITABLE_FIELDS, "project")
    if "progress" in changes:
        changes["progress"] = clamp_progress(changes["progress"])
    if changes.get("tier"):
        changes["tier"] = normalize_tier(str(changes["tier"]))
    if "assignedClients" in changes:
        changes["assignedClients"] = list(dict.fromkeys(changes["assignedClients"] or []))
    return changes


async def update_project(
    ctx: AppContext, project_id: str, updates: dict[str, Any], logo: FilePayload | None = None
) -> CommandResult:
    validation = validate_project_form(updates, partial=True)
    if not validation.valid:
        return invalid(ctx, validation)

    try:
        changes = sanitize_document(_normalize_changes(updates), RICH_TEXT_FIELDS)
        if logo is not None:
            uploaded = await storage_svc.upload_logo(ctx, logo, project_id, "project")
            if uploaded.success:
                changes["logo"] = uploaded.data["url"]
        await ctx.documents.update(
            PROJECTS, project_id, {**changes, "updatedAt": SERVER_TIMESTAMP}
        )
    except Exception as exc:
        return failed(
            ctx, logger, exc, "Failed to update project", context={"projectId": project_id}
        )

    await log_activity(ctx, "project_updated", {"projectId": project_id, "fields": sorted(changes)})
    logger.info("Project updated: %s", project_id)
    ctx.notifier.success("Project updated!")
    return ok(id=project_id)


async def update_project_progress(ctx: AppContext, project_id: str, progress: Any) -> CommandResult:
    value = clamp_progress(progress)
    try:
        await ctx.documents.update(
            PROJECTS, project_id, {"progress": value, "updatedAt": SERVER_TIMESTAMP}
        )
    except Exception as exc:
        return failed(
            ctx, logger, exc, "Failed to update progress", context={"projectId": project_id}
        )
    ctx.notifier.success("Progress updated!")
    return ok(id=project_id, progress=value)


async def assign_client_to_project(ctx: AppContext, project_id: str, client_id: str) -> CommandResult:
    try:
        await ctx.documents.update(
            PROJECTS,
            project_id,
            {"assignedClients": ArrayUnion(client_id), "updatedAt": SERVER_TIMESTAMP},
        )
    except Exception as exc:
        return failed(ctx, logger, exc, "Failed to assign client", context={"projectId": project_id})
    ctx.notifier.success("Client assigned!")
    return ok(id=project_id)


async def remove_client_from_project(
    ctx: AppContext, project_id: str, client_id: str
) -> CommandResult:
    try:
        await ctx.documents.update(
            PROJECTS,
            project_id,
            {"assignedClients": ArrayRemove(client_id), "updatedAt": SERVER_TIMESTAMP},
        )
    except Exception as exc:
        return failed(ctx, logger, exc, "Failed to remove client", context={"projectId": project_id})
    ctx.notifier.success("Client removed!")
    return ok(id=project_id)


# ----------------------------------------------------------------------
# Milestones
# ----------------------------------------------------------------------


async def add_milestone(ctx: AppContext, project_id: str, milestone: dict[str, Any]) -> CommandResult:
    validation = validate_milestone_form(milestone)
    if not validation.valid:
        return invalid(ctx, validation)
    try:
        snap = await ctx.documents.get(PROJECTS, project_id)
        if snap is None:
            return rejected(ctx, PROJECT_NOT_FOUND)
        entry = Milestone(
            title=milestone["title"],
            status=milestone.get("status") or "pending",
            **({"date": milestone["date"]} if milestone.get("date") else {}),
        )
        entry = sanitize_document(entry.to_document())
        await ctx.documents.update(
            PROJECTS,
            project_id,
            {"milestones": [*(snap.get("milestones") or []), entry], "updatedAt": SERVER_TIMESTAMP},
        )
    except Exception as exc:
        return failed(ctx, logger, exc, "Failed to add milestone", context={"projectId": project_id})
    ctx.notifier.success("Milestone added!")
    return ok(id=project_id, milestone_id=entry["id"])


async def update_milestone(
    ctx: AppContext, project_id: str, milestone_id: str, updates: dict[str, Any]
) -> CommandResult:
    if "status" in updates:
        validation = validate_select(
            updates["status"], MILESTONE_STATUSES, required=True, field_name="Status"
        )
        if not validation.valid:
            return invalid(ctx, validation)
    try:
        snap = await ctx.documents.get(PROJECTS, project_id)
        if snap is None:
            return rejected(ctx, PROJECT_NOT_FOUND)
        milestones = [dict(m) for m in snap.get("milestones") or []]
        index = next((i for i, m in enumerate(milestones) if m.get("id") == milestone_id), None)
        if index is None:
            return rejected(ctx, "Milestone not found")

        was_completed = milestones[index].get("status") == "completed"
        changes = sanitize_document(_editable(updates, MILESTONE_EDITABLE_FIELDS, "milestone"))
        milestones[index] = {**milestones[index], **changes}
        await ctx.documents.update(
            PROJECTS, project_id, {"milestones": milestones, "updatedAt": SERVER_TIMESTAMP}
        )
    except Exception as exc:
        return failed(
            ctx, logger, exc, "Failed to update milestone", context={"projectId": project_id}
        )

    if milestones[index].get("status") == "completed" and not was_completed:
        await log_activity(
            ctx,
            "milestone_completed",
            {
                "projectId": project_id,
                "milestoneId": milestone_id,
                "milestoneTitle": milestones[index].get("title"),
                "companyName": snap.get("companyName"),
            },
        )
    ctx.notifier.success("Milestone updated!")
    return ok(id=project_id)


async def delete_milestone(ctx: AppContext, project_id: str, milestone_id: str) -> CommandResult:
    try:
        snap = await ctx.documents.get(PROJECTS, project_id)
        if snap is None:
            return rejected(ctx, PROJECT_NOT_FOUND)
        milestones = [m for m in snap.get("milestones") or [] if m.get("id") != milestone_id]
        await ctx.documents.update(
            PROJECTS, project_id, {"milestones": milestones, "updatedAt": SERVER_TIMESTAMP}
        )
    except Exception as exc:
        return failed(
            ctx, logger, exc, "Failed to delete milestone", context={"projectId": project_id}
        )
    ctx.notifier.success("Milestone deleted!")
    return ok(id=project_id)


# ----------------------------------------------------------------------
# Invoices
# ----------------------------------------------------------------------


async def add_invoice(ctx: AppContext, project_id: str, invoice: dict[str, Any]) -> CommandResult:
    validation = validate_invoice_form(invoice)
    if not validation.valid:
        return invalid(ctx, validation)
    try:
        snap = await ctx.documents.get(PROJECTS, project_id)
        if snap is None:
            return rejected(ctx, PROJECT_NOT_FOUND)
        entry = Invoice(
            number=invoice["number"],
            amount=invoice.get("amount"),
            status=invoice.get("status") or "pending",
            due_date=invoice["dueDate"],
            description=invoice.get("description") or "",
        )
        entry = sanitize_document(entry.to_document())
        await ctx.documents.update(
            PROJECTS,
            project_id,
            {"invoices": [*(snap.get("invoices") or []), entry], "updatedAt": SERVER_TIMESTAMP},
        )
    except Exception as exc:
        return failed(ctx, logger, exc, "Failed to add invoice", context={"projectId": project_id})

    await log_activity(
        ctx,
        "invoice_created",
        {
            "projectId": project_id,
            "invoiceNumber": entry["number"],
            "amount": entry["amount"],
            "companyName": snap.get("companyName"),
        },
    )
    ctx.notifier.success("Invoice added!")
    return ok(id=project_id, invoice_id=entry["id"])


async def update_invoice(
    ctx: AppContext, project_id: str, invoice_id: str, updates: dict[str, Any]
) -> CommandResult:
    if "status" in updates:
        validation = validate_select(
            updates["status"], INVOICE_STATUSES, required=True, field_name="Status"
        )
        if not validation.valid:
            return invalid(ctx, validation)
    try:
        snap = await ctx.documents.get(PROJECTS, project_id)
        if snap is None:
            return rejected(ctx, PROJECT_NOT_FOUND)
        invoices = [dict(i) for i in snap.get("invoices") or []]
        index = next((i for i, inv in enumerate(invoices) if inv.get("id") == invoice_id), None)
        if index is None:
            return rejected(ctx, "Invoice not found")

        was_unpaid = invoices[index].get("status") != "paid"
        changes = sanitize_document(_editable(updates, INVOICE_EDITABLE_FIELDS, "invoice"))
        if "amount" in changes:
            changes["amount"] = parse_amount(changes["amount"])
        invoices[index] = {**invoices[index], **changes}
        await ctx.documents.update(
            PROJECTS, project_id, {"invoices": invoices, "updatedAt": SERVER_TIMESTAMP}
        )
    except Exception as exc:
        return failed(ctx, logger, exc, "Failed to update invoice", context={"projectId": project_id})

    if invoices[index].get("status") == "paid" and was_unpaid:
        await log_activity(
            ctx,
            "invoice_paid",
            {
                "projectId": project_id,
                "invoiceNumber": invoices[index].get("number"),
                "amount": invoices[index].get("amount"),
                "companyName": snap.get("companyName"),
            },
        )
    ctx.notifier.success("Invoice updated!")
    return ok(id=project_id)


# ----------------------------------------------------------------------
# Client files
# ----------------------------------------------------------------------


async def add_client_file(
    ctx: AppContext,
    project_id: str,
    file: FilePayload,
    on_progress: ProgressCallback | None = None,
) -> CommandResult:
    try:
        snap = await ctx.documents.get(PROJECTS, project_id)
        if snap is None:
            return rejected(ctx, PROJECT_NOT_FOUND)

        uploaded = await storage_svc.upload_file(
            ctx, file, f"{FILES_PATH}/projects/{project_id}", on_progress=on_progress
        )
        if not uploaded.success:
            return uploaded

        entry = ClientFile(
            name=escape_html(file.name),
            size=uploaded.data["size"],
            url=uploaded.data["url"],
            uploaded_by=escape_html(ctx.state.current_user_name),
            path=uploaded.data["path"],
        ).to_document()
        await ctx.documents.update(
            PROJECTS, project_id, {"clientFiles": ArrayUnion(entry), "updatedAt": SERVER_TIMESTAMP}
        )
    except Exception as exc:
        return failed(ctx, logger, exc, "Failed to upload file", context={"projectId": project_id})

    await log_activity(
        ctx,
        "file_uploaded",
        {"projectId": project_id, "fileName": entry["name"], "companyName": snap.get("companyName")},
    )
    ctx.notifier.success("File uploaded!")
    return ok(id=project_id, file_id=entry["id"], url=entry["url"])


async def remove_client_file(ctx: AppContext, project_id: str, file_id: str) -> CommandResult:
    """Drop the file entry from the project and delete the stored object if known."""
    try:
        snap = await ctx.documents.get(PROJECTS, project_id)
        if snap is None:
            return rejected(ctx, PROJECT_NOT_FOUND)
        files = snap.get("clientFiles") or []
        removed = [f for f in files if f.get("id") == file_id]
        await ctx.documents.update(
            PROJECTS,
            project_id,
            {
                "clientFiles": [f for f in files if f.get("id") != file_id],
                "updatedAt": SERVER_TIMESTAMP,
            },
        )
    except Exception as exc:
        return failed(ctx, logger, exc, "Failed to remove file", context={"projectId": project_id})

    for entry in removed:
        if entry.get("path"):
            await storage_svc.delete_file(ctx, entry["path"])
    ctx.notifier.success("File removed!")
    return ok(id=project_id)


# ----------------------------------------------------------------------
# Archive and convert
# ----------------------------------------------------------------------


async def archive_project(ctx: AppContext, project_id: str, reason: str = "Archived") -> CommandResult:
    return await archive_svc.archive_item(ctx, PROJECTS, project_id, reason)


async def return_project_to_lead(ctx: AppContext, project_id: str) -> CommandResult:
    """Turn a project back into a ``noted`` lead, then delete the project. Not transactional."""
    try:
        snap = await ctx.documents.get(PROJECTS, project_id)
        if snap is None:
            return rejected(ctx, PROJECT_NOT_FOUND)
        project = snap.data

        lead = {name: project.get(name) or "" for name in TRANSFER_FIELDS}
        lead.update(
            {
                "logo": project.get("logo") or None,
                "status": "noted",
                "demoFiles": list(project.get("demoFiles") or []),
                "notes": f"Returned from project. {project.get('notes') or ''}".strip(),
                "returnedFromProject": project_id,
                "createdAt": SERVER_TIMESTAMP,
                "updatedAt": SERVER_TIMESTAMP,
                "createdBy": ctx.state.current_user_id,
            }
        )
        lead_id = await ctx.documents.add(LEADS, lead)
        await ctx.documents.delete(PROJECTS, project_id)
    except Exception as exc:
        return failed(
            ctx, logger, exc, "Failed to return to leads", context={"projectId": project_id}
        )

    logger.info("Project %s returned to lead %s", project_id, lead_id)
    ctx.notifier.success("Returned to Leads!")
    return ok(id=lead_id, lead_id=lead_id)


async def get_project_stats(ctx: AppContext) -> dict[str, Any]:
    try:
        snaps = await ctx.documents.get_docs(_project_query(ctx).without_ordering())
    except Exception:
        logger.exception("Failed to get project stats")
        snaps = []
    projects = [s.data for s in snaps]
    pending = [
        invoice
        for project in projects
        for invoice in project.get("invoices") or []
        if invoice.get("status") == "pending"
    ]
    return {
        "total": len(projects),
        "active": sum(1 for p in projects if p.get("status") == "active"),
        "paused": sum(1 for p in projects if p.get("status") == "paused"),
        "completed": sum(1 for p in projects if p.get("status") == "completed"),
        "pendingInvoices": len(pending),
        "pendingRevenue": sum(float(i.get("amount") or 0) for i in pending),
    }
