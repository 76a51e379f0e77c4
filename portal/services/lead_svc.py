"""Lead service - intake pipeline, demo files, conversion to projects."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable

from ..backend.documents import SERVER_TIMESTAMP, ArrayUnion, Query
from ..constants import LEAD_STATUSES, LEADS, PROJECTS
from ..schemas.documents import DemoFile, FilePayload, LeadCreate, LeadFields, ProjectCreate, only_fields
from ..security.sanitize import RICH_TEXT_FIELDS, sanitize_document, sanitize_url
from ..validation import validate_lead_form, validate_select, validate_url
from . import archive_svc
from .activity_svc import log_activity
from .results import CommandResult, failed, invalid, ok, rejected
from .storage_svc import upload_logo

if TYPE_CHECKING:
    from ..context import AppContext

logger = logging.getLogger(__name__)

SEARCH_FIELDS = ("companyName", "clientName", "clientEmail", "location", "businessType")
# Fields carried across when a lead becomes a project (and back).
TRANSFER_FIELDS = (
    "companyName",
    "clientName",
    "clientEmail",
    "clientPhone",
    "websiteUrl",
    "location",
    "businessType",
    "githubLink",
    "githubUrl",
)
# What an update may touch; ids, stamps, demo files and conversion links are server-managed.
LEAD_EDITABLE_FIELDS = LeadFields.document_fields() | {"status", "githubLink", "githubUrl"}


async def load_leads(
    ctx: AppContext,
    *,
    status: str | None = None,
    location: str | None = None,
    business_type: str | None = None,
    page_size: int | None = None,
    after_id: str | None = None,
) -> list[dict]:
    """One page of leads, newest first. ``after_id`` continues after that lead."""
    query = Query(LEADS)
    if status:
        query = query.where("status", "==", status)
    if location:
        query = query.where("location", "==", location)
    if business_type:
        query = query.where("businessType", "==", business_type)
    query = query.order_by("createdAt", descending=True).limit(
        page_size or ctx.settings.default_page_size
    )

    try:
        if after_id:
            cursor = await ctx.documents.get(LEADS, after_id)
            if cursor is not None:
                query = query.start_after(cursor)
        leads = await ctx.sync.fetch(query)
    except Exception as exc:
        failed(ctx, logger, exc, "Failed to load leads")
        return []

    ctx.sync.publish("leads", leads)
    logger.info("Loaded %d leads", len(leads))
    return leads


async def subscribe_to_leads(ctx: AppContext) -> Callable[[], None]:
    return await ctx.sync.subscribe_to_collection(LEADS, order_by="createdAt", descending=True)


async def get_lead(ctx: AppContext, lead_id: str) -> dict | None:
    try:
        snap = await ctx.documents.get(LEADS, lead_id)
    except Exception:
        logger.exception("Failed to get lead %s", lead_id)
        return None
    return snap.to_dict() if snap is not None else None


async def create_lead(
    ctx: AppContext, data: dict[str, Any], logo: FilePayload | None = None
) -> CommandResult:
    validation = validate_lead_form(data)
    if not validation.valid:
        return invalid(ctx, validation)

    try:
        lead = LeadCreate.model_validate(data).to_document()
        lead = sanitize_document(lead, RICH_TEXT_FIELDS)
        logger.info("Creating lead %s", lead["companyName"])
        lead_id = await ctx.documents.add(
            LEADS,
            {
                **lead,
                "demoFiles": [],
                "createdAt": SERVER_TIMESTAMP,
                "updatedAt": SERVER_TIMESTAMP,
                "createdBy": ctx.state.current_user_id,
            },
        )

        if logo is not None:
            uploaded = await upload_logo(ctx, logo, lead_id, "lead")
            if uploaded.success:
                await ctx.documents.update(LEADS, lead_id, {"logo": uploaded.data["url"]})
    except Exception as exc:
        return failed(ctx, logger, exc, "Failed to create lead", context={"data": data})

    await log_activity(ctx, "lead_created", {"leadId": lead_id, "companyName": lead["companyName"]})
    logger.info("Lead created: %s", lead_id)
    ctx.notifier.success("Lead created!")
    return ok(id=lead_id)


async def update_lead(
    ctx: AppContext, lead_id: str, updates: dict[str, Any], logo: FilePayload | None = None
) -> CommandResult:
    validation = validate_lead_form(updates, partial=True)
    if not validation.valid:
        return invalid(ctx, validation)

    try:
        changes = only_fields(updates, LEAD_EDITABLE_FIELDS)
        if len(changes) < len(updates):
            logger.warning("Ignoring read-only lead fields: %s", sorted(set(updates) - set(changes)))
        changes = sanitize_document(changes, RICH_TEXT_FIELDS)
        if logo is not None:
            uploaded = await upload_logo(ctx, logo, lead_id, "lead")
            if uploaded.success:
                changes["logo"] = uploaded.data["url"]
        await ctx.documents.update(LEADS, lead_id, {**changes, "updatedAt": SERVER_TIMESTAMP})
    except Exception as exc:
        return failed(ctx, logger, exc, "Failed to update lead", context={"leadId": lead_id})

    await log_activity(ctx, "lead_updated", {"leadId": lead_id, "fields": sorted(changes)})
    logger.info("Lead updated: %s", lead_id)
    ctx.notifier.success("Lead updated!")
    return ok(id=lead_id)


async def update_lead_status(ctx: AppContext, lead_id: str, status: str) -> CommandResult:
    validation = validate_select(status, LEAD_STATUSES, required=True, field_name="Status")
    if not validation.valid:
        return invalid(ctx, validation)
    try:
        await ctx.documents.update(LEADS, lead_id, {"status": status, "updatedAt": SERVER_TIMESTAMP})
    except Exception as exc:
        return failed(ctx, logger, exc, "Failed to update status", context={"leadId": lead_id})
    logger.info("Lead %s status -> %s", lead_id, status)
    ctx.notifier.success("Status updated!")
    return ok(id=lead_id)


async def add_lead_demo_file(ctx: AppContext, lead_id: str, file_data: dict[str, Any]) -> CommandResult:
    """Append ``{url, name}`` to the lead's demo files, stamped with the upload time."""
    validation = validate_url(file_data.get("url"), required=True)
    url = sanitize_url(file_data.get("url"))
    if validation.valid and not url:
        validation.errors.append("Please enter a valid URL")
    if not validation.valid:
        return invalid(ctx, validation)

    try:
        if await ctx.documents.get(LEADS, lead_id) is None:
            return rejected(ctx, "Lead not found")
        demo = DemoFile(url=url, name=file_data.get("name") or "").to_document()
        demo = {**sanitize_document(demo), "url": url}
        await ctx.documents.update(
            LEADS, lead_id, {"demoFiles": ArrayUnion(demo), "updatedAt": SERVER_TIMESTAMP}
        )
    except Exception as exc:
        return failed(ctx, logger, exc, "Failed to add file", context={"leadId": lead_id})
    ctx.notifier.success("File added!")
    return ok(id=lead_id)


async def remove_lead_demo_file(ctx: AppContext, lead_id: str, index: int) -> CommandResult:
    try:
        snap = await ctx.documents.get(LEADS, lead_id)
        if snap is None:
            return rejected(ctx, "Lead not found")
        demo_files = list(snap.get("demoFiles") or [])
        if 0 <= index < len(demo_files):
            del demo_files[index]
        await ctx.documents.update(
            LEADS, lead_id, {"demoFiles": demo_files, "updatedAt": SERVER_TIMESTAMP}
        )
    except Exception as exc:
        return failed(ctx, logger, exc, "Failed to remove file", context={"leadId": lead_id})
    ctx.notifier.success("File removed!")
    return ok(id=lead_id)


async def move_lead_to_project(ctx: AppContext, lead_id: str) -> CommandResult:
    """Convert a lead into a project, then delete the lead.

    Not transactional: if the delete fails the project exists alongside the
    lead and the failure is reported.
    """
    try:
        snap = await ctx.documents.get(LEADS, lead_id)
        if snap is None:
            return rejected(ctx, "Lead not found")
        lead = snap.data
        logger.info("Moving lead %s (%s) to projects", lead_id, lead.get("companyName"))

        seed = {name: lead.get(name) or "" for name in TRANSFER_FIELDS}
        seed["notes"] = lead.get("notes") or ""
        seed["logo"] = lead.get("logo") or None
        project = ProjectCreate.model_validate({**seed, "convertedFromLead": lead_id}).to_document()
        project["demoFiles"] = list(lead.get("demoFiles") or [])

        project_id = await ctx.documents.add(
            PROJECTS,
            {
                **project,
                "createdAt": SERVER_TIMESTAMP,
                "updatedAt": SERVER_TIMESTAMP,
                "createdBy": ctx.state.current_user_id,
            },
        )
        await ctx.documents.delete(LEADS, lead_id)
    except Exception as exc:
        return failed(ctx, logger, exc, "Failed to move to projects", context={"leadId": lead_id})

    await log_activity(
        ctx,
        "lead_converted",
        {"leadId": lead_id, "projectId": project_id, "companyName": lead.get("companyName")},
    )
    logger.info("Lead %s moved to project %s", lead_id, project_id)
    ctx.notifier.success("Moved to Projects!")
    return ok(id=project_id, project_id=project_id)


async def archive_lead(ctx: AppContext, lead_id: str, reason: str = "Archived") -> CommandResult:
    return await archive_svc.archive_item(ctx, LEADS, lead_id, reason)


def _matches(row: dict, term: str, fields: tuple[str, ...]) -> bool:
    return any(term in str(row.get(name) or "").lower() for name in fields)


async def search_leads(ctx: AppContext, term: str) -> list[dict]:
    """Case-insensitive substring match over company, contact, location and business type."""
    needle = (term or "").strip().lower()
    if not needle:
        return []
    try:
        snaps = await ctx.documents.get_docs(Query(LEADS).order_by("createdAt", descending=True))
    except Exception:
        logger.exception("Failed to search leads")
        return []
    return [row for row in (s.to_dict() for s in snaps) if _matches(row, needle, SEARCH_FIELDS)]


async def get_lead_stats(ctx: AppContext) -> dict[str, int]:
    try:
        leads = [s.data for s in await ctx.documents.get_docs(Query(LEADS))]
    except Exception:
        logger.exception("Failed to get lead stats")
        leads = []
    return {
        "total": len(leads),
        "noted": sum(1 for lead in leads if lead.get("status") == "noted"),
        "demoSent": sum(1 for lead in leads if lead.get("status") == "demo-sent"),
        "demoComplete": sum(1 for lead in leads if lead.get("status") == "demo-complete"),
    }
