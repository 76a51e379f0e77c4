"""Ticket service - support tickets, comments, attachments and SLA tracking.

Staff see every ticket. Clients see the union of three queries merged into
one slice: tickets they own (``clientId``), tickets they submitted before
ownership was recorded (``submittedById``) and tickets on projects they are
assigned to (``projectId in [...]``, batched to the store's ``in`` limit).
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Iterable

from ..backend.documents import IN_QUERY_LIMIT, SERVER_TIMESTAMP, ArrayUnion, Query
from ..constants import (
    DEFAULT_PRIORITY,
    DEFAULT_URGENCY,
    PERMISSION_DENIED_MESSAGE,
    PROJECTS,
    SLA_AT_RISK_HOURS,
    SLA_HOURS,
    SLA_MATRIX,
    TICKET_STATUSES,
    TICKETS,
    URGENCY_PRIORITY,
)
from ..helpers import chunked, generate_id, group_by_field, now_iso, parse_datetime, sort_by_effective_date, utcnow
from ..schemas.documents import FilePayload, TicketCreate
from ..security.sanitize import escape_html, sanitize_document
from ..sync.adapter import QuerySpec
from ..validation import validate_message, validate_select, validate_ticket_form, validate_ticket_update
from . import storage_svc
from .activity_svc import log_activity
from .results import CommandResult, failed, invalid, ok, rejected

if TYPE_CHECKING:
    from ..context import AppContext

logger = logging.getLogger(__name__)

TICKET_NOT_FOUND = "Ticket not found"
SEARCH_FIELDS = ("title", "description", "projectName", "submittedBy", "id")
RESOLVED_STATUSES = ("resolved", "closed")


def _round(value: float) -> int:
    # Half-up, so 2.5h reads as 3h.
    return math.floor(value + 0.5)


def priority_for(urgency: str | None) -> str:
    return URGENCY_PRIORITY.get(urgency or "", DEFAULT_PRIORITY)


def get_sla_hours(tier: str | None, urgency: str | None) -> int:
    """Response window in hours for a project tier and ticket urgency."""
    matrix = SLA_MATRIX.get((tier or "host").lower()) or SLA_MATRIX["host"]
    return matrix.get((urgency or "week").lower()) or matrix.get("week") or 168


def calculate_sla_status(ticket: dict | None, now: datetime | None = None) -> dict[str, Any]:
    """Where a ticket stands against its SLA: ``resolved``, ``on-track``, ``at-risk`` or ``breached``.

    The due date is always recomputed from the submission time plus the
    tier/urgency window, so tickets created under older rules read consistently.
    """
    if not ticket or ticket.get("status") in RESOLVED_STATUSES:
        return {"status": "resolved", "breached": False, "text": "Resolved"}

    started = parse_datetime(ticket.get("submittedAt")) or parse_datetime(ticket.get("createdAt"))
    if started is None:
        return {"status": "on-track", "breached": False, "text": "No SLA"}

    due = started + timedelta(hours=get_sla_hours(ticket.get("tier"), ticket.get("urgency")))
    remaining = (due - (now or utcnow())).total_seconds() / 3600

    if remaining < 0:
        overdue = abs(_round(remaining))
        return {
            "status": "breached",
            "breached": True,
            "hoursOverdue": overdue,
            "text": f"{overdue}h overdue",
        }
    hours = _round(remaining)
    if remaining < SLA_AT_RISK_HOURS:
        return {"status": "at-risk", "breached": False, "hoursRemaining": hours, "text": f"{hours}h left"}
    days = hours // 24
    text = f"{days}d {hours % 24}h left" if days > 0 else f"{hours}h left"
    return {"status": "on-track", "breached": False, "hoursRemaining": hours, "text": text}


def with_sla(row: dict) -> dict:
    return {**row, "slaStatus": calculate_sla_status(row)}


def _history(ctx: AppContext, entry_type: str, message: str, **extra: Any) -> dict[str, Any]:
    return {
        "type": entry_type,
        "message": message,
        "userId": ctx.state.current_user_id,
        "userName": ctx.state.current_user_name,
        "timestamp": now_iso(),
        **extra,
    }


# ----------------------------------------------------------------------
# Reads
# ----------------------------------------------------------------------


async def _client_specs(ctx: AppContext, uid: str) -> list[QuerySpec]:
    specs = [
        QuerySpec(filters=(("clientId", "==", uid),)),
        QuerySpec(filters=(("submittedById", "==", uid),)),
    ]
    assigned = await ctx.documents.get_docs(
        Query(PROJECTS).where("assignedClients", "array-contains", uid)
    )
    for batch in chunked(sorted(snap.id for snap in assigned), IN_QUERY_LIMIT):
        specs.append(QuerySpec(filters=(("projectId", "in", tuple(batch)),)))
    return specs


def _sees_all(ctx: AppContext, mine: bool | None) -> bool:
    return ctx.state.is_admin and not mine


async def subscribe_to_tickets(ctx: AppContext, *, mine: bool | None = None) -> Callable[[], None]:
    """Mirror the caller's tickets into the ``tickets`` slice, newest first.

    Staff get every ticket unless ``mine`` is set; everyone else gets the
    merged client view.
    """
    if _sees_all(ctx, mine):
        return await ctx.sync.subscribe_to_collection(
            TICKETS, order_by="createdAt", descending=True, transform=with_sla
        )
    uid = ctx.state.current_user_id or ""
    specs = await _client_specs(ctx, uid)
    return await ctx.sync.subscribe_merged("tickets", TICKETS, specs, transform=with_sla)


async def load_tickets(
    ctx: AppContext,
    *,
    status: str | None = None,
    project_id: str | None = None,
    assigned_to: str | None = None,
    category: str | None = None,
    submitted_by_id: str | None = None,
    mine: bool | None = None,
) -> list[dict]:
    try:
        if _sees_all(ctx, mine):
            tickets = await ctx.sync.fetch(Query(TICKETS).order_by("createdAt", descending=True))
        else:
            merged: dict[str, dict] = {}
            for spec in await _client_specs(ctx, ctx.state.current_user_id or ""):
                for row in await ctx.sync.fetch(spec.build(TICKETS)):
                    merged[row["id"]] = row
            tickets = sort_by_effective_date(merged.values())
    except Exception as exc:
        failed(ctx, logger, exc, "Failed to load tickets")
        return []

    wanted = {
        "status": status,
        "projectId": project_id,
        "assignedTo": assigned_to,
        "category": category,
        "submittedById": submitted_by_id,
    }
    for field_name, value in wanted.items():
        if value:
            tickets = [t for t in tickets if t.get(field_name) == value]

    tickets = [with_sla(t) for t in tickets]
    ctx.sync.publish("tickets", tickets)
    logger.info("Loaded %d tickets", len(tickets))
    return tickets


async def get_ticket(ctx: AppContext, ticket_id: str) -> dict | None:
    try:
        snap = await ctx.documents.get(TICKETS, ticket_id)
    except Exception:
        logger.exception("Failed to get ticket %s", ticket_id)
        return None
    return with_sla(snap.to_dict()) if snap is not None else None


# ----------------------------------------------------------------------
# Create and update
# ----------------------------------------------------------------------


def _attachment(ctx: AppContext, file: FilePayload, uploaded: CommandResult) -> dict[str, Any]:
    return {
        "id": generate_id("att"),
        "name": escape_html(file.name),
        "size": file.size,
        "type": file.content_type,
        "url": uploaded.data["url"],
        "path": uploaded.data["path"],
        "uploadedBy": ctx.state.current_user_id,
        "uploadedByName": ctx.state.current_user_name,
        "uploadedAt": now_iso(),
    }


async def create_ticket(
    ctx: AppContext, data: dict[str, Any], attachments: Iterable[FilePayload] = ()
) -> CommandResult:
    """Submit a ticket for the signed-in user.

    A ``clientId`` other than the caller's own id is refused here, before
    anything is written.
    """
    validation = validate_ticket_form(data)
    if not validation.valid:
        return invalid(ctx, validation)

    uid = ctx.state.current_user_id
    client_id = data.get("clientId") or uid
    if not uid or client_id != uid:
        logger.warning("Refused ticket for client %s from %s", client_id, uid)
        return rejected(ctx, PERMISSION_DENIED_MESSAGE)

    try:
        fields = TicketCreate.model_validate({**data, "clientId": client_id})
        clean = sanitize_document(
            {
                "title": fields.title,
                "description": fields.description,
                "projectId": fields.project_id,
                "category": fields.category,
                "urgency": fields.urgency,
            }
        )

        project = await ctx.documents.get(PROJECTS, clean["projectId"])
        tier = (project.get("tier") if project else None) or "host"
        project_name = (project.get("companyName") if project else None) or ""
        hours = SLA_HOURS.get(clean["urgency"], SLA_HOURS[DEFAULT_URGENCY])

        logger.info("Creating ticket %r on project %s", clean["title"], clean["projectId"])
        ticket_id = await ctx.documents.add(
            TICKETS,
            {
                **clean,
                "projectName": project_name,
                "priority": priority_for(clean["urgency"]),
                "tier": tier,
                "status": "open",
                "clientId": client_id,
                "submittedBy": ctx.state.current_user_name,
                "submittedById": uid,
                "submittedByEmail": ctx.state.current_user_email,
                "assignedTo": None,
                "assignedToName": None,
                "slaDueDate": (utcnow() + timedelta(hours=hours)).isoformat(),
                "slaBreached": False,
                "firstResponseAt": None,
                "resolvedAt": None,
                "adminNotes": "",
                "internalNotes": "",
                "comments": [],
                "attachments": [],
                "updates": [_history(ctx, "created", "Ticket created")],
                "watchers": [uid],
                "submittedAt": now_iso(),
                "createdAt": SERVER_TIMESTAMP,
                "updatedAt": SERVER_TIMESTAMP,
            },
        )

        stored = []
        for file in attachments:
            uploaded = await storage_svc.upload_file(ctx, file, f"{TICKETS}/{ticket_id}/attachments")
            if uploaded.success:
                stored.append(_attachment(ctx, file, uploaded))
        if stored:
            await ctx.documents.update(TICKETS, ticket_id, {"attachments": stored})
    except Exception as exc:
        return failed(ctx, logger, exc, "Failed to submit ticket", context={"projectId": data.get("projectId")})

    await log_activity(
        ctx,
        "ticket_created",
        {
            "ticketId": ticket_id,
            "title": clean["title"],
            "projectId": clean["projectId"],
            "projectName": project_name,
        },
    )
    ctx.notifier.success("Ticket submitted!")
    return ok(id=ticket_id)


async def update_ticket(ctx: AppContext, ticket_id: str, updates: dict[str, Any]) -> CommandResult:
    """Apply field changes, recording status, assignment and priority changes in the history.

    Only staff-editable fields are accepted; ownership, submission and SLA
    fields are refused before anything is read or written.
    """
    validation = validate_ticket_update(updates)
    if not validation.valid:
        return invalid(ctx, validation)

    try:
        snap = await ctx.documents.get(TICKETS, ticket_id)
        if snap is None:
            return rejected(ctx, TICKET_NOT_FOUND)
        current = snap.data

        changes = sanitize_document(dict(updates))
        history = []
        if changes.get("status") and changes["status"] != current.get("status"):
            history.append(
                _history(
                    ctx,
                    "status_changed",
                    f"Status changed from {current.get('status')} to {changes['status']}",
                    oldValue=current.get("status"),
                    newValue=changes["status"],
                )
            )
            if changes["status"] == "resolved":
                changes["resolvedAt"] = SERVER_TIMESTAMP
        if "assignedTo" in changes and changes["assignedTo"] != current.get("assignedTo"):
            message = (
                f"Assigned to {changes.get('assignedToName') or 'team member'}"
                if changes["assignedTo"]
                else "Unassigned"
            )
            history.append(
                _history(
                    ctx,
                    "assigned",
                    message,
                    oldValue=current.get("assignedTo"),
                    newValue=changes["assignedTo"],
                )
            )
        if changes.get("priority") and changes["priority"] != current.get("priority"):
            history.append(
                _history(
                    ctx,
                    "priority_changed",
                    f"Priority changed from {current.get('priority')} to {changes['priority']}",
                    oldValue=current.get("priority"),
                    newValue=changes["priority"],
                )
            )

        payload = dict(changes, updatedAt=SERVER_TIMESTAMP)
        if history:
            payload["updates"] = ArrayUnion(*history)
        await ctx.documents.update(TICKETS, ticket_id, payload)
    except Exception as exc:
        return failed(ctx, logger, exc, "Failed to update ticket", context={"ticketId": ticket_id})

    logger.info("Ticket %s updated (%d history entries)", ticket_id, len(history))
    activity = {"ticketId": ticket_id, "title": current.get("title"), "projectId": current.get("projectId")}
    if changes.get("status") == "resolved" and current.get("status") != "resolved":
        await log_activity(ctx, "ticket_resolved", activity)
    elif history:
        await log_activity(ctx, "ticket_updated", activity)
    ctx.notifier.success("Ticket updated!")
    return ok(id=ticket_id, changes=len(history))


async def update_ticket_status(ctx: AppContext, ticket_id: str, status: str) -> CommandResult:
    return await update_ticket(ctx, ticket_id, {"status": status})


async def assign_ticket(
    ctx: AppContext, ticket_id: str, user_id: str, user_name: str
) -> CommandResult:
    """Assign a ticket; an open ticket moves to in-progress."""
    updates: dict[str, Any] = {"assignedTo": user_id, "assignedToName": user_name}
    ticket = await get_ticket(ctx, ticket_id)
    if ticket is not None and ticket.get("status") == "open":
        updates["status"] = "in-progress"
    return await update_ticket(ctx, ticket_id, updates)


async def unassign_ticket(ctx: AppContext, ticket_id: str) -> CommandResult:
    return await update_ticket(ctx, ticket_id, {"assignedTo": None, "assignedToName": None})


async def add_ticket_comment(
    ctx: AppContext, ticket_id: str, text: str, *, internal: bool = False
) -> CommandResult:
    """Add a comment (or an internal note). A staff member's first comment marks the first response."""
    validation = validate_message(text)
    if not validation.valid:
        return invalid(ctx, validation)

    try:
        snap = await ctx.documents.get(TICKETS, ticket_id)
        if snap is None:
            return rejected(ctx, TICKET_NOT_FOUND)

        comment = {
            "id": generate_id("cmt"),
            "text": escape_html(text),
            "userId": ctx.state.current_user_id,
            "userName": ctx.state.current_user_name,
            "userEmail": ctx.state.current_user_email,
            "isInternal": internal,
            "isAdmin": ctx.state.is_admin,
            "createdAt": now_iso(),
        }
        entry = (
            _history(ctx, "internal_note", "Added internal note")
            if internal
            else _history(ctx, "comment", "Added a comment")
        )
        payload: dict[str, Any] = {
            "comments": ArrayUnion(comment),
            "updates": ArrayUnion(entry),
            "updatedAt": SERVER_TIMESTAMP,
        }
        if ctx.state.is_admin and not snap.get("firstResponseAt"):
            payload["firstResponseAt"] = SERVER_TIMESTAMP
        await ctx.documents.update(TICKETS, ticket_id, payload)
    except Exception as exc:
        return failed(ctx, logger, exc, "Failed to add comment", context={"ticketId": ticket_id})

    logger.info("Comment added to %s (internal=%s)", ticket_id, internal)
    ctx.notifier.success("Note added!" if internal else "Comment added!")
    return ok(id=ticket_id, comment_id=comment["id"])


async def add_ticket_attachment(ctx: AppContext, ticket_id: str, file: FilePayload) -> CommandResult:
    try:
        if await ctx.documents.get(TICKETS, ticket_id) is None:
            return rejected(ctx, TICKET_NOT_FOUND)
        uploaded = await storage_svc.upload_file(ctx, file, f"{TICKETS}/{ticket_id}/attachments")
        if not uploaded.success:
            return uploaded

        attachment = _attachment(ctx, file, uploaded)
        entry = _history(ctx, "attachment_added", f"Added attachment: {attachment['name']}")
        await ctx.documents.update(
            TICKETS,
            ticket_id,
            {
                "attachments": ArrayUnion(attachment),
                "updates": ArrayUnion(entry),
                "updatedAt": SERVER_TIMESTAMP,
            },
        )
    except Exception as exc:
        return failed(ctx, logger, exc, "Failed to upload attachment", context={"ticketId": ticket_id})

    ctx.notifier.success("Attachment uploaded!")
    return ok(id=ticket_id, attachment=attachment)


async def bulk_update_status(ctx: AppContext, ticket_ids: list[str], status: str) -> CommandResult:
    validation = validate_select(status, TICKET_STATUSES, required=True, field_name="Status")
    if not validation.valid:
        return invalid(ctx, validation)

    entry = _history(ctx, "status_changed", f"Status changed to {status} (bulk update)")
    payload: dict[str, Any] = {"status": status, "updates": ArrayUnion(entry), "updatedAt": SERVER_TIMESTAMP}
    if status == "resolved":
        payload["resolvedAt"] = SERVER_TIMESTAMP
    try:
        for ticket_id in ticket_ids:
            await ctx.documents.update(TICKETS, ticket_id, payload)
    except Exception as exc:
        return failed(ctx, logger, exc, "Failed to update tickets", context={"count": len(ticket_ids)})

    ctx.notifier.success(f"Updated {len(ticket_ids)} tickets")
    return ok(count=len(ticket_ids))


async def bulk_assign(
    ctx: AppContext, ticket_ids: list[str], assignee_id: str, assignee_name: str
) -> CommandResult:
    entry = _history(ctx, "assigned", f"Assigned to {escape_html(assignee_name)} (bulk update)")
    payload = {
        "assignedTo": assignee_id,
        "assignedToName": escape_html(assignee_name),
        "updates": ArrayUnion(entry),
        "updatedAt": SERVER_TIMESTAMP,
    }
    try:
        for ticket_id in ticket_ids:
            await ctx.documents.update(TICKETS, ticket_id, payload)
    except Exception as exc:
        return failed(ctx, logger, exc, "Failed to assign tickets", context={"count": len(ticket_ids)})

    ctx.notifier.success(f"Assigned {len(ticket_ids)} tickets")
    return ok(count=len(ticket_ids))


# ----------------------------------------------------------------------
# Search and statistics
# ----------------------------------------------------------------------


async def search_tickets(ctx: AppContext, term: str, **filters: Any) -> list[dict]:
    tickets = await load_tickets(ctx, **filters)
    needle = (term or "").strip().lower()
    if not needle:
        return tickets
    return [
        t for t in tickets
        if any(needle in str(t.get(name) or "").lower() for name in SEARCH_FIELDS)
    ]


async def get_ticket_stats(ctx: AppContext, **filters: Any) -> dict[str, Any]:
    tickets = await load_tickets(ctx, **filters)
    resolved = [t for t in tickets if t.get("status") == "resolved"]

    durations = []
    for ticket in resolved:
        created = parse_datetime(ticket.get("createdAt"))
        finished = parse_datetime(ticket.get("resolvedAt"))
        if created is not None and finished is not None:
            durations.append((finished - created).total_seconds() / 3600)

    return {
        "total": len(tickets),
        "open": sum(1 for t in tickets if t.get("status") == "open"),
        "inProgress": sum(1 for t in tickets if t.get("status") == "in-progress"),
        "resolved": len(resolved),
        "breached": sum(1 for t in tickets if t["slaStatus"].get("breached")),
        "avgResolutionHours": _round(sum(durations) / len(durations)) if durations else 0,
        "byCategory": group_by_field(tickets, "category"),
        "byPriority": group_by_field(tickets, "priority"),
        "byProject": group_by_field(tickets, "projectName"),
    }
