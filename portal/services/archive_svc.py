"""Archive service - move leads and projects into the archive and back.

Archiving writes the archive record first and deletes the source second;
restoring re-creates the source first and deletes the archive record second.
Neither workflow is transactional: a failure between the two writes leaves
both documents present, never neither.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable

from ..backend.documents import SERVER_TIMESTAMP, Query
from ..constants import ARCHIVED, LEADS, PROJECTS
from ..schemas.documents import ArchivedRecord
from .activity_svc import log_activity
from .results import CommandResult, failed, ok, rejected

if TYPE_CHECKING:
    from ..context import AppContext

logger = logging.getLogger(__name__)

ARCHIVE_DATE_FIELDS = ("archivedAt",)
COLLECTION_TYPES = {LEADS: "lead", PROJECTS: "project"}
TYPE_COLLECTIONS = {v: k for k, v in COLLECTION_TYPES.items()}


def archive_type(collection: str) -> str:
    """``leads``/``projects`` (or ``lead``/``project``) to the archive ``type``."""
    if collection in COLLECTION_TYPES:
        return COLLECTION_TYPES[collection]
    if collection in TYPE_COLLECTIONS:
        return collection
    raise ValueError(f"Cannot archive documents from {collection!r}")


async def archive_item(
    ctx: AppContext, collection: str, item_id: str, reason: str = "Archived"
) -> CommandResult:
    item_type = archive_type(collection)
    source = TYPE_COLLECTIONS[item_type]
    label = item_type.capitalize()
    try:
        snap = await ctx.documents.get(source, item_id)
        if snap is None:
            return rejected(ctx, f"{label} not found")

        item = snap.data
        record = ArchivedRecord(
            type=item_type,
            original_id=item_id,
            company_name=item.get("companyName") or "",
            client_name=item.get("clientName") or "",
            client_email=item.get("clientEmail") or "",
            reason=reason or "Archived",
            archived_by=ctx.state.current_user_id,
            original_data=item,
        ).to_document()
        archive_id = await ctx.documents.add(ARCHIVED, {**record, "archivedAt": SERVER_TIMESTAMP})
        await ctx.documents.delete(source, item_id)
    except Exception as exc:
        return failed(
            ctx, logger, exc, f"Failed to archive {item_type}", context={"id": item_id}
        )

    await log_activity(
        ctx,
        f"{item_type}_archived",
        {f"{item_type}Id": item_id, "companyName": item.get("companyName"), "reason": reason},
    )
    logger.info("Archived %s %s as %s", item_type, item_id, archive_id)
    ctx.notifier.success(f"{label} archived!")
    return ok(id=archive_id)


async def restore_from_archive(ctx: AppContext, archive_id: str) -> CommandResult:
    """Re-create the archived document under its original id, then drop the archive record.

    When a document already occupies the original id the restored copy gets a
    fresh id instead of overwriting it.
    """
    try:
        snap = await ctx.documents.get(ARCHIVED, archive_id)
        if snap is None:
            return rejected(ctx, "Archived item not found")

        record = snap.data
        target = TYPE_COLLECTIONS.get(record.get("type"))
        if target is None:
            return rejected(ctx, "Unknown archive type")

        restored = {
            **(record.get("originalData") or {}),
            "restoredAt": SERVER_TIMESTAMP,
            "updatedAt": SERVER_TIMESTAMP,
        }
        original_id = record.get("originalId")
        if original_id and await ctx.documents.get(target, original_id) is None:
            await ctx.documents.set(target, original_id, restored)
            restored_id = original_id
        else:
            restored_id = await ctx.documents.add(target, restored)
        await ctx.documents.delete(ARCHIVED, archive_id)
    except Exception as exc:
        return failed(ctx, logger, exc, "Failed to restore", context={"archiveId": archive_id})

    await log_activity(
        ctx,
        "item_restored",
        {"type": record.get("type"), "originalId": restored_id, "archiveId": archive_id},
    )
    logger.info("Restored %s %s from archive %s", record.get("type"), restored_id, archive_id)
    ctx.notifier.success("Restored!")
    return ok(id=restored_id)


async def delete_archived(ctx: AppContext, archive_id: str) -> CommandResult:
    """Permanently remove an archive record."""
    try:
        await ctx.documents.delete(ARCHIVED, archive_id)
    except Exception as exc:
        return failed(ctx, logger, exc, "Failed to delete", context={"archiveId": archive_id})
    ctx.notifier.success("Permanently deleted")
    return ok(id=archive_id)


async def load_archived(ctx: AppContext) -> list[dict]:
    query = Query(ARCHIVED).order_by("archivedAt", descending=True)
    try:
        rows = await ctx.sync.fetch(query, date_fields=ARCHIVE_DATE_FIELDS)
    except Exception:
        logger.exception("Failed to load archive")
        return []
    ctx.sync.publish("archived", rows)
    return rows


async def subscribe_to_archived(ctx: AppContext) -> Callable[[], None]:
    return await ctx.sync.subscribe_to_collection(
        ARCHIVED, order_by="archivedAt", descending=True, date_fields=ARCHIVE_DATE_FIELDS
    )
