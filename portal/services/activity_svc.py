"""Activity service - audit trail of portal events."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable

from ..backend.documents import SERVER_TIMESTAMP, Query
from ..constants import ACTIVITY, ACTIVITY_LABELS

if TYPE_CHECKING:
    from ..context import AppContext

logger = logging.getLogger(__name__)

ACTIVITY_DATE_FIELDS = ("timestamp",)


def activity_label(activity_type: str) -> str:
    return ACTIVITY_LABELS.get(activity_type, activity_type)


async def log_activity(ctx: AppContext, activity_type: str, data: dict[str, Any] | None = None) -> bool:
    """Record an event. Never raises: a failed log must not fail the command that called it."""
    if not ctx.settings.activity_log_enabled:
        return False
    try:
        await ctx.documents.add(
            ACTIVITY,
            {
                "type": activity_type,
                "data": data or {},
                "userId": ctx.state.current_user_id,
                "timestamp": SERVER_TIMESTAMP,
                "label": activity_label(activity_type),
            },
        )
    except Exception:
        logger.exception("Failed to log activity %s", activity_type)
        return False
    logger.debug("Activity logged: %s %s", activity_type, data)
    return True


def _activity_query(
    *,
    limit: int,
    activity_type: str | None = None,
    user_id: str | None = None,
    project_id: str | None = None,
) -> Query:
    query = Query(ACTIVITY)
    if activity_type:
        query = query.where("type", "==", activity_type)
    if user_id:
        query = query.where("userId", "==", user_id)
    if project_id:
        query = query.where("data.projectId", "==", project_id)
    return query.order_by("timestamp", descending=True).limit(limit)


async def load_activity(
    ctx: AppContext,
    *,
    limit: int = 50,
    activity_type: str | None = None,
    user_id: str | None = None,
    project_id: str | None = None,
) -> list[dict]:
    query = _activity_query(
        limit=limit, activity_type=activity_type, user_id=user_id, project_id=project_id
    )
    try:
        rows = await ctx.sync.fetch(query, date_fields=ACTIVITY_DATE_FIELDS)
    except Exception:
        logger.exception("Failed to load activity")
        return []
    ctx.sync.publish("activity", rows)
    return rows


async def subscribe_to_activity(ctx: AppContext, *, limit: int | None = None) -> Callable[[], None]:
    """Keep the ``activity`` slice on the latest events, newest first."""
    return await ctx.sync.subscribe_to_collection(
        ACTIVITY,
        order_by="timestamp",
        descending=True,
        limit=limit or ctx.settings.activity_feed_limit,
        date_fields=ACTIVITY_DATE_FIELDS,
    )


async def get_project_activity(ctx: AppContext, project_id: str, limit: int = 20) -> list[dict]:
    query = _activity_query(limit=limit, project_id=project_id)
    try:
        return await ctx.sync.fetch(query, date_fields=ACTIVITY_DATE_FIELDS)
    except Exception:
        logger.exception("Failed to get activity for project %s", project_id)
        return []


async def get_user_activity(ctx: AppContext, user_id: str, limit: int = 20) -> list[dict]:
    query = _activity_query(limit=limit, user_id=user_id)
    try:
        return await ctx.sync.fetch(query, date_fields=ACTIVITY_DATE_FIELDS)
    except Exception:
        logger.exception("Failed to get activity for user %s", user_id)
        return []
