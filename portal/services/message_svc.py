"""Message service - per-project conversation between staff and clients."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Callable

from ..backend.documents import SERVER_TIMESTAMP
from ..constants import MESSAGES
from ..helpers import now_iso, parse_datetime
from ..security.sanitize import escape_html
from ..validation import validate_message
from .activity_svc import log_activity
from .results import CommandResult, failed, invalid, ok

if TYPE_CHECKING:
    from ..context import AppContext

logger = logging.getLogger(__name__)

MESSAGE_DATE_FIELDS = ("timestamp", "clientTimestamp")


def message_time(message: dict) -> datetime | None:
    """Server time once the write has landed, the sender's clock until then."""
    return parse_datetime(message.get("timestamp")) or parse_datetime(message.get("clientTimestamp"))


async def subscribe_to_messages(ctx: AppContext, project_id: str) -> Callable[[], None]:
    """Mirror one project's conversation into the ``messages`` slice, oldest first.

    Opening another project closes the conversation that was feeding the slice.
    """
    return await ctx.sync.subscribe_to_collection(
        MESSAGES,
        filters=[("projectId", "==", project_id)],
        order_by="timestamp",
        descending=False,
        date_fields=MESSAGE_DATE_FIELDS,
    )


async def send_message(ctx: AppContext, project_id: str, text: str) -> CommandResult:
    validation = validate_message(text)
    if not validation.valid:
        return invalid(ctx, validation)

    try:
        message_id = await ctx.documents.add(
            MESSAGES,
            {
                "projectId": project_id,
                "senderId": ctx.state.current_user_id,
                "senderName": ctx.state.current_user_name,
                "text": escape_html(text.strip()),
                "timestamp": SERVER_TIMESTAMP,
                "clientTimestamp": now_iso(),
            },
        )
    except Exception as exc:
        return failed(ctx, logger, exc, "Failed to send message", context={"projectId": project_id})

    await log_activity(ctx, "message_sent", {"projectId": project_id, "messageId": message_id})
    logger.info("Message %s sent on project %s", message_id, project_id)
    return ok(id=message_id)
