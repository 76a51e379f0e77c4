"""Client accounts - created through the privileged ``createClient`` callable."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable

from ..backend.documents import SERVER_TIMESTAMP
from ..constants import CREATE_CLIENT_FUNCTION, USERS
from ..schemas.documents import UserProfile
from ..security.sanitize import sanitize_document
from ..validation import validate_client_form
from .activity_svc import log_activity
from .results import CommandResult, failed, invalid, ok

if TYPE_CHECKING:
    from ..context import AppContext

logger = logging.getLogger(__name__)


async def create_client(ctx: AppContext, data: dict[str, Any]) -> CommandResult:
    """Create the identity account remotely, then write the matching ``users/{uid}`` profile.

    Two steps, not atomic: if the profile write fails the account still exists
    and the first sign-in creates a default profile for it.
    """
    validation = validate_client_form({**data, "password": data.get("password")})
    if not validation.valid:
        return invalid(ctx, validation)

    email = data["email"].strip()
    loading = ctx.notifier.show_loading("Creating client...")
    try:
        logger.info("Creating client %s", email)
        result = await ctx.functions.call(
            CREATE_CLIENT_FUNCTION,
            {
                "email": email,
                "password": data["password"],
                "displayName": data["displayName"].strip(),
            },
        )
        uid = result["uid"]

        profile = UserProfile(
            email=result.get("email") or email,
            display_name=data["displayName"].strip(),
            company=data.get("company") or "",
            role="client",
            status="active",
        ).to_document()
        await ctx.documents.set(
            USERS,
            uid,
            {
                **sanitize_document(profile),
                "createdAt": SERVER_TIMESTAMP,
                "createdBy": ctx.state.current_user_id,
            },
        )
    except Exception as exc:
        loading.dismiss()
        return failed(ctx, logger, exc, "Failed to create client.", context={"email": email})

    await log_activity(
        ctx, "client_created", {"clientId": uid, "displayName": profile["displayName"], "email": email}
    )
    logger.info("Client created: %s", uid)
    loading.success("Client created successfully")
    return ok(id=uid, email=email)


async def subscribe_to_clients(ctx: AppContext) -> Callable[[], None]:
    """Mirror client profiles into the ``clients`` slice."""
    return await ctx.sync.subscribe_to_collection(
        USERS, filters=[("role", "==", "client")], slice_name="clients"
    )
