"""Sign-in, sign-out and the signed-in user's profile."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable

from ..backend.documents import SERVER_TIMESTAMP
from ..backend.identity import AuthUser
from ..constants import DEFAULT_ROLE, USERS
from ..errors import error_code
from ..helpers import retry_with_backoff
from ..validation import validate_email, validate_password, validate_required
from .results import CommandResult, failed, invalid, ok

if TYPE_CHECKING:
    from ..context import AppContext

logger = logging.getLogger(__name__)

PASSWORD_MESSAGES = {
    "auth/wrong-password": "Current password is incorrect.",
    "auth/invalid-credential": "Current password is incorrect.",
    "auth/weak-password": "New password is too weak.",
}


async def login(ctx: AppContext, email: str, password: str) -> CommandResult:
    validation = validate_email(email)
    validation.extend(validate_required(password, "Password"))
    if not validation.valid:
        return invalid(ctx, validation)

    ctx.state.set_loading(True)
    try:
        logger.info("Attempting login for %s", email)
        user = await ctx.identity.sign_in(email, password)
    except Exception as exc:
        return failed(ctx, logger, exc, "Login failed. Please try again.", context={"email": email})
    finally:
        ctx.state.set_loading(False)

    logger.info("Login successful: %s", user.uid)
    return ok(id=user.uid, user=user)


async def logout(ctx: AppContext) -> CommandResult:
    """Stop every live query, then sign out, then clear the data slices."""
    logger.info("Logging out")
    ctx.sync.teardown()
    try:
        await ctx.identity.sign_out()
    except Exception as exc:
        return failed(ctx, logger, exc, "Logout failed")
    ctx.state.reset()
    ctx.state.clear_session()
    return ok()


async def change_password(ctx: AppContext, current_password: str, new_password: str) -> CommandResult:
    validation = validate_required(current_password, "Current password")
    validation.extend(
        validate_password(new_password, min_length=ctx.settings.identity_min_password_length)
    )
    if not validation.valid:
        return invalid(ctx, validation)

    if ctx.identity.current_user is None:
        return CommandResult(success=False, error="Not authenticated")

    try:
        await ctx.identity.reauthenticate(current_password)
        await ctx.identity.change_password(new_password)
    except Exception as exc:
        message = PASSWORD_MESSAGES.get(error_code(exc) or "", "Failed to change password.")
        logger.error("Password change failed: %s", exc)
        ctx.notifier.error(message)
        return CommandResult(success=False, error=message)

    logger.info("Password changed")
    ctx.notifier.success("Password changed successfully")
    return ok()


async def load_user_profile(ctx: AppContext, uid: str) -> dict | None:
    """Read ``users/{uid}``, retrying transient failures. None when missing or unreadable."""

    async def read():
        return await ctx.documents.get(USERS, uid)

    try:
        snap = await retry_with_backoff(read, base_delay=ctx.settings.profile_retry_delay_seconds)
    except Exception:
        logger.exception("Failed to load user profile %s", uid)
        return None
    return snap.data if snap is not None else None


async def save_user_profile(ctx: AppContext, uid: str, data: dict[str, Any]) -> CommandResult:
    try:
        await ctx.documents.set(USERS, uid, {**data, "updatedAt": SERVER_TIMESTAMP}, merge=True)
    except Exception as exc:
        return failed(ctx, logger, exc, "Failed to save profile", context={"uid": uid}, notify=False)
    logger.info("Profile saved for %s", uid)
    return ok(id=uid)


def default_profile(user: AuthUser) -> dict[str, Any]:
    return {
        "email": user.email,
        "displayName": user.display_name or user.email.split("@")[0],
        "role": DEFAULT_ROLE,
    }


async def handle_auth_change(ctx: AppContext, user: AuthUser | None) -> None:
    """Point the session slices at ``user``, creating a client profile on first sign-in."""
    if user is None:
        logger.info("User not authenticated")
        ctx.state.clear_session()
        return

    logger.info("User authenticated: %s", user.uid)
    ctx.state.set_current_user(user)
    profile = await load_user_profile(ctx, user.uid)
    if profile is None:
        profile = default_profile(user)
        await save_user_profile(ctx, user.uid, {**profile, "createdAt": SERVER_TIMESTAMP})
    ctx.state.set_user_profile(profile)


def init_auth_listener(
    ctx: AppContext, callback: Callable[[AuthUser | None], Any] | None = None
) -> Callable[[], None]:
    """Keep the session slices in step with the identity provider. Returns an unsubscribe function."""

    async def on_change(user: AuthUser | None) -> None:
        await handle_auth_change(ctx, user)
        if callback is not None:
            callback(user)

    return ctx.identity.on_auth_state_changed(on_change)
