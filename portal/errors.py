"""Map backend failures to user-facing sentences."""

from __future__ import annotations

from .backend.errors import BackendError, PermissionDeniedError
from .constants import PERMISSION_DENIED_MESSAGE

AUTH_MESSAGES = {
    "auth/invalid-credential": "Invalid email or password.",
    "auth/wrong-password": "Invalid email or password.",
    "auth/user-not-found": "Invalid email or password.",
    "auth/too-many-requests": "Too many failed attempts. Please try again later.",
    "auth/user-disabled": "This account has been disabled.",
    "auth/weak-password": "New password is too weak.",
}

ALREADY_EXISTS_MESSAGE = "Email address is already in use."


def error_code(exc: BaseException) -> str | None:
    return getattr(exc, "code", None) if isinstance(exc, BackendError) else None


def classify_error(exc: BaseException, fallback: str) -> str:
    """One sentence for the user; anything unrecognised becomes ``fallback``."""
    code = error_code(exc)
    if isinstance(exc, PermissionDeniedError) or code == "permission-denied":
        return PERMISSION_DENIED_MESSAGE
    if code == "already-exists" or code == "auth/email-already-exists":
        return ALREADY_EXISTS_MESSAGE
    if code in AUTH_MESSAGES:
        return AUTH_MESSAGES[code]
    return fallback
