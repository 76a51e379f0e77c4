"""Privileged callable functions.

Requests are ``POST /functions/<name>`` with ``{"data": {...}}`` and a bearer
token; replies are ``{"result": {...}}`` or ``{"error": {"status", "message"}}``.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from ..backend.errors import AuthError
from ..backend.identity import IdentityProvider
from ..config import settings
from ..database import async_session_factory
from ..schemas.functions import CreateClientRequest, CreateClientResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/functions", tags=["functions"])

MIN_PASSWORD_LENGTH = 6


def get_identity_provider() -> IdentityProvider:
    """FastAPI dependency; tests override it to share their database."""
    return IdentityProvider(
        async_session_factory,
        token_ttl_seconds=settings.identity_token_ttl_seconds,
        min_password_length=settings.identity_min_password_length,
    )


def function_error(status_code: int, status: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code, content={"error": {"status": status, "message": message}}
    )


def _bearer_token(request: Request) -> str:
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    return token.strip() if scheme.lower() == "bearer" else ""


@router.post("/createClient")
async def create_client(request: Request, identity: IdentityProvider = Depends(get_identity_provider)):
    caller = await identity.verify_id_token(_bearer_token(request))
    if caller is None:
        return function_error(401, "UNAUTHENTICATED", "Authentication required")
    if not settings.functions_admin_uid or caller.uid != settings.functions_admin_uid:
        logger.warning("createClient refused for %s", caller.uid)
        return function_error(403, "PERMISSION_DENIED", "Only the portal administrator can create clients")

    try:
        body = await request.json()
        payload = CreateClientRequest.model_validate((body or {}).get("data") or {})
    except (ValueError, AttributeError, ValidationError):
        return function_error(400, "INVALID_ARGUMENT", "Request body must be {\"data\": {...}}")

    if not (payload.email and payload.password and payload.display_name):
        return function_error(400, "INVALID_ARGUMENT", "Missing required fields")
    if len(payload.password) < MIN_PASSWORD_LENGTH:
        return function_error(
            400, "INVALID_ARGUMENT", f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
        )

    try:
        user = await identity.create_account(payload.email, payload.password, payload.display_name)
    except AuthError as exc:
        if exc.code == "auth/email-already-exists":
            return function_error(409, "ALREADY_EXISTS", "Email already in use")
        if exc.code in ("auth/invalid-email", "auth/weak-password"):
            return function_error(400, "INVALID_ARGUMENT", exc.message)
        raise

    logger.info("createClient: account %s created by %s", user.uid, caller.uid)
    return {"result": CreateClientResponse(uid=user.uid, email=user.email).model_dump()}
