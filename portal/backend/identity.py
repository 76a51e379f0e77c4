"""Email/password identity provider with opaque bearer tokens."""

from __future__ import annotations

import asyncio
import binascii
import hashlib
import hmac
import inspect
import logging
import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models.identity import IdentityAccount, IdentityToken
from .errors import AuthError

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

AuthListener = Callable[["AuthUser | None"], Any]


@dataclass(frozen=True)
class AuthUser:
    uid: str
    email: str
    display_name: str | None = None
    id_token: str | None = field(default=None, repr=False)


def hash_password(password: str, iterations: int = 200_000) -> str:
    """Hash a password using PBKDF2-SHA256."""
    if not password:
        raise ValueError("Password is required")
    salt = secrets.token_bytes(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)
    return (
        f"pbkdf2_sha256${iterations}$"
        f"{binascii.hexlify(salt).decode('ascii')}$"
        f"{binascii.hexlify(digest).decode('ascii')}"
    )


def verify_password(password: str, stored_hash: str) -> bool:
    if not password or not stored_hash:
        return False
    try:
        scheme, iterations_raw, salt_hex, digest_hex = stored_hash.split("$", 3)
        iterations = int(iterations_raw)
        salt = binascii.unhexlify(salt_hex.encode("ascii"))
        expected = binascii.unhexlify(digest_hex.encode("ascii"))
    except (ValueError, binascii.Error):
        return False
    if scheme != "pbkdf2_sha256":
        return False

    actual = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)
    return hmac.compare_digest(actual, expected)


def hash_token(token: str) -> str:
    return hashlib.sha256((token or "").encode("utf-8")).hexdigest()


def _normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class IdentityProvider:
    """Accounts, sign-in state and token verification.

    One provider instance tracks a single signed-in user, the way a client SDK
    does; ``verify_id_token`` works for any issued token and is what the HTTP
    surface uses.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        token_ttl_seconds: int = 3600,
        min_password_length: int = 6,
        password_iterations: int = 200_000,
    ):
        self._session_factory = session_factory
        self._token_ttl = timedelta(seconds=token_ttl_seconds)
        self._min_password_length = min_password_length
        self._password_iterations = password_iterations
        self._current: AuthUser | None = None
        self._listeners: list[AuthListener] = []

    @property
    def current_user(self) -> AuthUser | None:
        return self._current

    def on_auth_state_changed(self, callback: AuthListener) -> Callable[[], None]:
        """Register a sign-in/sign-out callback; returns an unsubscribe function."""
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    async def _emit(self, user: AuthUser | None) -> None:
        for callback in list(self._listeners):
            try:
                outcome = callback(user)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception("Auth state listener failed")

    async def _hash(self, password: str) -> str:
        return await asyncio.to_thread(hash_password, password, self._password_iterations)

    async def _verify(self, password: str, stored_hash: str) -> bool:
        return await asyncio.to_thread(verify_password, password, stored_hash)

    def _check_password_strength(self, password: str) -> None:
        if len(password or "") < self._min_password_length:
            raise AuthError(
                f"Password should be at least {self._min_password_length} characters",
                code="auth/weak-password",
            )

    async def create_account(
        self, email: str, password: str, display_name: str | None = None
    ) -> AuthUser:
        """Create an account without signing it in."""
        email_norm = _normalize_email(email)
        if not _EMAIL_RE.match(email_norm):
            raise AuthError("The email address is badly formatted.", code="auth/invalid-email")
        self._check_password_strength(password)

        password_hash = await self._hash(password)
        async with self._session_factory() as db:
            existing = (
                await db.execute(select(IdentityAccount).where(IdentityAccount.email == email_norm))
            ).scalar_one_or_none()
            if existing is not None:
                raise AuthError(
                    "The email address is already in use by another account.",
                    code="auth/email-already-exists",
                )
            account = IdentityAccount(
                uid=secrets.token_urlsafe(21),
                email=email_norm,
                password_hash=password_hash,
                display_name=(display_name or "").strip() or None,
            )
            db.add(account)
            await db.commit()
            logger.info("Created identity account %s", account.uid)
            return AuthUser(uid=account.uid, email=account.email, display_name=account.display_name)

    async def get_account(self, uid: str) -> AuthUser | None:
        async with self._session_factory() as db:
            account = await db.get(IdentityAccount, uid)
            if account is None:
                return None
            return AuthUser(uid=account.uid, email=account.email, display_name=account.display_name)

    async def sign_in(self, email: str, password: str) -> AuthUser:
        email_norm = _normalize_email(email)
        async with self._session_factory() as db:
            account = (
                await db.execute(select(IdentityAccount).where(IdentityAccount.email == email_norm))
            ).scalar_one_or_none()
            if account is None or not await self._verify(password, account.password_hash):
                raise AuthError("Invalid email or password", code="auth/invalid-credential")
            if account.disabled:
                raise AuthError("This account has been disabled", code="auth/user-disabled")

            token = secrets.token_urlsafe(32)
            now = _utcnow()
            db.add(
                IdentityToken(
                    token_hash=hash_token(token),
                    uid=account.uid,
                    expires_at=now + self._token_ttl,
                )
            )
            account.last_sign_in_at = now
            await db.commit()
            user = AuthUser(
                uid=account.uid,
                email=account.email,
                display_name=account.display_name,
                id_token=token,
            )

        if self._current is not None and self._current.id_token:
            await self._revoke(self._current.id_token)
        self._current = user
        await self._emit(user)
        return user

    async def sign_out(self) -> None:
        user = self._current
        if user is None:
            return
        if user.id_token:
            await self._revoke(user.id_token)
        self._current = None
        await self._emit(None)

    async def _revoke(self, token: str) -> None:
        async with self._session_factory() as db:
            await db.execute(
                update(IdentityToken)
                .where(IdentityToken.token_hash == hash_token(token))
                .values(revoked_at=_utcnow())
            )
            await db.commit()

    async def reauthenticate(self, password: str) -> None:
        """Confirm the signed-in user's password before a sensitive change."""
        user = self._require_user()
        async with self._session_factory() as db:
            account = await db.get(IdentityAccount, user.uid)
            if account is None or not await self._verify(password, account.password_hash):
                raise AuthError("The password is invalid", code="auth/wrong-password")

    async def change_password(self, new_password: str) -> None:
        user = self._require_user()
        self._check_password_strength(new_password)
        password_hash = await self._hash(new_password)
        async with self._session_factory() as db:
            account = await db.get(IdentityAccount, user.uid)
            if account is None:
                raise AuthError("No account for the signed-in user", code="auth/user-not-found")
            account.password_hash = password_hash
            await db.commit()
        logger.info("Password changed for %s", user.uid)

    async def verify_id_token(self, token: str) -> AuthUser | None:
        """Resolve a bearer token to its user, or None if unknown, expired or revoked."""
        if not token:
            return None
        async with self._session_factory() as db:
            row = await db.get(IdentityToken, hash_token(token))
            if row is None or row.revoked_at is not None:
                return None
            if _as_utc(row.expires_at) <= _utcnow():
                return None
            account = await db.get(IdentityAccount, row.uid)
            if account is None or account.disabled:
                return None
            return AuthUser(
                uid=account.uid,
                email=account.email,
                display_name=account.display_name,
                id_token=token,
            )

    def _require_user(self) -> AuthUser:
        if self._current is None:
            raise AuthError("No user is signed in", code="auth/no-current-user")
        return self._current
