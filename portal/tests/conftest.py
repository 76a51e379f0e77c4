"""Async test fixtures for portal tests using in-memory SQLite."""

from __future__ import annotations

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from portal.config import PortalSettings
from portal.constants import USERS
from portal.context import create_context
from portal.database import get_db
from portal.models.base import Base

PASSWORD = "correct-horse"


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest_asyncio.fixture
async def engine():
    eng = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def settings(tmp_path):
    return PortalSettings(
        database_url="sqlite+aiosqlite:///:memory:",
        storage_dir=str(tmp_path / "storage"),
        storage_base_url="http://test/storage",
        cache_file=str(tmp_path / "cache.json"),
        functions_url="http://test/functions",
        composite_indexes="",
        profile_retry_delay_seconds=0.0,
        toast_duration_seconds=0.0,
    )


@pytest_asyncio.fixture
async def ctx(engine, settings):
    context = await create_context(
        settings, engine=engine, password_iterations=1000, create_tables=False
    )
    yield context
    await context.close()


@pytest.fixture
def sign_in(ctx):
    """Sign in as ``email``, creating the account and its profile on first use."""
    accounts: dict[str, str] = {}

    async def _sign_in(email: str, role: str = "client", display_name: str | None = None):
        if email not in accounts:
            user = await ctx.identity.create_account(email, PASSWORD, display_name)
            accounts[email] = user.uid
        user = await ctx.identity.sign_in(email, PASSWORD)
        profile = {
            "email": email,
            "displayName": display_name or email.split("@")[0],
            "role": role,
        }
        await ctx.documents.set(USERS, user.uid, profile)
        ctx.state.set_current_user(user)
        ctx.state.set_user_profile(profile)
        return user

    return _sign_in


@pytest_asyncio.fixture
async def admin(sign_in):
    return await sign_in("admin@example.com", role="admin", display_name="Ada Admin")


@pytest_asyncio.fixture
async def client(engine):
    """HTTPX async test client against the portal app."""
    from portal.app import app

    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()
