"""Sign-in, sign-out and profile tests."""

from __future__ import annotations

import pytest
import pytest_asyncio

from portal.constants import USERS
from portal.services import auth_svc

PASSWORD = "correct-horse"


@pytest_asyncio.fixture
async def account(ctx):
    return await ctx.identity.create_account("cleo@example.com", PASSWORD, "Cleo")


@pytest.mark.asyncio
async def test_login_and_listener_create_default_profile(ctx, account):
    seen = []
    auth_svc.init_auth_listener(ctx, seen.append)

    result = await auth_svc.login(ctx, "cleo@example.com", PASSWORD)

    assert result.success
    assert result.id == account.uid
    assert seen == [result.data["user"]]
    assert ctx.state.current_user_id == account.uid
    assert ctx.state.get("user_role") == "client"
    assert ctx.state.get("is_loading") is False
    stored = (await ctx.documents.get(USERS, account.uid)).data
    assert stored["displayName"] == "Cleo"
    assert stored["role"] == "client"
    assert stored["createdAt"] is not None


@pytest.mark.asyncio
async def test_existing_profile_is_kept(ctx, account):
    auth_svc.init_auth_listener(ctx)
    await ctx.identity.sign_in("cleo@example.com", PASSWORD)
    await ctx.documents.set(USERS, account.uid, {"email": "cleo@example.com", "role": "admin"})
    await ctx.identity.sign_out()

    await auth_svc.login(ctx, "cleo@example.com", PASSWORD)

    assert ctx.state.is_admin
    assert ctx.state.get("user_profile")["role"] == "admin"


@pytest.mark.asyncio
async def test_wrong_password(ctx, account):
    result = await auth_svc.login(ctx, "cleo@example.com", "not-it")

    assert not result.success
    assert result.error == "Invalid email or password."
    assert ctx.notifier.history[-1].kind == "error"
    assert ctx.state.get("is_loading") is False


@pytest.mark.asyncio
async def test_login_validates_before_calling(ctx):
    result = await auth_svc.login(ctx, "not-an-email", "")
    assert len(result.errors) == 2


@pytest.mark.asyncio
async def test_logout_tears_down_then_clears(ctx, sign_in):
    await sign_in("admin@example.com", role="admin")
    auth_svc.init_auth_listener(ctx)
    await ctx.sync.subscribe_to_collection(USERS)
    assert ctx.sync.tracked_count == 1
    assert ctx.state.get("users")

    order = []
    original_teardown = ctx.sync.teardown

    def teardown():
        order.append(("teardown", ctx.identity.current_user is not None))
        original_teardown()

    ctx.sync.teardown = teardown
    result = await auth_svc.logout(ctx)

    assert result.success
    assert order == [("teardown", True)]
    assert ctx.sync.tracked_count == 0
    assert ctx.identity.current_user is None
    assert ctx.state.current_user_id is None
    assert ctx.state.get("tickets") == []


@pytest.mark.asyncio
async def test_change_password(ctx, account):
    await ctx.identity.sign_in("cleo@example.com", PASSWORD)

    wrong = await auth_svc.change_password(ctx, "nope", "brand-new-pass")
    assert wrong.error == "Current password is incorrect."

    result = await auth_svc.change_password(ctx, PASSWORD, "brand-new-pass")
    assert result.success
    assert ctx.notifier.history[-1].message == "Password changed successfully"

    await ctx.identity.sign_out()
    assert (await auth_svc.login(ctx, "cleo@example.com", "brand-new-pass")).success


@pytest.mark.asyncio
async def test_change_password_requires_sign_in(ctx):
    result = await auth_svc.change_password(ctx, PASSWORD, "brand-new-pass")
    assert result.error == "Not authenticated"


@pytest.mark.asyncio
async def test_short_new_password_is_invalid(ctx, account):
    await ctx.identity.sign_in("cleo@example.com", PASSWORD)
    result = await auth_svc.change_password(ctx, PASSWORD, "abc")
    assert not result.success
    assert result.errors


@pytest.mark.asyncio
async def test_load_user_profile_retries(ctx, account, monkeypatch):
    await ctx.identity.sign_in("cleo@example.com", PASSWORD)
    await ctx.documents.set(USERS, account.uid, {"role": "client"})
    real_get = ctx.documents.get
    calls = []

    async def flaky_get(collection, doc_id):
        calls.append(doc_id)
        if len(calls) < 2:
            raise ConnectionError("offline")
        return await real_get(collection, doc_id)

    monkeypatch.setattr(ctx.documents, "get", flaky_get)

    assert await auth_svc.load_user_profile(ctx, account.uid) == {"role": "client"}
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_missing_profile_loads_as_none(ctx):
    assert await auth_svc.load_user_profile(ctx, "nobody") is None
