"""Client account creation through the createClient callable."""

from __future__ import annotations

import pytest
from httpx import ASGITransport

from portal.app import app
from portal.backend.documents import Query
from portal.backend.functions import FunctionsClient
from portal.constants import ACTIVITY, USERS
from portal.routers import functions as functions_router
from portal.services import client_svc

NEW_CLIENT = {"email": "new@client.test", "password": "s3cret-pass", "displayName": "New Client"}


@pytest.fixture
def functions(ctx, monkeypatch):
    """Route ``ctx.functions`` calls into the app; returns a setter for the admin uid."""
    app.dependency_overrides[functions_router.get_identity_provider] = lambda: ctx.identity

    def token():
        user = ctx.identity.current_user
        return user.id_token if user is not None else None

    ctx.functions = FunctionsClient(
        ctx.settings.functions_url, token_provider=token, transport=ASGITransport(app=app)
    )

    def allow(uid: str) -> None:
        monkeypatch.setattr(functions_router.settings, "functions_admin_uid", uid)

    yield allow
    app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_create_client_writes_profile(ctx, admin, functions):
    functions(admin.uid)

    result = await client_svc.create_client(ctx, {**NEW_CLIENT, "company": "Acme"})

    assert result.success
    assert result.data["email"] == "new@client.test"
    profile = (await ctx.documents.get(USERS, result.id)).data
    assert profile["role"] == "client"
    assert profile["status"] == "active"
    assert profile["displayName"] == "New Client"
    assert profile["company"] == "Acme"
    assert profile["createdBy"] == admin.uid
    assert [n.message for n in ctx.notifier.visible] == ["Client created successfully"]

    types = [s.get("type") for s in await ctx.documents.get_docs(Query(ACTIVITY))]
    assert types == ["client_created"]

    account = await ctx.identity.get_account(result.id)
    assert account.email == "new@client.test"


@pytest.mark.asyncio
async def test_duplicate_email_reads_as_already_in_use(ctx, admin, functions):
    functions(admin.uid)
    await client_svc.create_client(ctx, NEW_CLIENT)

    result = await client_svc.create_client(ctx, NEW_CLIENT)

    assert not result.success
    assert result.error == "Email address is already in use."
    assert all(n.kind != "loading" for n in ctx.notifier.visible)


@pytest.mark.asyncio
async def test_non_admin_caller_is_refused(ctx, sign_in, functions):
    await sign_in("staff@example.com", role="admin")
    functions("someone-else")

    result = await client_svc.create_client(ctx, NEW_CLIENT)

    assert result.error == "You don't have permission to perform this action."
    assert await ctx.documents.get_docs(Query(USERS).where("email", "==", "new@client.test")) == []


@pytest.mark.asyncio
async def test_invalid_form_makes_no_call(ctx, admin, functions, monkeypatch):
    async def fail_call(name, data):
        raise AssertionError("no call expected")

    monkeypatch.setattr(ctx.functions, "call", fail_call)
    result = await client_svc.create_client(ctx, {**NEW_CLIENT, "password": "123"})
    assert not result.success
    assert result.errors


@pytest.mark.asyncio
async def test_subscribe_to_clients(ctx, admin, sign_in):
    await sign_in("cleo@example.com", display_name="Cleo")
    await sign_in("admin@example.com", role="admin")

    await client_svc.subscribe_to_clients(ctx)

    assert [c["displayName"] for c in ctx.state.get("clients")] == ["Cleo"]


# ----------------------------------------------------------------------
# Route
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_route_requires_token(client, functions):
    resp = await client.post("/functions/createClient", json={"data": NEW_CLIENT})
    assert resp.status_code == 401
    assert resp.json()["error"]["status"] == "UNAUTHENTICATED"


@pytest.mark.asyncio
async def test_route_rejects_bad_payloads(ctx, admin, client, functions):
    functions(admin.uid)
    headers = {"Authorization": f"Bearer {admin.id_token}"}

    missing = await client.post(
        "/functions/createClient", json={"data": {"email": "x@y.test"}}, headers=headers
    )
    short = await client.post(
        "/functions/createClient", json={"data": {**NEW_CLIENT, "password": "12345"}}, headers=headers
    )
    not_json = await client.post("/functions/createClient", content=b"nope", headers=headers)

    for resp in (missing, short, not_json):
        assert resp.status_code == 400
        assert resp.json()["error"]["status"] == "INVALID_ARGUMENT"


@pytest.mark.asyncio
async def test_route_reports_existing_email(ctx, admin, client, functions):
    functions(admin.uid)
    headers = {"Authorization": f"Bearer {admin.id_token}"}

    first = await client.post("/functions/createClient", json={"data": NEW_CLIENT}, headers=headers)
    second = await client.post("/functions/createClient", json={"data": NEW_CLIENT}, headers=headers)

    assert first.status_code == 200
    assert set(first.json()["result"]) == {"uid", "email"}
    assert second.status_code == 409
    assert second.json()["error"]["status"] == "ALREADY_EXISTS"
