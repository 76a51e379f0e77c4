"""Object storage, upload service and download route tests."""

from __future__ import annotations

import pytest

from portal.app import app
from portal.backend.errors import StorageError
from portal.backend.storage import ObjectStorage
from portal.routers.storage import get_object_storage
from portal.schemas.documents import FilePayload
from portal.services import storage_svc

PNG = b"\x89PNG\r\n\x1a\n" + b"0" * 32


@pytest.mark.asyncio
async def test_resumable_upload_reports_progress(tmp_path):
    storage = ObjectStorage(tmp_path, "http://test/storage", chunk_size=4)
    progress = []

    stored = await storage.upload_resumable("files/a.txt", b"0123456789", "text/plain", progress.append)

    assert [(p.bytes_transferred, p.state) for p in progress] == [
        (4, "running"),
        (8, "running"),
        (10, "success"),
    ]
    assert progress[-1].percent == 100.0
    assert stored.url == "http://test/storage/files/a.txt"
    assert (tmp_path / "files" / "a.txt").read_bytes() == b"0123456789"


def test_paths_cannot_escape_the_root(tmp_path):
    storage = ObjectStorage(tmp_path, "http://test/storage")
    for bad in ("../secret", "a/../b", ""):
        with pytest.raises(StorageError):
            storage.path_for(bad)


@pytest.mark.asyncio
async def test_download_url_of_missing_object(tmp_path):
    storage = ObjectStorage(tmp_path, "http://test/storage")
    with pytest.raises(StorageError) as info:
        storage.get_download_url("nothing/here.png")
    assert info.value.code == "storage/object-not-found"


@pytest.mark.asyncio
async def test_upload_file_names_object_by_time_and_clean_name(ctx):
    result = await storage_svc.upload_file(
        ctx, FilePayload(name="my logo?.png", content=PNG, content_type="image/png"), "logos/projects/p1"
    )

    assert result.success
    directory, _, filename = result.data["path"].rpartition("/")
    stamp, _, name = filename.partition("_")
    assert directory == "logos/projects/p1"
    assert stamp.isdigit()
    assert name == result.data["name"]
    assert ctx.storage.exists(result.data["path"])


@pytest.mark.asyncio
async def test_upload_rejects_wrong_type_and_size(ctx):
    exe = FilePayload(name="run.exe", content=b"MZ", content_type="application/x-msdownload")
    result = await storage_svc.upload_file(ctx, exe, "files")
    assert not result.success
    assert result.error.startswith("File type not allowed")

    ctx.settings.upload_max_bytes = 8
    big = FilePayload(name="big.png", content=PNG, content_type="image/png")
    result = await storage_svc.upload_image(ctx, big, "files")
    assert result.error.startswith("File size must be less than")


@pytest.mark.asyncio
async def test_images_only_for_logos(ctx):
    pdf = FilePayload(name="logo.pdf", content=b"%PDF", content_type="application/pdf")
    assert not (await storage_svc.upload_logo(ctx, pdf, "p1")).success


@pytest.mark.asyncio
async def test_delete_missing_file_counts_as_deleted(ctx):
    assert (await storage_svc.delete_file(ctx, "files/never-there.txt")).success


@pytest.mark.asyncio
async def test_download_route_serves_stored_bytes(ctx, client):
    app.dependency_overrides[get_object_storage] = lambda: ctx.storage
    stored = await ctx.storage.upload("files/p1/report.txt", b"quarterly", "text/plain")

    found = await client.get(f"/storage/{stored.path}")
    missing = await client.get("/storage/files/p1/other.txt")

    assert found.status_code == 200
    assert found.content == b"quarterly"
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_avatar_upload_lands_under_user(ctx):
    avatar = FilePayload(name="me.png", content=PNG, content_type="image/png")
    result = await storage_svc.upload_avatar(ctx, avatar, "u1")
    assert result.data["path"].startswith("avatars/u1/")
    assert ctx.notifier.history[-1].message == "Avatar uploaded!"
