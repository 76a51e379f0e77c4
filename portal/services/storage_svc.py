"""Storage service - validated uploads into object storage."""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Callable

from ..backend.storage import ProgressCallback
from ..constants import AVATARS_PATH, LOGOS_PATH
from ..schemas.documents import FilePayload
from ..security.sanitize import sanitize_filename
from ..validation import ValidationResult, validate_file, validate_image
from .results import CommandResult, failed, ok

if TYPE_CHECKING:
    from ..context import AppContext

logger = logging.getLogger(__name__)

FileValidator = Callable[..., ValidationResult]


def object_path(directory: str, filename: str) -> str:
    """``<directory>/<epoch ms>_<sanitised name>``."""
    return f"{directory.rstrip('/')}/{int(time.time() * 1000)}_{sanitize_filename(filename)}"


async def upload_file(
    ctx: AppContext,
    file: FilePayload,
    directory: str,
    *,
    on_progress: ProgressCallback | None = None,
    validator: FileValidator = validate_file,
) -> CommandResult:
    """Upload one file under ``directory``.

    The result's ``data`` carries ``url``, ``path``, ``size`` and ``name``.
    With ``on_progress`` the upload is chunked and reports progress.
    """
    validation = validator(
        file.size, file.content_type, max_bytes=ctx.settings.upload_max_bytes, required=True
    )
    if not validation.valid:
        logger.warning("File validation failed for %s: %s", file.name, validation.errors)
        ctx.notifier.error(validation.first_error)
        return CommandResult(success=False, error=validation.first_error, errors=validation.errors)

    path = object_path(directory, file.name)
    logger.info("Uploading %s (%d bytes)", path, file.size)
    try:
        if on_progress is not None:
            stored = await ctx.storage.upload_resumable(
                path, file.content, file.content_type, on_progress
            )
        else:
            stored = await ctx.storage.upload(path, file.content, file.content_type)
    except Exception as exc:
        return failed(ctx, logger, exc, "Failed to upload file", context={"path": path})

    return ok(url=stored.url, path=stored.path, size=stored.size, name=sanitize_filename(file.name))


async def upload_image(
    ctx: AppContext,
    file: FilePayload,
    directory: str,
    *,
    on_progress: ProgressCallback | None = None,
) -> CommandResult:
    return await upload_file(ctx, file, directory, on_progress=on_progress, validator=validate_image)


async def upload_logo(
    ctx: AppContext, file: FilePayload, item_id: str, item_type: str = "project"
) -> CommandResult:
    result = await upload_image(ctx, file, f"{LOGOS_PATH}/{item_type}s/{item_id}")
    if result.success:
        ctx.notifier.success("Logo uploaded!")
    return result


async def upload_avatar(ctx: AppContext, file: FilePayload, user_id: str) -> CommandResult:
    result = await upload_image(ctx, file, f"{AVATARS_PATH}/{user_id}")
    if result.success:
        ctx.notifier.success("Avatar uploaded!")
    return result


async def delete_file(ctx: AppContext, path: str) -> CommandResult:
    """Delete an object; a missing object counts as deleted."""
    try:
        await ctx.storage.delete(path)
    except Exception as exc:
        if getattr(exc, "code", None) == "storage/object-not-found":
            logger.info("File %s not found, nothing to delete", path)
            return ok()
        return failed(ctx, logger, exc, "Failed to delete file", context={"path": path}, notify=False)
    logger.info("Deleted %s", path)
    return ok()
