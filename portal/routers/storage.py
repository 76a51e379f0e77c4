"""Serve stored objects at their download URLs."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import FileResponse

from ..backend.errors import StorageError
from ..backend.storage import ObjectStorage
from ..config import settings

router = APIRouter(prefix="/storage", tags=["storage"])


def get_object_storage() -> ObjectStorage:
    return ObjectStorage(settings.storage_path, settings.storage_base_url)


@router.get("/{path:path}")
async def download(path: str, storage: ObjectStorage = Depends(get_object_storage)):
    try:
        target = storage.path_for(path)
    except StorageError as exc:
        raise HTTPException(status_code=400, detail=exc.message) from exc
    if not target.is_file():
        raise HTTPException(status_code=404, detail="Object not found")
    return FileResponse(target)
