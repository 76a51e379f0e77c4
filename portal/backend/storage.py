"""Path-addressed object storage on the local filesystem.

Layout:
  <root_dir>/<path as given, e.g. logos/leads/1700000000000_acme.png>

Notes:
  - Writes are atomic (temp file in the destination dir, then ``os.replace``).
  - Download URLs are ``<base_url>/<path>``; the FastAPI storage router serves
    them back.
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any, Callable
from urllib.parse import quote

from .errors import StorageError

logger = logging.getLogger(__name__)


def write_bytes_atomic(dest: Path, data: bytes) -> Path:
    """Write bytes to ``dest`` using an atomic rename."""
    dest.parent.mkdir(parents=True, exist_ok=True)

    fd = None
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(prefix=f"{dest.name}.tmp.", dir=str(dest.parent))
        with os.fdopen(fd, "wb") as f:
            fd = None
            f.write(data or b"")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, dest)
        tmp_path = None
    finally:
        if fd is not None:
            try:
                os.close(fd)
            except OSError:
                pass
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass

    return dest


@dataclass(frozen=True)
class StoredObject:
    path: str
    size: int
    content_type: str
    url: str


@dataclass(frozen=True)
class UploadProgress:
    bytes_transferred: int
    total_bytes: int
    state: str  # "running" | "success"

    @property
    def percent(self) -> float:
        if not self.total_bytes:
            return 100.0
        return self.bytes_transferred / self.total_bytes * 100


ProgressCallback = Callable[[UploadProgress], Any]


class ObjectStorage:
    def __init__(self, root_dir: str | Path, base_url: str, *, chunk_size: int = 256 * 1024):
        self.root_dir = Path(root_dir)
        self.base_url = base_url.rstrip("/")
        self.chunk_size = max(1, chunk_size)

    def _clean_path(self, path: str) -> str:
        pure = PurePosixPath((path or "").strip().lstrip("/"))
        if not pure.parts or any(part in ("..", ".") for part in pure.parts):
            raise StorageError(f"Invalid object path: {path!r}", code="storage/invalid-argument")
        return str(pure)

    def path_for(self, path: str) -> Path:
        return self.root_dir.joinpath(*PurePosixPath(self._clean_path(path)).parts)

    def exists(self, path: str) -> bool:
        return self.path_for(path).is_file()

    def get_download_url(self, path: str) -> str:
        clean = self._clean_path(path)
        if not self.path_for(clean).is_file():
            raise StorageError(f"Object does not exist: {clean}", code="storage/object-not-found")
        return f"{self.base_url}/{quote(clean)}"

    async def upload(
        self, path: str, data: bytes, content_type: str = "application/octet-stream"
    ) -> StoredObject:
        clean = self._clean_path(path)
        write_bytes_atomic(self.path_for(clean), data)
        logger.info("Stored object %s (%d bytes)", clean, len(data or b""))
        return StoredObject(
            path=clean,
            size=len(data or b""),
            content_type=content_type,
            url=self.get_download_url(clean),
        )

    async def upload_resumable(
        self,
        path: str,
        data: bytes,
        content_type: str = "application/octet-stream",
        on_progress: ProgressCallback | None = None,
    ) -> StoredObject:
        """Upload in chunks, reporting progress after each one."""
        clean = self._clean_path(path)
        dest = self.path_for(clean)
        dest.parent.mkdir(parents=True, exist_ok=True)
        total = len(data or b"")

        fd, tmp_path = tempfile.mkstemp(prefix=f"{dest.name}.part.", dir=str(dest.parent))
        try:
            with os.fdopen(fd, "wb") as f:
                sent = 0
                while sent < total:
                    chunk = data[sent : sent + self.chunk_size]
                    f.write(chunk)
                    sent += len(chunk)
                    if on_progress is not None and sent < total:
                        on_progress(UploadProgress(sent, total, "running"))
                    await asyncio.sleep(0)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, dest)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

        if on_progress is not None:
            on_progress(UploadProgress(total, total, "success"))
        logger.info("Stored object %s (%d bytes, resumable)", clean, total)
        return StoredObject(
            path=clean,
            size=total,
            content_type=content_type,
            url=self.get_download_url(clean),
        )

    async def delete(self, path: str) -> None:
        target = self.path_for(path)
        try:
            target.unlink()
        except FileNotFoundError as exc:
            raise StorageError(
                f"Object does not exist: {path}", code="storage/object-not-found"
            ) from exc
