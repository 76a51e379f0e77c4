"""Durable key-value cache with per-entry expiry.

Layout:
  one JSON object in ``settings.cache_file``; each key is
  ``<prefix><name>`` and each value is the JSON text
  ``{"data": ..., "expiry": <epoch ms>}``.
"""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Awaitable, Callable

from .backend.storage import write_bytes_atomic

logger = logging.getLogger(__name__)

_MISSING = object()


class QuotaExceededError(Exception):
    """Raised when a write would push the storage file past its byte quota."""


class FileKeyValueStorage:
    """String-to-string storage persisted to a single JSON file."""

    def __init__(self, path: str | Path, *, quota_bytes: int = 5 * 1024 * 1024):
        self.path = Path(path)
        self.quota_bytes = quota_bytes
        self._items: dict[str, str] = self._load()

    def _load(self) -> dict[str, str]:
        if not self.path.is_file():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.warning("Cache file %s unreadable; starting empty", self.path)
            return {}
        if not isinstance(raw, dict):
            return {}
        return {str(k): v for k, v in raw.items() if isinstance(v, str)}

    def _encode(self, items: dict[str, str]) -> bytes:
        return json.dumps(items, separators=(",", ":")).encode("utf-8")

    def _flush(self) -> None:
        write_bytes_atomic(self.path, self._encode(self._items))

    def keys(self) -> list[str]:
        return list(self._items)

    def get_item(self, key: str) -> str | None:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        candidate = {**self._items, key: value}
        size = len(self._encode(candidate))
        if size > self.quota_bytes:
            raise QuotaExceededError(f"Cache quota of {self.quota_bytes} bytes exceeded ({size})")
        self._items = candidate
        self._flush()

    def remove_item(self, key: str) -> None:
        if self._items.pop(key, None) is not None:
            self._flush()

    def remove_items(self, keys: list[str]) -> None:
        removed = [k for k in keys if self._items.pop(k, None) is not None]
        if removed:
            self._flush()


class LocalCache:
    def __init__(
        self,
        storage: FileKeyValueStorage,
        *,
        prefix: str = "portal_cache_",
        default_ttl: float = 300.0,
        clock: Callable[[], float] = time.time,
    ):
        self.storage = storage
        self.prefix = prefix
        self.default_ttl = default_ttl
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _read(self, key: str) -> Any:
        full_key = self.prefix + key
        raw = self.storage.get_item(full_key)
        if raw is None:
            return _MISSING
        try:
            entry = json.loads(raw)
            data, expiry = entry["data"], float(entry["expiry"])
        except (ValueError, TypeError, KeyError):
            logger.warning("Dropping unreadable cache entry %s", key)
            self.storage.remove_item(full_key)
            return _MISSING
        if self._now_ms() >= expiry:
            self.storage.remove_item(full_key)
            return _MISSING
        return data

    def get(self, key: str, default: Any = None) -> Any:
        value = self._read(key)
        return default if value is _MISSING else value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        entry = json.dumps({"data": value, "expiry": self._now_ms() + int(ttl * 1000)}, default=str)
        try:
            self.storage.set_item(self.prefix + key, entry)
        except QuotaExceededError as exc:
            logger.warning("Cache write for %s failed: %s", key, exc)
            self.clear_expired()

    def remove(self, key: str) -> None:
        self.storage.remove_item(self.prefix + key)

    def clear_expired(self) -> int:
        now = self._now_ms()
        stale: list[str] = []
        for full_key in self.storage.keys():
            if not full_key.startswith(self.prefix):
                continue
            try:
                expiry = float(json.loads(self.storage.get_item(full_key) or "")["expiry"])
            except (ValueError, TypeError, KeyError):
                stale.append(full_key)
                continue
            if expiry <= now:
                stale.append(full_key)
        self.storage.remove_items(stale)
        logger.info("Cleared %d expired cache entries", len(stale))
        return len(stale)

    def clear(self) -> int:
        keys = [k for k in self.storage.keys() if k.startswith(self.prefix)]
        self.storage.remove_items(keys)
        logger.info("Cleared all %d cache entries", len(keys))
        return len(keys)

    async def cached_fetch(
        self, key: str, producer: Callable[[], Awaitable[Any]], ttl: float | None = None
    ) -> Any:
        """Return the cached value, or await ``producer()`` and cache its result."""
        value = self._read(key)
        if value is not _MISSING:
            logger.debug("Cache hit: %s", key)
            return value
        logger.debug("Cache miss: %s", key)
        value = await producer()
        self.set(key, value, ttl)
        return value
