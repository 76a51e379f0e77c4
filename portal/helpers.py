"""Small shared helpers: ids, dates, retries."""

from __future__ import annotations

import asyncio
import logging
import secrets
import string
import time
from datetime import date, datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_BASE36 = string.digits + string.ascii_lowercase


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_id(prefix: str = "") -> str:
    """Short client-side id: ``<prefix>_<base36 ms timestamp><6 random chars>``."""
    stamp = _to_base36(int(time.time() * 1000))
    suffix = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"{prefix}_{stamp}{suffix}" if prefix else f"{stamp}{suffix}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def now_iso() -> str:
    return utcnow().isoformat()


def today_iso() -> str:
    return date.today().isoformat()


def parse_datetime(value: Any) -> datetime | None:
    """Coerce a stored timestamp (datetime or ISO string) to an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def effective_date(doc: dict, fields: Sequence[str] = ("createdAt", "submittedAt")) -> datetime:
    """First parseable date among ``fields``, else the epoch."""
    for name in fields:
        parsed = parse_datetime(doc.get(name))
        if parsed is not None:
            return parsed
    return EPOCH


def sort_by_effective_date(
    docs: Iterable[dict],
    fields: Sequence[str] = ("createdAt", "submittedAt"),
    *,
    descending: bool = True,
) -> list[dict]:
    return sorted(docs, key=lambda d: effective_date(d, fields), reverse=descending)


def chunked(items: Sequence[T], size: int) -> list[list[T]]:
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


def group_by_field(items: Iterable[dict], field: str) -> dict[str, int]:
    counts: dict[str, int] = {}
    for item in items:
        key = item.get(field) or "unknown"
        counts[key] = counts.get(key, 0) + 1
    return counts


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    base_delay: float = 1.0,
) -> T:
    """Await ``fn()`` up to ``max_retries`` times, doubling the delay between tries."""
    last_error: Exception | None = None
    for attempt in range(max_retries):
        try:
            return await fn()
        except Exception as exc:
            last_error = exc
            if attempt < max_retries - 1:
                delay = base_delay * (2 ** attempt)
                logger.warning("Attempt %d failed (%s); retrying in %.2fs", attempt + 1, exc, delay)
                await asyncio.sleep(delay)
    assert last_error is not None
    raise last_error
