"""HTTP client for privileged callable functions.

Wire format: POST ``<functions_url>/<name>`` with ``{"data": {...}}``; the
response is ``{"result": {...}}`` or ``{"error": {"status", "message"}}``.
"""

from __future__ import annotations

import logging
from typing import Callable

import httpx

from .errors import FunctionsError

logger = logging.getLogger(__name__)


def status_to_code(status: str | None) -> str:
    """``PERMISSION_DENIED`` -> ``permission-denied``."""
    if not status:
        return "internal"
    return status.strip().lower().replace("_", "-")


class FunctionsClient:
    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 15.0,
        token_provider: Callable[[], str | None] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._token_provider = token_provider or (lambda: None)
        self._transport = transport

    async def call(self, name: str, data: dict) -> dict:
        headers = {}
        token = self._token_provider()
        if token:
            headers["Authorization"] = f"Bearer {token}"

        async with httpx.AsyncClient(
            base_url=self.base_url, timeout=self.timeout, transport=self._transport
        ) as client:
            try:
                resp = await client.post(f"/{name}", json={"data": data}, headers=headers)
            except httpx.HTTPError as exc:
                logger.warning("Callable %s unreachable: %s", name, exc)
                raise FunctionsError(f"Function {name} is unavailable", code="unavailable") from exc

        try:
            payload = resp.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}

        if resp.status_code >= 400 or "error" in payload:
            error = payload.get("error") or {}
            raise FunctionsError(
                error.get("message") or f"Function {name} failed ({resp.status_code})",
                code=status_to_code(error.get("status")),
                details=error.get("details"),
            )
        return payload.get("result") or {}
