"""Access rules evaluated by the document store before every write."""

from __future__ import annotations

from .errors import PermissionDeniedError

DENIED_MESSAGE = "Missing or insufficient permissions."


class AccessRules:
    """Base rule set: allow everything."""

    def check(self, op: str, collection: str, doc_id: str, data: dict | None, auth) -> None:
        return None


class PortalRules(AccessRules):
    """Writes need a signed-in user; tickets may only be created for oneself."""

    def check(self, op: str, collection: str, doc_id: str, data: dict | None, auth) -> None:
        if auth is None:
            raise PermissionDeniedError(DENIED_MESSAGE)
        if collection == "tickets" and op == "create":
            if (data or {}).get("clientId") != auth.uid:
                raise PermissionDeniedError(DENIED_MESSAGE)
