"""In-memory application state with per-slice change listeners.

Slices are replaced wholesale by ``set``; listeners registered for a slice are
called with the new value, then wildcard (``"*"``) listeners are called with
``(key, value)``. A failing listener is logged and never stops the others.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Callable, Iterable

from .constants import DEFAULT_ROLE, ROLE_PERMISSIONS, STAFF_ROLES

logger = logging.getLogger(__name__)

WILDCARD = "*"

Listener = Callable[..., Any]


def _initial_filters() -> dict[str, str]:
    return {"search": "", "location": "", "business_type": "", "status": "", "tier": ""}


def initial_data() -> dict[str, Any]:
    """Fresh default values for every resettable data slice."""
    return {
        "leads": [],
        "projects": [],
        "clients": [],
        "tickets": [],
        "archived": [],
        "messages": [],
        "activity": [],
        "current_item": None,
        "filters": _initial_filters(),
    }


def initial_session() -> dict[str, Any]:
    return {
        "current_user": None,
        "user_profile": None,
        "user_role": None,
        "is_admin": False,
        "is_loading": False,
    }


class StateStore:
    def __init__(self):
        self._state: dict[str, Any] = {**initial_session(), **initial_data()}
        self._listeners: dict[str, list[Listener]] = {}

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    def get(self, key: str | None = None) -> Any:
        if key is None:
            return dict(self._state)
        return self._state.get(key)

    def set(self, key: str, value: Any) -> None:
        self._state[key] = value
        self._notify(key, value)

    def update(self, values: dict[str, Any]) -> None:
        for key, value in values.items():
            self.set(key, value)

    def subscribe(self, key: str, callback: Listener) -> Callable[[], None]:
        """Listen to one slice (or ``"*"`` for every slice). Returns an unsubscribe function."""
        self._listeners.setdefault(key, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._listeners.get(key, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    def reset(self, keys: Iterable[str] | None = None) -> None:
        defaults = initial_data()
        targets = list(defaults) if keys is None else [k for k in keys if k in defaults]
        for key in targets:
            self.set(key, defaults[key])

    def _notify(self, key: str, value: Any) -> None:
        for callback in list(self._listeners.get(key, ())):
            try:
                callback(value)
            except Exception:
                logger.exception("State listener failed for %s", key)

        for callback in list(self._listeners.get(WILDCARD, ())):
            try:
                callback(key, value)
            except Exception:
                logger.exception("Wildcard state listener failed for %s", key)

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    def set_current_user(self, user) -> None:
        self.set("current_user", user)

    def set_user_profile(self, profile: dict | None) -> None:
        self.set("user_profile", profile)
        role = (profile or {}).get("role") or DEFAULT_ROLE
        self.set("user_role", role)
        self.set("is_admin", role in STAFF_ROLES)

    def clear_session(self) -> None:
        self.update(initial_session())

    @property
    def is_authenticated(self) -> bool:
        return self._state.get("current_user") is not None

    @property
    def is_admin(self) -> bool:
        return bool(self._state.get("is_admin"))

    @property
    def current_user_id(self) -> str | None:
        user = self._state.get("current_user")
        return getattr(user, "uid", None) if user is not None else None

    @property
    def current_user_name(self) -> str:
        profile = self._state.get("user_profile") or {}
        if profile.get("displayName"):
            return profile["displayName"]
        user = self._state.get("current_user")
        email = getattr(user, "email", None) or ""
        return email.split("@")[0] if email else "User"

    @property
    def current_user_email(self) -> str:
        profile = self._state.get("user_profile") or {}
        if profile.get("email"):
            return profile["email"]
        user = self._state.get("current_user")
        return getattr(user, "email", None) or ""

    def has_permission(self, permission: str) -> bool:
        role = self._state.get("user_role") or DEFAULT_ROLE
        permissions = ROLE_PERMISSIONS.get(role, ())
        return "*" in permissions or permission in permissions

    # ------------------------------------------------------------------
    # UI helpers
    # ------------------------------------------------------------------

    @property
    def filters(self) -> dict[str, str]:
        return dict(self._state.get("filters") or _initial_filters())

    def set_filter(self, name: str, value: str) -> None:
        filters = copy.copy(self._state.get("filters") or _initial_filters())
        filters[name] = value
        self.set("filters", filters)

    def clear_filters(self) -> None:
        self.set("filters", _initial_filters())

    def set_current_item(self, item: dict | None) -> None:
        self.set("current_item", item)

    def clear_current_item(self) -> None:
        self.set("current_item", None)

    def set_loading(self, loading: bool) -> None:
        self.set("is_loading", loading)
