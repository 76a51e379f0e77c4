"""Transient user notifications (toasts).

Notifications auto-dismiss after their duration using the running event loop;
a loading notification stays until it is replaced or dismissed.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable

logger = logging.getLogger(__name__)

KINDS = ("success", "error", "warning", "info", "loading")
MAX_VISIBLE = 5
HISTORY_LIMIT = 100

NotificationListener = Callable[[str, "Notification"], Any]


@dataclass
class Notification:
    id: int
    message: str
    kind: str = "info"
    description: str | None = None
    dismissible: bool = True
    duration: float = 0.0
    dismissed: bool = False
    _timer: asyncio.TimerHandle | None = field(default=None, repr=False, compare=False)


class NotificationHandle:
    def __init__(self, notifier: Notifier, notification: Notification):
        self.notifier = notifier
        self.notification = notification

    def dismiss(self) -> None:
        self.notifier.dismiss(self.notification)

    def update(self, message: str) -> None:
        self.notification.message = message
        self.notifier._emit("updated", self.notification)


class LoadingHandle(NotificationHandle):
    """Loading toast; ``success``/``error`` replace it with a final notification."""

    def success(self, message: str, **options) -> NotificationHandle:
        self.dismiss()
        return self.notifier.success(message, **options)

    def error(self, message: str, **options) -> NotificationHandle:
        self.dismiss()
        return self.notifier.error(message, **options)


class Notifier:
    def __init__(
        self,
        *,
        default_duration: float = 3.0,
        max_visible: int = MAX_VISIBLE,
        history_limit: int = HISTORY_LIMIT,
    ):
        self.default_duration = default_duration
        self.max_visible = max_visible
        self._visible: list[Notification] = []
        self._history: deque[Notification] = deque(maxlen=history_limit)
        self._listeners: list[NotificationListener] = []
        self._ids = itertools.count(1)

    @property
    def visible(self) -> list[Notification]:
        return list(self._visible)

    @property
    def history(self) -> list[Notification]:
        return list(self._history)

    def subscribe(self, callback: NotificationListener) -> Callable[[], None]:
        """``callback(event, notification)`` for ``shown``, ``updated`` and ``dismissed``."""
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _emit(self, event: str, notification: Notification) -> None:
        for callback in list(self._listeners):
            try:
                callback(event, notification)
            except Exception:
                logger.exception("Notification listener failed")

    def show(
        self,
        message: str,
        kind: str = "info",
        *,
        duration: float | None = None,
        description: str | None = None,
        dismissible: bool = True,
    ) -> NotificationHandle:
        if kind not in KINDS:
            kind = "info"
        duration = self.default_duration if duration is None else duration

        while len(self._visible) >= self.max_visible:
            self.dismiss(self._visible[0])

        notification = Notification(
            id=next(self._ids),
            message=message,
            kind=kind,
            description=description,
            dismissible=dismissible,
            duration=duration,
        )
        self._visible.append(notification)
        self._history.append(notification)

        if duration > 0:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None
            if loop is not None:
                notification._timer = loop.call_later(duration, self.dismiss, notification)

        self._emit("shown", notification)
        return NotificationHandle(self, notification)

    def success(self, message: str, **options) -> NotificationHandle:
        return self.show(message, "success", **options)

    def error(self, message: str, **options) -> NotificationHandle:
        return self.show(message, "error", **options)

    def warning(self, message: str, **options) -> NotificationHandle:
        return self.show(message, "warning", **options)

    def info(self, message: str, **options) -> NotificationHandle:
        return self.show(message, "info", **options)

    def show_loading(self, message: str = "Loading...") -> LoadingHandle:
        handle = self.show(message, "loading", duration=0, dismissible=False)
        return LoadingHandle(self, handle.notification)

    def dismiss(self, notification: Notification) -> None:
        if notification.dismissed:
            return
        notification.dismissed = True
        if notification._timer is not None:
            notification._timer.cancel()
            notification._timer = None
        if notification in self._visible:
            self._visible.remove(notification)
        self._emit("dismissed", notification)

    def clear(self) -> None:
        for notification in list(self._visible):
            self.dismiss(notification)
