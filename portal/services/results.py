"""Command outcome type and the shared failure paths of every command."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ..errors import classify_error
from ..validation import ValidationResult

if TYPE_CHECKING:
    from ..context import AppContext


@dataclass
class CommandResult:
    success: bool
    id: str | None = None
    error: str | None = None
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def valid(self) -> bool:
        return not self.errors


def ok(id: str | None = None, **data: Any) -> CommandResult:
    return CommandResult(success=True, id=id, data=data)


def invalid(ctx: AppContext, validation: ValidationResult) -> CommandResult:
    """Report a failed validation: first error as a notification, no remote call."""
    ctx.notifier.error(validation.first_error or "Invalid input")
    return CommandResult(success=False, errors=list(validation.errors), error=validation.first_error)


def rejected(ctx: AppContext, message: str) -> CommandResult:
    ctx.notifier.error(message)
    return CommandResult(success=False, error=message)


def failed(
    ctx: AppContext,
    logger: logging.Logger,
    exc: BaseException,
    message: str,
    *,
    context: dict[str, Any] | None = None,
    notify: bool = True,
) -> CommandResult:
    """Log, classify and report an exception raised by a command."""
    logger.error("%s (%s): %s", message, context or {}, exc, exc_info=exc)
    text = classify_error(exc, message)
    if notify:
        ctx.notifier.error(text)
    return CommandResult(success=False, error=text)
