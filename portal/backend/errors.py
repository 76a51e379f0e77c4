"""Error kinds raised by the portal backends.

Each error carries a short ``code`` string in the same vocabulary the hosted
services use (``permission-denied``, ``not-found``, ``auth/wrong-password`` ...)
so callers can classify failures without string matching on messages.
"""

from __future__ import annotations


class BackendError(Exception):
    """Base class for document store, identity, storage and function errors."""

    code = "unknown"

    def __init__(self, message: str = "", *, code: str | None = None):
        super().__init__(message or self.__class__.__name__)
        if code:
            self.code = code

    @property
    def message(self) -> str:
        return str(self)


class PermissionDeniedError(BackendError):
    code = "permission-denied"


class NotFoundError(BackendError):
    code = "not-found"


class FailedPreconditionError(BackendError):
    """Raised for queries that need a composite index which is not declared."""

    code = "failed-precondition"


class InvalidArgumentError(BackendError):
    code = "invalid-argument"


class AuthError(BackendError):
    """Identity provider failure; ``code`` is one of the ``auth/*`` values."""

    code = "auth/internal-error"


class StorageError(BackendError):
    code = "storage/unknown"


class FunctionsError(BackendError):
    """Callable function failure; ``code`` is the callable status in kebab case."""

    code = "internal"

    def __init__(self, message: str = "", *, code: str | None = None, details: dict | None = None):
        super().__init__(message, code=code)
        self.details = details or {}
