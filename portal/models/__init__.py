"""Portal models - re-exports all models and Base.metadata."""

from .base import Base, TimestampMixin
from .document import StoredDocument
from .identity import IdentityAccount, IdentityToken

__all__ = [
    "Base",
    "TimestampMixin",
    "StoredDocument",
    "IdentityAccount",
    "IdentityToken",
]
