"""Stored document model - one row per (collection, document id)."""

from __future__ import annotations

from sqlalchemy import JSON, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin


class StoredDocument(TimestampMixin, Base):
    __tablename__ = "document"
    __table_args__ = (
        Index("ix_document_collection", "collection"),
    )

    collection: Mapped[str] = mapped_column(String(100), primary_key=True)
    doc_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    # Encoded payload: server timestamps are stored as {"__ts__": iso} markers.
    data: Mapped[dict] = mapped_column(JSON, default=dict)

    def __repr__(self) -> str:
        return f"<StoredDocument {self.collection}/{self.doc_id}>"
