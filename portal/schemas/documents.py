"""Document schemas.

Python code uses snake_case attributes; documents are stored with the
camelCase field names (``companyName``, ``createdAt``) via alias generation.
Unknown fields are kept so older documents round-trip unchanged.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from ..constants import DEFAULT_CATEGORY, DEFAULT_TIER, DEFAULT_URGENCY, normalize_tier
from ..helpers import generate_id, now_iso, today_iso


class PortalDocument(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)

    @classmethod
    def document_fields(cls, exclude: tuple[str, ...] = ()) -> frozenset[str]:
        """Stored (camelCase) names of the declared fields."""
        return frozenset(
            info.alias or to_camel(name)
            for name, info in cls.model_fields.items()
            if name not in exclude
        )


def only_fields(updates: dict[str, Any], allowed: frozenset[str]) -> dict[str, Any]:
    return {k: v for k, v in updates.items() if k in allowed}


class DemoFile(PortalDocument):
    url: str
    name: str = ""
    uploaded_at: str = Field(default_factory=now_iso)


class Milestone(PortalDocument):
    id: str = Field(default_factory=lambda: generate_id("m"))
    title: str
    status: str = "pending"
    date: str = Field(default_factory=today_iso)


def kickoff_milestone() -> Milestone:
    return Milestone(id="m1", title="Kickoff", status="current", date=today_iso())


def parse_amount(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


class Invoice(PortalDocument):
    id: str = Field(default_factory=lambda: generate_id("inv"))
    number: str
    amount: float = 0.0
    status: str = "pending"
    due_date: str
    description: str = ""
    created_at: str = Field(default_factory=now_iso)

    @field_validator("number", mode="before")
    @classmethod
    def _number_as_text(cls, value):
        return str(value) if value is not None else value

    @field_validator("amount", mode="before")
    @classmethod
    def _parse_amount(cls, value):
        return parse_amount(value)


class ClientFile(PortalDocument):
    id: str = Field(default_factory=lambda: generate_id("cf"))
    name: str
    size: int = 0
    url: str
    uploaded_by: str = "User"
    uploaded_at: str = Field(default_factory=now_iso)


class LeadFields(PortalDocument):
    company_name: str
    client_name: str = ""
    client_email: str = ""
    client_phone: str = ""
    website_url: str = ""
    location: str = ""
    business_type: str = ""
    notes: str = ""
    logo: str | None = None


class LeadCreate(LeadFields):
    client_name: str
    # Required, no default: a lead's pipeline stage is always chosen explicitly.
    status: str
    demo_files: list[DemoFile] = Field(default_factory=list)


def clamp_progress(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    try:
        number = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return 0
    return max(0, min(100, number))


class ProjectCreate(LeadFields):
    status: str = "active"
    tier: str = DEFAULT_TIER
    progress: int = 0
    assigned_clients: list[str] = Field(default_factory=list)
    milestones: list[Milestone] = Field(default_factory=lambda: [kickoff_milestone()])
    invoices: list[Invoice] = Field(default_factory=list)
    client_files: list[ClientFile] = Field(default_factory=list)
    demo_files: list[DemoFile] = Field(default_factory=list)
    converted_from_lead: str | None = None

    @field_validator("status", mode="before")
    @classmethod
    def _default_status(cls, value):
        return value or "active"

    @field_validator("tier", mode="before")
    @classmethod
    def _normalize_tier(cls, value):
        return normalize_tier(str(value)) if value else DEFAULT_TIER

    @field_validator("progress", mode="before")
    @classmethod
    def _clamp_progress(cls, value):
        return clamp_progress(value)

    @field_validator("assigned_clients", mode="before")
    @classmethod
    def _dedupe_clients(cls, value):
        if not value:
            return []
        seen: list[str] = []
        for uid in value:
            if uid not in seen:
                seen.append(uid)
        return seen

    @field_validator("milestones", mode="before")
    @classmethod
    def _default_milestones(cls, value):
        return value or [kickoff_milestone()]


class TicketCreate(PortalDocument):
    title: str
    description: str
    project_id: str
    urgency: str = DEFAULT_URGENCY
    category: str = DEFAULT_CATEGORY
    client_id: str | None = None

    @field_validator("urgency", mode="before")
    @classmethod
    def _default_urgency(cls, value):
        return value or DEFAULT_URGENCY

    @field_validator("category", mode="before")
    @classmethod
    def _default_category(cls, value):
        return value or DEFAULT_CATEGORY


class UserProfile(PortalDocument):
    email: str
    display_name: str = ""
    role: str = "client"
    company: str = ""
    status: str = "active"


class ArchivedRecord(PortalDocument):
    type: str
    original_id: str
    company_name: str = ""
    client_name: str = ""
    client_email: str = ""
    reason: str = "Archived"
    archived_by: str | None = None
    original_data: dict[str, Any] = Field(default_factory=dict)


class FilePayload(BaseModel):
    """An in-memory file handed to an upload command."""

    name: str
    content: bytes
    content_type: str = "application/octet-stream"

    @property
    def size(self) -> int:
        return len(self.content)
