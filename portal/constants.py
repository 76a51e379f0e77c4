"""Portal enumerations, labels and lookup tables."""

from __future__ import annotations

# Collections
USERS = "users"
LEADS = "leads"
PROJECTS = "projects"
TICKETS = "tickets"
MESSAGES = "messages"
ARCHIVED = "archived"
ACTIVITY = "activity"

# Tiers, highest first
TIERS = ("watchfuleye", "farmer", "bugcatcher", "host")
DEFAULT_TIER = "farmer"
TIER_NAMES = {
    "watchfuleye": "Watchful Eye",
    "farmer": "Farmer",
    "bugcatcher": "Bug Catcher",
    "host": "Host",
}
TIER_ORDER = {tier: index for index, tier in enumerate(TIERS)}
UNKNOWN_TIER_ORDER = len(TIERS)
LEGACY_TIER_MAP = {
    "premium": "watchfuleye",
    "enterprise": "watchfuleye",
    "professional": "farmer",
    "growth": "farmer",
    "starter": "bugcatcher",
    "basic": "host",
}

LEAD_STATUSES = ("noted", "demo-sent", "demo-complete")
LEAD_STATUS_LABELS = {
    "noted": "Noted",
    "demo-sent": "Demo Sent",
    "demo-complete": "Demo Complete",
}

PROJECT_STATUSES = ("active", "paused", "completed")
PROJECT_STATUS_LABELS = {"active": "Active", "paused": "Paused", "completed": "Completed"}

TICKET_STATUSES = ("open", "in-progress", "resolved")
TICKET_STATUS_LABELS = {"open": "Open", "in-progress": "In Progress", "resolved": "Resolved"}

TICKET_URGENCIES = ("asap", "day", "week", "month")
DEFAULT_URGENCY = "week"

TICKET_CATEGORIES = ("bug", "feature", "support", "billing", "other")
DEFAULT_CATEGORY = "support"

URGENCY_PRIORITY = {"asap": "high", "day": "medium"}
DEFAULT_PRIORITY = "low"
TICKET_PRIORITIES = ("high", "medium", "low")

# Fields staff may change on an existing ticket; ownership and stamps are fixed at creation.
TICKET_EDITABLE_FIELDS = (
    "status",
    "assignedTo",
    "assignedToName",
    "priority",
    "urgency",
    "category",
    "adminNotes",
    "internalNotes",
)

# SLA hours by tier and urgency; legacy tier names share their successor's row.
SLA_MATRIX = {
    "guardian": {"asap": 12, "day": 24, "week": 72, "month": 336},
    "premium": {"asap": 16, "day": 30, "week": 120, "month": 504},
    "enterprise": {"asap": 16, "day": 30, "week": 120, "month": 504},
    "watchfuleye": {"asap": 16, "day": 30, "week": 120, "month": 504},
    "professional": {"asap": 18, "day": 34, "week": 168, "month": 504},
    "farmer": {"asap": 18, "day": 34, "week": 168, "month": 504},
    "starter": {"asap": 20, "day": 48, "week": 168, "month": 720},
    "bugcatcher": {"asap": 20, "day": 48, "week": 168, "month": 720},
    "host": {"asap": 24, "day": 52, "week": 168, "month": 720},
    "basic": {"asap": 24, "day": 52, "week": 168, "month": 720},
}
SLA_HOURS = {"asap": 4, "day": 24, "week": 168, "month": 720}
SLA_AT_RISK_HOURS = 8

MILESTONE_STATUSES = ("pending", "current", "completed")
MILESTONE_STATUS_LABELS = {"pending": "Upcoming", "current": "In Progress", "completed": "Completed"}

INVOICE_STATUSES = ("pending", "paid", "overdue")
INVOICE_STATUS_LABELS = {"pending": "Pending", "paid": "Paid", "overdue": "Overdue"}

STAFF_ROLES = ("admin", "manager")
DEFAULT_ROLE = "client"
ROLE_PERMISSIONS = {
    "admin": ("*",),
    "manager": ("leads", "projects", "tickets", "clients", "messages", "posts"),
    "support": ("tickets", "messages"),
    "client": ("view_projects", "tickets", "messages"),
}

ACTIVITY_LABELS = {
    "lead_created": "Lead Created",
    "lead_updated": "Lead Updated",
    "lead_archived": "Lead Archived",
    "lead_converted": "Lead Converted",
    "project_created": "Project Created",
    "project_updated": "Project Updated",
    "project_archived": "Project Archived",
    "ticket_created": "Ticket Submitted",
    "ticket_updated": "Ticket Updated",
    "ticket_resolved": "Ticket Resolved",
    "message_sent": "Message Sent",
    "invoice_created": "Invoice Created",
    "invoice_paid": "Invoice Paid",
    "milestone_completed": "Milestone Completed",
    "client_created": "Client Created",
    "file_uploaded": "File Uploaded",
    "item_restored": "Item Restored",
}

ALLOWED_IMAGE_TYPES = ("image/jpeg", "image/png", "image/gif", "image/webp", "image/svg+xml")

# Storage path roots
LOGOS_PATH = "logos"
FILES_PATH = "files"
AVATARS_PATH = "avatars"

CREATE_CLIENT_FUNCTION = "createClient"

PERMISSION_DENIED_MESSAGE = "You don't have permission to perform this action."


def normalize_tier(tier: str | None) -> str | None:
    if not tier:
        return tier
    key = tier.strip().lower()
    return LEGACY_TIER_MAP.get(key, key)


def tier_name(tier: str | None) -> str:
    mapped = normalize_tier(tier)
    return TIER_NAMES.get(mapped or "", tier or "")


def tier_order(tier: str | None) -> int:
    return TIER_ORDER.get(normalize_tier(tier) or "", UNKNOWN_TIER_ORDER)


def status_label(status: str) -> str:
    for labels in (
        LEAD_STATUS_LABELS,
        PROJECT_STATUS_LABELS,
        TICKET_STATUS_LABELS,
        MILESTONE_STATUS_LABELS,
        INVOICE_STATUS_LABELS,
    ):
        if status in labels:
            return labels[status]
    return status
