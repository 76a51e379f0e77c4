"""Field and form validation rules.

Every validator returns a ``ValidationResult``; form validators collect the
errors of each field rule in order so callers can report the first one.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable

from .config import settings
from .constants import (
    ALLOWED_IMAGE_TYPES,
    INVOICE_STATUSES,
    LEAD_STATUSES,
    MILESTONE_STATUSES,
    PROJECT_STATUSES,
    TICKET_CATEGORIES,
    TICKET_EDITABLE_FIELDS,
    TICKET_PRIORITIES,
    TICKET_STATUSES,
    TICKET_URGENCIES,
    TIERS,
    LEGACY_TIER_MAP,
)
from .helpers import parse_datetime

EMAIL_RE = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*$"
)
URL_RE = re.compile(r"^(https?://)?([\da-z.-]+)\.([a-z.]{2,6})([/\w .-]*)*/?$", re.IGNORECASE)
PHONE_RE = re.compile(r"^(\+64|0)?\s*[2-9]\d{1,3}[\s-]?\d{3}[\s-]?\d{3,4}$")

MAX_EMAIL_LENGTH = 254
MAX_MESSAGE_LENGTH = 5000


@dataclass
class ValidationResult:
    errors: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    @property
    def first_error(self) -> str | None:
        return self.errors[0] if self.errors else None

    def extend(self, other: ValidationResult) -> ValidationResult:
        self.errors.extend(other.errors)
        return self


def _blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False


def validate_email(email: Any) -> ValidationResult:
    if not isinstance(email, str) or not email.strip():
        return ValidationResult(["Email is required"])
    trimmed = email.strip()
    if len(trimmed) > MAX_EMAIL_LENGTH:
        return ValidationResult(["Email is too long"])
    if not EMAIL_RE.match(trimmed):
        return ValidationResult(["Please enter a valid email address"])
    return ValidationResult()


def validate_password(password: Any, *, min_length: int = 6, max_length: int = 128) -> ValidationResult:
    if not isinstance(password, str) or not password:
        return ValidationResult(["Password is required"])
    result = ValidationResult()
    if len(password) < min_length:
        result.errors.append(f"Password must be at least {min_length} characters")
    if len(password) > max_length:
        result.errors.append(f"Password must be less than {max_length} characters")
    return result


def validate_required(value: Any, field_name: str = "This field") -> ValidationResult:
    if _blank(value):
        return ValidationResult([f"{field_name} is required"])
    return ValidationResult()


def validate_length(
    value: Any, *, min_length: int = 0, max_length: int | None = None, field_name: str = "This field"
) -> ValidationResult:
    if not isinstance(value, str):
        return ValidationResult([f"{field_name} must be a string"])
    length = len(value.strip())
    result = ValidationResult()
    if length < min_length:
        result.errors.append(f"{field_name} must be at least {min_length} characters")
    if max_length is not None and length > max_length:
        result.errors.append(f"{field_name} must be less than {max_length} characters")
    return result


def validate_url(url: Any, required: bool = False) -> ValidationResult:
    if not isinstance(url, str) or not url.strip():
        return ValidationResult(["URL is required"] if required else [])
    if not URL_RE.match(url.strip()):
        return ValidationResult(["Please enter a valid URL"])
    return ValidationResult()


def validate_phone(phone: Any, required: bool = False) -> ValidationResult:
    if not isinstance(phone, str) or not phone.strip():
        return ValidationResult(["Phone number is required"] if required else [])
    if not PHONE_RE.match(phone.strip()):
        return ValidationResult(["Please enter a valid phone number"])
    return ValidationResult()


def validate_number(
    value: Any,
    *,
    minimum: float | None = None,
    maximum: float | None = None,
    integer: bool = False,
    field_name: str = "This field",
) -> ValidationResult:
    if isinstance(value, bool):
        return ValidationResult([f"{field_name} must be a valid number"])
    try:
        number = float(value)
    except (TypeError, ValueError):
        return ValidationResult([f"{field_name} must be a valid number"])
    if number != number:
        return ValidationResult([f"{field_name} must be a valid number"])

    result = ValidationResult()
    if integer and not number.is_integer():
        result.errors.append(f"{field_name} must be a whole number")
    if minimum is not None and number < minimum:
        result.errors.append(f"{field_name} must be at least {minimum:g}")
    if maximum is not None and number > maximum:
        result.errors.append(f"{field_name} must be no more than {maximum:g}")
    return result


def validate_date(value: Any, *, field_name: str = "Date", required: bool = False) -> ValidationResult:
    if _blank(value):
        return ValidationResult([f"{field_name} is required"] if required else [])
    if parse_datetime(value) is None:
        return ValidationResult([f"{field_name} is not a valid date"])
    return ValidationResult()


def validate_select(
    value: Any, allowed: Iterable[str], *, required: bool = False, field_name: str = "Selection"
) -> ValidationResult:
    if _blank(value):
        return ValidationResult([f"{field_name} is required"] if required else [])
    if value not in tuple(allowed):
        return ValidationResult([f"{field_name} contains an invalid value"])
    return ValidationResult()


def validate_file(
    size: int | None,
    content_type: str | None,
    *,
    max_bytes: int | None = None,
    allowed_types: Iterable[str] | None = None,
    required: bool = False,
) -> ValidationResult:
    if size is None:
        return ValidationResult(["File is required"] if required else [])

    max_bytes = settings.upload_max_bytes if max_bytes is None else max_bytes
    allowed = list(settings.allowed_upload_types if allowed_types is None else allowed_types)
    result = ValidationResult()
    if size > max_bytes:
        result.errors.append(f"File size must be less than {max_bytes / (1024 * 1024):g}MB")
    if allowed and content_type not in allowed:
        result.errors.append(f"File type not allowed. Allowed types: {', '.join(allowed)}")
    return result


def validate_image(size: int | None, content_type: str | None, **kwargs) -> ValidationResult:
    return validate_file(size, content_type, allowed_types=ALLOWED_IMAGE_TYPES, **kwargs)


# ----------------------------------------------------------------------
# Forms
# ----------------------------------------------------------------------


def _contact_fields(data: dict, result: ValidationResult) -> None:
    if data.get("clientEmail"):
        result.extend(validate_email(data["clientEmail"]))
    if data.get("clientPhone"):
        result.extend(validate_phone(data["clientPhone"]))
    if data.get("websiteUrl"):
        result.extend(validate_url(data["websiteUrl"]))


def validate_lead_form(data: dict, *, partial: bool = False) -> ValidationResult:
    """Lead create (or, with ``partial``, update) rules. Status is never defaulted."""
    result = ValidationResult()
    if not partial or "companyName" in data:
        result.extend(validate_required(data.get("companyName"), "Company name"))
    if not partial or "clientName" in data:
        result.extend(validate_required(data.get("clientName"), "Client name"))
    if not partial or "status" in data:
        result.extend(
            validate_select(data.get("status"), LEAD_STATUSES, required=True, field_name="Status")
        )
    _contact_fields(data, result)
    return result


def validate_project_form(data: dict, *, partial: bool = False) -> ValidationResult:
    """Project rules; out-of-range progress is clamped later, not rejected."""
    result = ValidationResult()
    if not partial or "companyName" in data:
        result.extend(validate_required(data.get("companyName"), "Company name"))
    if data.get("status"):
        result.extend(validate_select(data["status"], PROJECT_STATUSES, field_name="Status"))
    if data.get("tier"):
        result.extend(
            validate_select(
                str(data["tier"]).lower(), TIERS + tuple(LEGACY_TIER_MAP), field_name="Tier"
            )
        )
    if data.get("progress") is not None:
        result.extend(validate_number(data["progress"], field_name="Progress"))
    _contact_fields(data, result)
    return result


def validate_ticket_form(data: dict) -> ValidationResult:
    result = ValidationResult()
    result.extend(validate_required(data.get("title"), "Title"))
    result.extend(validate_required(data.get("description"), "Description"))
    result.extend(validate_required(data.get("projectId"), "Project"))
    if data.get("urgency"):
        result.extend(validate_select(data["urgency"], TICKET_URGENCIES, field_name="Urgency"))
    if data.get("category"):
        result.extend(validate_select(data["category"], TICKET_CATEGORIES, field_name="Category"))
    if data.get("status"):
        result.extend(validate_select(data["status"], TICKET_STATUSES, field_name="Status"))
    return result


def validate_ticket_update(updates: dict) -> ValidationResult:
    """Changes to an existing ticket: editable fields only, each enum checked."""
    result = ValidationResult()
    for name in updates:
        if name not in TICKET_EDITABLE_FIELDS:
            result.errors.append(f"{name} cannot be changed")
    for name, allowed, label in (
        ("status", TICKET_STATUSES, "Status"),
        ("priority", TICKET_PRIORITIES, "Priority"),
        ("urgency", TICKET_URGENCIES, "Urgency"),
        ("category", TICKET_CATEGORIES, "Category"),
    ):
        if name in updates:
            result.extend(validate_select(updates[name], allowed, required=True, field_name=label))
    return result


def validate_message(text: Any) -> ValidationResult:
    result = validate_required(text, "Message")
    if result.valid:
        result.extend(
            validate_length(text, max_length=MAX_MESSAGE_LENGTH, field_name="Message")
        )
    return result


def validate_client_form(data: dict) -> ValidationResult:
    result = ValidationResult()
    result.extend(validate_email(data.get("email")))
    result.extend(validate_required(data.get("displayName"), "Display name"))
    if "password" in data:
        result.extend(
            validate_password(data.get("password"), min_length=settings.identity_min_password_length)
        )
    return result


def validate_milestone_form(data: dict) -> ValidationResult:
    result = ValidationResult()
    result.extend(validate_required(data.get("title"), "Title"))
    if data.get("date"):
        result.extend(validate_date(data["date"], field_name="Date"))
    if data.get("status"):
        result.extend(validate_select(data["status"], MILESTONE_STATUSES, field_name="Status"))
    return result


def validate_invoice_form(data: dict) -> ValidationResult:
    result = ValidationResult()
    result.extend(validate_required(data.get("number"), "Invoice number"))
    result.extend(validate_number(data.get("amount"), minimum=0, field_name="Amount"))
    result.extend(validate_date(data.get("dueDate"), field_name="Due date", required=True))
    if data.get("status"):
        result.extend(validate_select(data["status"], INVOICE_STATUSES, field_name="Status"))
    return result
