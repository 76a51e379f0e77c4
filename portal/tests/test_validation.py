"""Field and form validation rules."""

from __future__ import annotations

from portal.constants import normalize_tier, status_label, tier_name, tier_order
from portal.validation import (
    validate_client_form,
    validate_email,
    validate_file,
    validate_image,
    validate_invoice_form,
    validate_lead_form,
    validate_message,
    validate_number,
    validate_password,
    validate_project_form,
    validate_ticket_form,
    validate_ticket_update,
)


def test_email_rules():
    assert validate_email("a@example.com").valid
    assert validate_email("").first_error == "Email is required"
    assert validate_email("nope").first_error == "Please enter a valid email address"


def test_password_length():
    assert validate_password("12345").first_error == "Password must be at least 6 characters"
    assert validate_password("123456").valid


def test_lead_form_requires_status():
    result = validate_lead_form({"companyName": "Acme", "clientName": "Al"})
    assert not result.valid
    assert result.first_error == "Status is required"


def test_lead_form_rejects_unknown_status():
    result = validate_lead_form({"companyName": "Acme", "clientName": "Al", "status": "won"})
    assert result.first_error == "Status contains an invalid value"


def test_lead_form_partial_only_checks_given_fields():
    assert validate_lead_form({"notes": "x"}, partial=True).valid
    assert not validate_lead_form({"companyName": ""}, partial=True).valid


def test_lead_form_checks_contact_fields():
    result = validate_lead_form(
        {"companyName": "Acme", "clientName": "Al", "status": "noted", "clientEmail": "bad"}
    )
    assert result.first_error == "Please enter a valid email address"


def test_project_form_accepts_legacy_tier_and_out_of_range_progress():
    assert validate_project_form({"companyName": "Acme", "tier": "Growth", "progress": 150}).valid
    assert not validate_project_form({"companyName": "Acme", "tier": "platinum"}).valid


def test_ticket_form():
    assert validate_ticket_form({"title": "T", "description": "D", "projectId": "p1"}).valid
    result = validate_ticket_form({"title": "T", "description": "D", "projectId": "p1", "urgency": "now"})
    assert result.first_error == "Urgency contains an invalid value"


def test_ticket_update_rules():
    assert validate_ticket_update({"status": "resolved", "assignedTo": None, "adminNotes": "x"}).valid
    assert validate_ticket_update({"priority": ""}).first_error == "Priority is required"
    result = validate_ticket_update({"clientId": "u2", "category": "other"})
    assert result.errors == ["clientId cannot be changed"]


def test_message_limits():
    assert validate_message("   ").first_error == "Message is required"
    assert not validate_message("x" * 5001).valid


def test_client_form():
    assert validate_client_form({"email": "c@example.com", "displayName": "C", "password": "secret1"}).valid
    assert validate_client_form({"email": "c@example.com", "displayName": ""}).first_error == (
        "Display name is required"
    )


def test_invoice_form():
    assert validate_invoice_form({"number": "1", "amount": "10.5", "dueDate": "2026-01-01"}).valid
    result = validate_invoice_form({"number": "1", "amount": "-1", "dueDate": "2026-01-01"})
    assert result.first_error == "Amount must be at least 0"


def test_number_rules():
    assert validate_number(True).first_error == "This field must be a valid number"
    assert validate_number("2.5", integer=True).first_error == "This field must be a whole number"


def test_file_rules():
    assert validate_file(None, None, required=True).first_error == "File is required"
    assert not validate_file(20, "application/x-msdownload", max_bytes=100).valid
    assert validate_file(20, "application/pdf", max_bytes=100).valid
    assert validate_file(200, "application/pdf", max_bytes=100).first_error.startswith("File size")
    assert not validate_image(20, "application/pdf", max_bytes=100).valid


def test_tier_lookups_follow_legacy_names():
    assert normalize_tier(" Premium ") == "watchfuleye"
    assert tier_name("professional") == "Farmer"
    assert tier_name("custom") == "custom"
    assert tier_order("watchfuleye") < tier_order("host") < tier_order(None)


def test_status_labels():
    assert status_label("demo-sent") == "Demo Sent"
    assert status_label("in-progress") == "In Progress"
    assert status_label("mystery") == "mystery"
