"""Escaping and allow-list sanitising."""

from __future__ import annotations

from portal.backend.documents import SERVER_TIMESTAMP
from portal.security.sanitize import (
    escape_html,
    sanitize_document,
    sanitize_filename,
    sanitize_html,
    sanitize_url,
    strip_html,
)


def test_escape_script_tag():
    assert escape_html("<script>") == "&lt;script&gt;"
    assert escape_html('a="b"/`') == "a&#x3D;&quot;b&quot;&#x2F;&#x60;"


def test_escape_non_string_is_empty():
    assert escape_html(None) == ""
    assert escape_html(42) == ""


def test_sanitize_document_escapes_nested_strings_and_keeps_sentinels():
    doc = sanitize_document(
        {
            "companyName": "<b>Acme</b>",
            "progress": 40,
            "tags": ["<i>x</i>"],
            "milestones": [{"title": "<script>"}],
            "createdAt": SERVER_TIMESTAMP,
            "logo": None,
        }
    )
    assert doc["companyName"] == "&lt;b&gt;Acme&lt;&#x2F;b&gt;"
    assert doc["progress"] == 40
    assert doc["tags"] == ["&lt;i&gt;x&lt;&#x2F;i&gt;"]
    assert doc["milestones"][0]["title"] == "&lt;script&gt;"
    assert doc["createdAt"] is SERVER_TIMESTAMP
    assert doc["logo"] is None


def test_rich_text_fields_keep_allowed_markup():
    doc = sanitize_document({"notes": "<p>Hi <b>there</b></p><script>alert(1)</script>"}, ["notes"])
    assert doc["notes"] == "<p>Hi <b>there</b></p>"


def test_sanitize_html_drops_event_handlers_and_bad_urls():
    out = sanitize_html('<a href="javascript:alert(1)" onclick="x()">link</a><img src="https://x.test/a.png" onerror="y()">')
    assert "onclick" not in out
    assert "javascript" not in out
    assert "onerror" not in out
    assert '<img src="https://x.test/a.png">' in out


def test_external_links_get_safe_rel():
    out = sanitize_html('<a href="https://example.com">x</a>')
    assert 'rel="noopener noreferrer"' in out
    assert 'target="_blank"' in out


def test_unclosed_tags_are_closed():
    assert sanitize_html("<ul><li>one") == "<ul><li>one</li></ul>"


def test_strip_html():
    assert strip_html("<p>Hello <em>world</em></p><style>p{}</style>") == "Hello world"


def test_sanitize_url():
    assert sanitize_url("https://example.com/x") == "https://example.com/x"
    assert sanitize_url("/relative/path") == "/relative/path"
    assert sanitize_url("javascript:alert(1)") == ""
    assert sanitize_url("ftp://example.com") == ""


def test_sanitize_filename():
    assert sanitize_filename("../evil<>.pdf") == "evil.pdf"
    assert sanitize_filename("...") == "unnamed"
    assert sanitize_filename(None) == "unnamed"
