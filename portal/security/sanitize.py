"""HTML escaping and allow-list sanitisation for user-supplied text."""

from __future__ import annotations

import html as html_lib
import re
from html.parser import HTMLParser
from typing import Any, Iterable
from urllib.parse import urlsplit

HTML_ENTITIES = {
    "&": "&amp;",
    "<": "&lt;",
    ">": "&gt;",
    '"': "&quot;",
    "'": "&#x27;",
    "/": "&#x2F;",
    "`": "&#x60;",
    "=": "&#x3D;",
}
_ESCAPE_TABLE = str.maketrans(HTML_ENTITIES)

ALLOWED_TAGS = frozenset({
    "p", "br", "strong", "b", "em", "i", "u", "s", "strike",
    "h1", "h2", "h3", "h4", "h5", "h6",
    "ul", "ol", "li",
    "blockquote", "pre", "code",
    "a", "img",
    "table", "thead", "tbody", "tr", "th", "td",
    "div", "span",
})
ALLOWED_ATTRIBUTES = {
    "a": frozenset({"href", "title", "target", "rel"}),
    "img": frozenset({"src", "alt", "title", "width", "height"}),
    "*": frozenset({"class", "id"}),
}
ALLOWED_URL_SCHEMES = frozenset({"http", "https", "mailto", "tel"})
URL_ATTRIBUTES = frozenset({"href", "src", "action"})
VOID_TAGS = frozenset({"br", "img"})
DROP_CONTENT_TAGS = frozenset({"script", "style", "iframe", "object", "noscript", "template"})

# Fields that hold rich text and go through sanitize_html instead of escaping.
RICH_TEXT_FIELDS = ("notes", "content")

_DANGEROUS_SCHEME_RE = re.compile(r"^\s*(javascript|data|vbscript):", re.IGNORECASE)
_FILENAME_BAD_CHARS_RE = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


def escape_html(value: Any) -> str:
    """Escape ``& < > " ' / ` =`` for safe display. Non-strings become ''."""
    if not isinstance(value, str) or not value:
        return ""
    return value.translate(_ESCAPE_TABLE)


def sanitize_url(url: Any) -> str:
    """Return the URL if its scheme is allowed (or it is relative), else ''."""
    if not isinstance(url, str) or not url.strip():
        return ""
    trimmed = url.strip()
    if _DANGEROUS_SCHEME_RE.match(trimmed):
        return ""
    if trimmed.startswith(("/", "#", "?")):
        return trimmed
    scheme = urlsplit(trimmed).scheme.lower()
    if not scheme:
        return trimmed if ":" not in trimmed else ""
    return trimmed if scheme in ALLOWED_URL_SCHEMES else ""


def _attribute_allowed(tag: str, name: str) -> bool:
    return name in ALLOWED_ATTRIBUTES["*"] or name in ALLOWED_ATTRIBUTES.get(tag, ())


class _AllowListParser(HTMLParser):
    def __init__(self):
        super().__init__(convert_charrefs=True)
        self.out: list[str] = []
        self.text: list[str] = []
        self._open: list[str] = []
        self._skip_depth = 0

    def handle_starttag(self, tag, attrs):
        tag = tag.lower()
        if tag in DROP_CONTENT_TAGS:
            self._skip_depth += 1
            return
        if self._skip_depth or tag not in ALLOWED_TAGS:
            return

        clean: dict[str, str] = {}
        for name, value in attrs:
            name = (name or "").lower()
            if name.startswith("on") or not _attribute_allowed(tag, name):
                continue
            value = value or ""
            if name in URL_ATTRIBUTES:
                value = sanitize_url(value)
            if value:
                clean[name] = value

        if tag == "a" and clean.get("href", "").startswith(("http://", "https://")):
            clean["rel"] = "noopener noreferrer"
            clean.setdefault("target", "_blank")

        rendered = "".join(f' {k}="{html_lib.escape(v, quote=True)}"' for k, v in clean.items())
        self.out.append(f"<{tag}{rendered}>")
        if tag not in VOID_TAGS:
            self._open.append(tag)

    def handle_startendtag(self, tag, attrs):
        self.handle_starttag(tag, attrs)
        tag = tag.lower()
        if tag not in VOID_TAGS and self._open and self._open[-1] == tag:
            self._open.pop()
            self.out.append(f"</{tag}>")

    def handle_endtag(self, tag):
        tag = tag.lower()
        if tag in DROP_CONTENT_TAGS:
            self._skip_depth = max(0, self._skip_depth - 1)
            return
        if self._skip_depth or tag not in self._open:
            return
        while self._open:
            current = self._open.pop()
            self.out.append(f"</{current}>")
            if current == tag:
                break

    def handle_data(self, data):
        if self._skip_depth:
            return
        self.text.append(data)
        self.out.append(html_lib.escape(data, quote=False))

    def close(self):
        super().close()
        while self._open:
            self.out.append(f"</{self._open.pop()}>")


def sanitize_html(value: Any) -> str:
    """Keep allow-listed tags and attributes; drop scripts and event handlers."""
    if not isinstance(value, str) or not value:
        return ""
    parser = _AllowListParser()
    parser.feed(value)
    parser.close()
    return "".join(parser.out)


def strip_html(value: Any) -> str:
    """Plain text content of an HTML fragment."""
    if not isinstance(value, str) or not value:
        return ""
    parser = _AllowListParser()
    parser.feed(value)
    parser.close()
    return "".join(parser.text)


def sanitize_document(data: Any, html_fields: Iterable[str] = ()) -> Any:
    """Recursively escape every string; ``html_fields`` get allow-list sanitising.

    Non-string scalars (numbers, booleans, None, datetimes) and write sentinels
    pass through untouched.
    """
    html_fields = frozenset(html_fields)
    return _sanitize(data, html_fields)


def _sanitize(value: Any, html_fields: frozenset[str], key: str | None = None) -> Any:
    if isinstance(value, str):
        return sanitize_html(value) if key in html_fields else escape_html(value)
    if isinstance(value, dict):
        return {k: _sanitize(v, html_fields, k) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item, html_fields, key) for item in value]
    return value


def sanitize_filename(filename: Any) -> str:
    if not isinstance(filename, str) or not filename:
        return "unnamed"
    cleaned = _FILENAME_BAD_CHARS_RE.sub("", filename).lstrip(".").rstrip(".").strip()
    return cleaned or "unnamed"
