"""Escaping, length limits and the notice bodies the bot sends.

Every notice is produced twice, as a plain ``body`` and an HTML
``formatted_body``; both are built side by side from the same fields so
they never drift apart.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from yarl import URL

from .common import MAX_RESPONSE_TEXT_BYTES
from .config import FieldLimits
from .extract_url import validate_url
from .fetcher import PreviewMetadata

ELLIPSIS = "…"

# https://developer.mozilla.org/en-US/docs/Glossary/Whitespace
_CONSECUTIVE_WHITESPACES = re.compile("[\t\n\x0c\r ]+")


@dataclass(frozen=True)
class NoticeBody:
    text: str
    html: str


# ── escaping ─────────────────────────────────────────────────────────


def escape_attr(s: str) -> str:
    """Escape a value for a double-quoted HTML attribute."""
    return s.replace("&", "&amp;").replace('"', "&quot;")


def escape_text(s: str) -> str:
    """Escape a value for HTML text content."""
    return s.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def collapse_whitespace(s: str) -> str:
    return _CONSECUTIVE_WHITESPACES.sub(" ", s).strip()


# ── length limits ────────────────────────────────────────────────────


def length_in_chars(s: str, max_chars: int) -> str:
    """Truncate *s* to at most *max_chars* code points.

    A truncated string ends in exactly one ellipsis, which counts towards
    the budget.
    """
    if not s:
        return s
    if max_chars <= 0:
        return ELLIPSIS
    if len(s) <= max_chars:
        return s
    return s[: max_chars - 1].rstrip(ELLIPSIS) + ELLIPSIS


def length_in_bytes(s: str, max_bytes: int) -> str:
    """Truncate *s* to at most *max_bytes* of UTF-8 without splitting a code point."""
    encoded = s.encode("utf-8")
    if len(encoded) <= max_bytes:
        return s
    budget = max(max_bytes - len(ELLIPSIS.encode("utf-8")), 0)
    # Dropping the partial sequence at the cut keeps whole code points only.
    head = encoded[:budget].decode("utf-8", errors="ignore")
    return head.rstrip(ELLIPSIS) + ELLIPSIS


def limit_field(s: str, max_chars: int) -> str:
    return length_in_bytes(
        length_in_chars(collapse_whitespace(s), max_chars), MAX_RESPONSE_TEXT_BYTES
    )


# ── notice bodies ────────────────────────────────────────────────────


def _headline(backref: str, icon: str, rest: str) -> str:
    return (
        '<blockquote><div class="url-preview-headline">'
        f'<a class="url-preview-backref" href="{escape_attr(backref)}">{icon}</a> '
        f"{rest}"
    )


def render_loading(backref: str) -> NoticeBody:
    """The placeholder sent before the page has been fetched."""
    html = _headline(
        backref,
        "\u23f3\ufe0f",
        '<span class="url-preview-loading"><em>Loading…</em></span></div></blockquote>',
    )
    return NoticeBody("(Loading…)", html)


def render_unavailable(backref: str) -> NoticeBody:
    html = _headline(
        backref,
        "\u26a0\ufe0f",
        '<span class="url-preview-error"><em>URL preview is unavailable.</em></span>'
        "</div></blockquote>",
    )
    return NoticeBody("(URL preview is unavailable.)", html)


def render_preview(
    backref: str,
    metadata: PreviewMetadata,
    fallback_url: URL,
    limits: FieldLimits | None = None,
) -> NoticeBody:
    """Render *metadata* as a preview notice.

    *fallback_url* is the URL that was actually fetched; it is linked when
    the page's canonical URL is missing or unusable.
    """
    limits = limits or FieldLimits()
    title = limit_field(metadata.title, limits.title)
    site_name = limit_field(metadata.site_name, limits.site_name)
    description = limit_field(metadata.description, limits.description)
    canonical_url = validate_url(metadata.canonical_url) or fallback_url
    href = escape_attr(str(canonical_url))

    if title:
        html = _headline(
            backref,
            "\U0001f517\ufe0f",
            f'<strong><a class="url-preview-title" href="{href}">'
            f"{escape_text(title)}</a></strong>",
        )
        text = title
    else:
        html = _headline(
            backref,
            "\U0001f517\ufe0f",
            f'<em><a class="url-preview-empty-title" href="{href}">No title</a></em>',
        )
        text = "(No title)"

    if site_name:
        text += " – " + site_name
        html += (
            ' – <span class="url-preview-site-name">'
            f"{escape_text(site_name)}</span>"
        )
    html += "</div>"
    if description:
        text += "\n> " + description
        html += (
            '<div class="url-preview-description">'
            f"{escape_text(description)}</div>"
        )
    html += "</blockquote>"
    return NoticeBody(text, html)
