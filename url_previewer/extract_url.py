"""Find previewable URLs in Matrix message bodies.

We follow the behavior of Element when picking URLs out of text:

1. A URL contains no whitespace.
2. A URL contains balanced amounts of "()", "<>", "[]", "{}".

So ``(see http://a.b/x)`` yields ``http://a.b/x`` while ``http://a.b/c(d)``
keeps its inner parentheses. Angle brackets are just another balanced pair;
there is no special ``<http://...>`` literal mode.
"""

from __future__ import annotations

import itertools
import re
from typing import Iterable, Iterator

from bs4 import BeautifulSoup
from bs4.element import NavigableString, PreformattedString, Tag
from yarl import URL

from .common import MAX_DOM_NODES, MENTION_LINK_DOMAIN, SAFE_URL_LENGTH


# Quoted replies, literal code and struck-out text are not the sender's links.
SKIPPED_ELEMENTS = frozenset({"blockquote", "code", "del", "mx-reply", "pre"})

_OPENERS = {"(": ")", "<": ">", "[": "]", "{": "}"}
_CLOSERS = frozenset(_OPENERS.values())

_TOKEN_START = re.compile(r"https?:", re.IGNORECASE)
_SCHEME_SLASHES = re.compile(r"^(https?):[/\\]*", re.IGNORECASE)


class ExtractionLimitExceeded(RuntimeError):
    """The DOM walk visited more nodes than any Matrix message can contain."""


def validate_url(candidate: str) -> URL | None:
    """Return the candidate as a fragment-free http(s) URL, or ``None``."""
    candidate = candidate.strip()
    # Special schemes ignore the number of slashes, as browsers do.
    candidate = _SCHEME_SLASHES.sub(r"\1://", candidate, count=1)
    try:
        url = URL(candidate)
        if len(str(url)) > SAFE_URL_LENGTH:
            return None
    except (ValueError, TypeError):
        return None
    if url.scheme.lower() not in ("http", "https"):
        return None
    host = url.raw_host
    if not host:
        return None
    if host.rstrip(".").lower() == MENTION_LINK_DOMAIN:
        return None
    # Make sure the `#fragment` part is kept private. Reparsing drops an
    # explicit default port that str() would hide anyway.
    return URL(str(url.with_fragment(None)))


def unique_urls(urls: Iterable[URL], limit: int | None = None) -> list[URL]:
    """Dedup *urls* keeping first occurrences, stopping after *limit* entries."""
    seen: dict[URL, None] = {}
    for url in urls:
        if limit is not None and len(seen) >= limit:
            break
        seen.setdefault(url, None)
    return list(seen)


def extract_urls_from_text(text: str) -> Iterator[URL]:
    """Lazily yield every valid URL in *text*, left to right."""
    pos = 0
    while True:
        match = _TOKEN_START.search(text, pos)
        if match is None:
            return
        end = _scan_segments(text, match.end())
        if end is None:
            pos = match.start() + 1
            continue
        url = validate_url(text[match.start() : end])
        if url is not None:
            yield url
        pos = end


def _scan_segments(text: str, pos: int) -> int | None:
    """Consume ``/*`` then one or more balanced segments starting at *pos*.

    Returns the end offset, or ``None`` if no segment follows the slashes.
    Brackets are tracked on an explicit stack, so arbitrarily deep nesting
    costs no interpreter recursion.
    """
    n = len(text)
    while pos < n and text[pos] == "/":
        pos += 1
    start = pos
    pending: list[str] = []
    while pos < n:
        ch = text[pos]
        closer = _OPENERS.get(ch)
        if closer is not None:
            pending.append(closer)
            pos += 1
            continue
        if ch in _CLOSERS:
            # Groups left open by a foreign closer simply end here.
            while pending and pending[-1] != ch:
                pending.pop()
            if not pending:
                break
            pending.pop()
            pos += 1
            continue
        if ch.isspace():
            break
        pos += 1
    return pos if pos > start else None


def extract_urls_from_plain_body(body: str, limit: int | None = None) -> list[URL]:
    """Extract URLs from a plain ``body``, ignoring the leading reply fallback."""
    lines = itertools.dropwhile(lambda line: line.startswith("> "), body.splitlines())
    return unique_urls(
        (url for line in lines for url in extract_urls_from_text(line)), limit
    )


def extract_urls_from_html(html: str, limit: int | None = None) -> list[URL]:
    """Extract URLs from *both* ``<a href="URL">`` and the text contents.

    Text contents are processed by :func:`extract_urls_from_text`. The tree
    is walked without recursion, keeping a stack of nodes to return to.
    """
    dom = BeautifulSoup(html, "html.parser")
    links: list[URL] = []
    stack: list[Tag] = []
    node = dom
    for _ in range(MAX_DOM_NODES):
        skip_children = False
        if isinstance(node, Tag):
            if node.name == "a":
                href = node.get("href")
                if isinstance(href, str):
                    skip_children = True
                    url = validate_url(href)
                    if url is not None:
                        links.append(url)
            elif node.name in SKIPPED_ELEMENTS:
                skip_children = True
        elif isinstance(node, NavigableString) and not isinstance(node, PreformattedString):
            links.extend(extract_urls_from_text(str(node)))

        if not skip_children and isinstance(node, Tag) and node.contents:
            stack.append(node)
            node = node.contents[0]
            continue
        while True:
            sibling = node.next_sibling
            if sibling is not None:
                node = sibling
                break
            if not stack:
                return unique_urls(links, limit)
            node = stack.pop()
    raise ExtractionLimitExceeded(
        f"HTML extractor didn't stop after visiting {MAX_DOM_NODES} DOM nodes"
    )
