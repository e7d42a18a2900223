"""Fetch a page and scrape the handful of fields a preview shows.

The field fallbacks follow Synapse's preview_html.py: OpenGraph first, then
the Twitter card, then whatever the document itself offers.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import re
from dataclasses import dataclass
from typing import Callable

import aiohttp
from aiohttp import hdrs
from aiohttp.helpers import parse_mimetype
from bs4 import BeautifulSoup
from bs4.builder import ParserRejectedMarkup
from yarl import URL

from .config import PreviewerConfig
from .extract_url import validate_url

log = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024

# Browsers treat these labels as windows-1252, which is a superset.
_WHATWG_CHARSET_ALIASES = {"ascii": "cp1252", "iso8859-1": "cp1252"}


@dataclass(frozen=True)
class PreviewMetadata:
    title: str = ""
    site_name: str = ""
    description: str = ""
    canonical_url: str = ""


# ── field extractors ─────────────────────────────────────────────────

Extractor = Callable[[BeautifulSoup], str]


def meta_content(selector: str) -> Extractor:
    def extract(dom: BeautifulSoup) -> str:
        for element in dom.select(selector):
            content = element.get("content")
            if isinstance(content, str) and content:
                return content
        return ""

    return extract


def link_href(selector: str) -> Extractor:
    def extract(dom: BeautifulSoup) -> str:
        for element in dom.select(selector):
            href = element.get("href")
            if isinstance(href, str) and href:
                return href
        return ""

    return extract


def text_content(selector: str) -> Extractor:
    def extract(dom: BeautifulSoup) -> str:
        for element in dom.select(selector):
            text = element.get_text()
            if text.strip():
                return text
        return ""

    return extract


TITLE_EXTRACTORS: list[Extractor] = [
    meta_content('meta[property="og:title" i]'),
    meta_content('meta[property="twitter:title" i], meta[name="twitter:title" i]'),
    text_content("title"),
    text_content("h1"),
    text_content("h2"),
    text_content("h3"),
]
DESCRIPTION_EXTRACTORS: list[Extractor] = [
    meta_content('meta[property="og:description" i]'),
    meta_content(
        'meta[property="twitter:description" i], meta[name="twitter:description" i]'
    ),
    meta_content('meta[name="description" i]'),
]
SITE_NAME_EXTRACTORS: list[Extractor] = [
    meta_content('meta[property="og:site_name" i]'),
]
CANONICAL_URL_EXTRACTORS: list[Extractor] = [
    meta_content('meta[property="og:url" i]'),
    link_href('link[rel~="canonical" i]'),
]


def first_match(extractors: list[Extractor], dom: BeautifulSoup) -> str:
    for extract in extractors:
        value = extract(dom)
        if value:
            return value
    return ""


# ── charset resolution ───────────────────────────────────────────────


def lookup_charset(label: str | None) -> str | None:
    """Map a charset label to a Python codec name, ``None`` if unknown."""
    if not label:
        return None
    try:
        info = codecs.lookup(label.strip().strip("\"'"))
    except LookupError:
        return None
    # base64, zlib, rot13 and friends are codecs but not charsets.
    if not info._is_text_encoding:
        return None
    name = info.name
    return _WHATWG_CHARSET_ALIASES.get(name, name)


def _charset_param(content_type: str | None) -> str | None:
    if not content_type:
        return None
    return parse_mimetype(content_type).parameters.get("charset")


def resolve_charset(header_charset: str | None, dom: BeautifulSoup) -> str:
    """Pick the document charset.

    Priority: the HTTP ``Content-Type`` parameter, ``<meta charset>``,
    ``<meta http-equiv="Content-Type">``, then UTF-8. Unknown labels are
    skipped.
    """
    charset = lookup_charset(header_charset)
    if charset:
        return charset
    for element in dom.select("meta[charset]"):
        charset = lookup_charset(element.get("charset"))
        if charset:
            return charset
    for element in dom.select('meta[http-equiv="content-type" i]'):
        content = element.get("content")
        charset = lookup_charset(_charset_param(content if isinstance(content, str) else None))
        if charset:
            return charset
    return "utf-8"


def parse_document(body: bytes, header_charset: str | None) -> BeautifulSoup:
    # Parse as UTF-8 first, just to find the declared charset.
    dom = BeautifulSoup(body.decode("utf-8", errors="replace"), "html.parser")
    charset = resolve_charset(header_charset, dom)
    if charset != "utf-8":
        try:
            text = body.decode(charset, errors="replace")
        except (LookupError, UnicodeError) as exc:
            log.warning("Cannot decode document as %s, keeping UTF-8: %s", charset, exc)
        else:
            dom = BeautifulSoup(text, "html.parser")
    return dom


def parse_metadata(body: bytes, header_charset: str | None, url: str) -> PreviewMetadata:
    dom = parse_document(body, header_charset)
    return PreviewMetadata(
        title=first_match(TITLE_EXTRACTORS, dom),
        site_name=first_match(SITE_NAME_EXTRACTORS, dom),
        description=first_match(DESCRIPTION_EXTRACTORS, dom),
        canonical_url=first_match(CANONICAL_URL_EXTRACTORS, dom) or url,
    )


# ── fetcher ──────────────────────────────────────────────────────────


class PreviewFetcher:
    """Shared HTTP client plus the URL rewrite rules."""

    def __init__(
        self, config: PreviewerConfig, session: aiohttp.ClientSession | None = None
    ) -> None:
        self.config = config
        self._session = session

    @property
    def session(self) -> aiohttp.ClientSession:
        # Created lazily so construction does not need a running loop.
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={
                    hdrs.USER_AGENT: self.config.user_agent,
                    hdrs.ACCEPT_LANGUAGE: self.config.accept_language,
                },
                timeout=aiohttp.ClientTimeout(total=self.config.timeout),
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()

    def rewrite(self, url: URL) -> URL | None:
        """Apply the first rewrite rule that changes *url*.

        Returns ``None`` if the rewritten string is no longer a usable URL.
        """
        original = str(url)
        for pattern, replacement in self.config.rewrite_url:
            try:
                result = pattern.sub(replacement, original)
            except (re.error, IndexError) as exc:
                log.error("URL rewrite %s failed: %s", pattern.pattern, exc)
                return None
            if result == original:
                continue
            rewritten = validate_url(result)
            if rewritten is None:
                log.error("Failed to parse the URL after rewrite with %s", pattern.pattern)
                return None
            log.debug("URL rewrite: %s => %s => %s", original, pattern.pattern, rewritten)
            return rewritten
        return url

    async def fetch(self, url: URL) -> PreviewMetadata | None:
        """GET *url* and scrape it.

        Returns ``None`` only when the request itself failed. Hitting the
        size cap or the timeout while reading the body is a soft stop: the
        bytes received so far are still scraped.
        """
        log.info("Fetching URL preview for: %s", url)
        body = bytearray()
        try:
            async with self.session.get(url, proxy=self.config.proxy or None) as response:
                if not 200 <= response.status < 300:
                    log.error(
                        "Failed to fetch URL preview for %s: HTTP %d %s",
                        url,
                        response.status,
                        response.reason,
                    )
                    return None
                header_charset = response.charset
                try:
                    async for chunk in response.content.iter_chunked(CHUNK_SIZE):
                        body += chunk
                        if len(body) >= self.config.max_size:
                            # Drop the connection instead of draining the rest.
                            response.close()
                            break
                except asyncio.TimeoutError:
                    log.error("Failed to fetch URL preview for %s: Read timed out.", url)
                except aiohttp.ClientError as exc:
                    log.error("Failed to fetch URL preview for %s: %s", url, exc)
        except asyncio.TimeoutError:
            log.error("Failed to fetch URL preview for %s: Request timed out.", url)
            return None
        except aiohttp.ClientError as exc:
            log.error("Failed to fetch URL preview for %s: %s", url, exc)
            return None

        del body[self.config.max_size :]
        try:
            return parse_metadata(bytes(body), header_charset, str(url))
        except ParserRejectedMarkup as exc:
            log.error("Failed to parse URL preview for %s: %s", url, exc)
            return None
