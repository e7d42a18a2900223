"""Typed view over the merged TOML configuration.

Zero or empty values fall back to the defaults below, so a user config only
needs to mention what it changes.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field

from .common import MAX_URL_COUNTS_PER_MESSAGE
from .utils import section, sqlite_url

DEFAULT_ACCEPT_LANGUAGE = "en-US,en;q=0.9"
DEFAULT_MAX_SIZE = 10 * 1024 * 1024
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (compatible; Matrix-URL-Previewer-Bot; "
    "like Discordbot, TelegramBot, Twitterbot)"
)
DEFAULT_CACHE_ENTRIES = 1024
DEFAULT_CACHE_TTL_SECONDS = 3600.0
DEFAULT_FIELD_MAX_CHARS = 1024


class ConfigError(ValueError):
    """Raised at startup when the configuration cannot be used."""


@dataclass(frozen=True)
class FieldLimits:
    title: int = DEFAULT_FIELD_MAX_CHARS
    site_name: int = DEFAULT_FIELD_MAX_CHARS
    description: int = DEFAULT_FIELD_MAX_CHARS


@dataclass(frozen=True)
class PreviewerConfig:
    accept_language: str = DEFAULT_ACCEPT_LANGUAGE
    proxy: str = ""
    max_size: int = DEFAULT_MAX_SIZE
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    user_agent: str = DEFAULT_USER_AGENT
    rewrite_url: list[tuple[re.Pattern[str], str]] = field(default_factory=list)
    cache_entries: int = DEFAULT_CACHE_ENTRIES
    cache_ttl: float = DEFAULT_CACHE_TTL_SECONDS
    max_urls_per_message: int = MAX_URL_COUNTS_PER_MESSAGE
    limits: FieldLimits = field(default_factory=FieldLimits)
    database_url: str = ""

    @classmethod
    def from_dict(cls, cfg: dict, store_path: str = ".") -> PreviewerConfig:
        crawler = section(cfg, "crawler")
        cache = section(cfg, "cache")
        preview = section(cfg, "preview")
        database = section(cfg, "database")

        database_url = str(database.get("url") or "")
        if not database_url:
            database_url = sqlite_url(os.path.join(store_path, "url-previewer.sqlite3"))

        return cls(
            accept_language=str(crawler.get("accept_language") or DEFAULT_ACCEPT_LANGUAGE),
            proxy=str(crawler.get("proxy") or ""),
            max_size=_positive_int(crawler, "max_size", DEFAULT_MAX_SIZE),
            timeout=_positive_float(crawler, "timeout_seconds", DEFAULT_TIMEOUT_SECONDS),
            user_agent=str(crawler.get("user_agent") or DEFAULT_USER_AGENT),
            rewrite_url=compile_rewrite_rules(crawler.get("rewrite_url") or []),
            cache_entries=_positive_int(cache, "entries", DEFAULT_CACHE_ENTRIES),
            cache_ttl=_positive_float(cache, "ttl_seconds", DEFAULT_CACHE_TTL_SECONDS),
            max_urls_per_message=_positive_int(
                preview, "max_urls_per_message", MAX_URL_COUNTS_PER_MESSAGE
            ),
            limits=FieldLimits(
                title=_positive_int(preview, "title_max_chars", DEFAULT_FIELD_MAX_CHARS),
                site_name=_positive_int(
                    preview, "site_name_max_chars", DEFAULT_FIELD_MAX_CHARS
                ),
                description=_positive_int(
                    preview, "description_max_chars", DEFAULT_FIELD_MAX_CHARS
                ),
            ),
            database_url=database_url,
        )


def compile_rewrite_rules(rules: list) -> list[tuple[re.Pattern[str], str]]:
    """Compile ``[[pattern, replacement], ...]`` into regex pairs."""
    compiled: list[tuple[re.Pattern[str], str]] = []
    for rule in rules:
        if not isinstance(rule, (list, tuple)) or len(rule) != 2:
            raise ConfigError(f"rewrite_url entries must be [pattern, replacement]: {rule!r}")
        pattern, replacement = rule
        try:
            compiled.append((re.compile(str(pattern)), str(replacement)))
        except re.error as exc:
            raise ConfigError(f"Invalid rewrite_url pattern {pattern!r}: {exc}") from exc
    return compiled


def _positive_int(cfg: dict, key: str, default: int) -> int:
    value = cfg.get(key)
    if value in (None, 0, ""):
        return default
    try:
        value = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be an integer, got {value!r}") from exc
    if value < 0:
        raise ConfigError(f"{key} must not be negative, got {value}")
    return value


def _positive_float(cfg: dict, key: str, default: float) -> float:
    value = cfg.get(key)
    if value in (None, 0, ""):
        return default
    try:
        value = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be a number, got {value!r}") from exc
    if value < 0:
        raise ConfigError(f"{key} must not be negative, got {value}")
    return value
