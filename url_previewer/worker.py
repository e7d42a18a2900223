"""Decide what to do with each source message and run the preview jobs.

A source message moves through ``unseen -> placeholder-sent -> resolved``
and never back. The linkage row is written right after the placeholder is
sent and before the preview job starts, so the event handler never waits
on a page fetch.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from mautrix.util.async_db import Database
from yarl import URL

from .cache import MetadataCache
from .config import PreviewerConfig
from .fetcher import PreviewFetcher, PreviewMetadata
from .render import NoticeBody, render_loading, render_preview, render_unavailable
from .store import LinkageStore, upgrade_table
from .tasks import create_task

log = logging.getLogger(__name__)


class ChatClient(Protocol):
    """What the worker needs from the Matrix side."""

    def event_permalink(self, room_id: str, event_id: str) -> str: ...

    async def send_notice(
        self,
        room_id: str,
        body: NoticeBody,
        thread_id: str | None = None,
        reply_to: str | None = None,
    ) -> str: ...

    async def edit_notice(self, room_id: str, event_id: str, body: NoticeBody) -> None: ...

    async def redact(self, room_id: str, event_id: str) -> None: ...


class Worker:
    """Process-wide preview state: config, cache, HTTP client and store.

    Build it once with :meth:`create` and share it between all handlers.
    """

    def __init__(
        self,
        config: PreviewerConfig,
        store: LinkageStore,
        chat: ChatClient,
        cache: MetadataCache[URL, PreviewMetadata | None] | None = None,
        fetcher: PreviewFetcher | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.chat = chat
        if cache is None:
            cache = MetadataCache(config.cache_entries, config.cache_ttl)
        self.cache = cache
        self.fetcher = fetcher if fetcher is not None else PreviewFetcher(config)
        self._jobs: set[asyncio.Task] = set()
        self._db: Database | None = None

    @classmethod
    async def create(cls, config: PreviewerConfig, chat: ChatClient) -> Worker:
        db = Database.create(config.database_url, upgrade_table=upgrade_table)
        await db.start()
        worker = cls(config, LinkageStore(db), chat)
        worker._db = db
        return worker

    async def close(self) -> None:
        """Abandon running jobs and release the HTTP client and database."""
        for job in list(self._jobs):
            job.cancel()
        if self._jobs:
            await asyncio.gather(*self._jobs, return_exceptions=True)
        await self.fetcher.close()
        if self._db is not None:
            await self._db.stop()

    async def wait_idle(self) -> None:
        """Wait for every job spawned so far, including ones they spawn."""
        while self._jobs:
            await asyncio.gather(*list(self._jobs), return_exceptions=True)

    # ── event entry points ───────────────────────────────────────────

    async def on_message(
        self,
        room_id: str,
        event_id: str,
        urls: list[URL],
        thread_id: str | None = None,
    ) -> str | None:
        """Handle a new or edited message.

        *event_id* is the id of the original message, also for edits.
        Returns the response notice's event id, or ``None`` if the message
        has no preview. Database errors propagate.
        """
        urls = urls[: self.config.max_urls_per_message]
        record = await self.store.lookup(room_id, event_id)
        backref = self.chat.event_permalink(room_id, event_id)

        if record is not None:
            if record.redacted:
                log.debug("Ignoring %s in %s: its preview was deleted.", event_id, room_id)
                return None
            if urls:
                self._spawn_preview(room_id, backref, record.response_id, True, urls)
            return record.response_id

        if not urls:
            return None

        try:
            response_id = await self.chat.send_notice(
                room_id, render_loading(backref), thread_id=thread_id, reply_to=event_id
            )
        except Exception as exc:
            log.error("Failed to send URL preview placeholder in %s: %s", room_id, exc)
            return None

        await self.store.upsert(room_id, event_id, response_id)
        self._spawn_preview(room_id, backref, response_id, False, urls)
        return response_id

    async def on_deletion(self, room_id: str, event_id: str) -> str | None:
        """Handle the redaction of a source message.

        Returns the response id the first time, ``None`` afterwards and for
        messages that never had a preview.
        """
        record = await self.store.lookup(room_id, event_id)
        if record is None or record.redacted:
            return None

        await self.store.upsert(room_id, event_id, record.response_id, redacted=True)
        create_task(
            self._redact(room_id, record.response_id),
            name=f"redact-{record.response_id}",
            tracked=self._jobs,
            logger=log,
        )
        return record.response_id

    # ── preview job ──────────────────────────────────────────────────

    def _spawn_preview(
        self,
        room_id: str,
        backref: str,
        response_id: str,
        is_edit: bool,
        urls: list[URL],
    ) -> None:
        create_task(
            self._create_url_preview(room_id, backref, response_id, is_edit, urls),
            name=f"preview-{response_id}",
            tracked=self._jobs,
            logger=log,
        )

    async def _create_url_preview(
        self,
        room_id: str,
        backref: str,
        response_id: str,
        is_edit: bool,
        urls: list[URL],
    ) -> None:
        body: NoticeBody | None = None
        for url in urls:
            target = self.fetcher.rewrite(url)
            if target is None:
                continue
            try:
                preview = await self.cache.get_with(
                    target, lambda target=target: self.fetcher.fetch(target)
                )
            except Exception:
                log.exception("Failed to fetch URL preview for %s", target)
                continue
            if preview is None:
                log.warning("URL has no preview: %s", target)
                continue
            log.debug("%r", preview)
            body = render_preview(backref, preview, target, self.config.limits)
            break

        if body is None:
            if is_edit:
                # Keep whatever the notice already shows.
                return
            body = render_unavailable(backref)

        try:
            await self.chat.edit_notice(room_id, response_id, body)
        except Exception as exc:
            log.error("Failed to send URL preview: %s", exc)

    async def _redact(self, room_id: str, response_id: str) -> None:
        try:
            await self.chat.redact(room_id, response_id)
        except Exception as exc:
            log.error("Failed to delete URL preview message: %s", exc)
