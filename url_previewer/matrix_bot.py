"""Matrix side of the URL previewer, on mautrix-python with E2EE.

  - Password or access-token login, persisted next to the crypto store
  - Auto-join on invite, auto-leave when the bot is alone, forget on leave
  - Previews for ``m.text`` messages, mirrored on edits, redacted on deletion
  - Notices in threads stay in the thread
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any

from mautrix.client import Client
from mautrix.client.encryption_manager import DecryptionDispatcher
from mautrix.client.state_store.memory import MemoryStateStore
from mautrix.client.syncer import InternalEventType
from mautrix.crypto import OlmMachine
from mautrix.crypto.store.asyncpg import PgCryptoStore
from mautrix.types import (
    EventID,
    EventType,
    MatrixURI,
    Membership,
    RoomID,
    UserID,
)
from mautrix.util.async_db import Database
from yarl import URL

from .common import MAX_URL_COUNTS_PER_MESSAGE
from .config import PreviewerConfig
from .extract_url import (
    ExtractionLimitExceeded,
    extract_urls_from_html,
    extract_urls_from_plain_body,
)
from .render import NoticeBody
from .tasks import create_task
from .utils import get_config, sqlite_url
from .worker import Worker

log = logging.getLogger(__name__)

HTML_FORMAT = "org.matrix.custom.html"

# ── Module-level helpers ─────────────────────────────────────────────


def parse_message_content(
    event_id: str, content: dict, limit: int | None = MAX_URL_COUNTS_PER_MESSAGE
) -> tuple[str, str | None, list[URL]] | None:
    """Work out what a message event means for the previewer.

    Returns ``(original_event_id, thread_id, urls)``, or ``None`` if the
    event is not a text message. For an edit the original event id and the
    ``m.new_content`` are used; edits never carry a thread id.
    Raises :class:`ExtractionLimitExceeded` on absurdly large markup.
    """
    relates_to = content.get("m.relates_to")
    if not isinstance(relates_to, dict):
        relates_to = {}

    original_id, thread_id, latest = event_id, None, content
    rel_type = relates_to.get("rel_type")
    if rel_type == "m.replace":
        original_id = relates_to.get("event_id")
        latest = content.get("m.new_content")
        if not original_id or not isinstance(latest, dict):
            return None
    elif rel_type == "m.thread":
        thread_id = relates_to.get("event_id") or None

    if latest.get("msgtype") != "m.text":
        return None

    formatted_body = latest.get("formatted_body")
    if latest.get("format") == HTML_FORMAT and isinstance(formatted_body, str):
        urls = extract_urls_from_html(formatted_body, limit)
    else:
        body = latest.get("body")
        urls = extract_urls_from_plain_body(body if isinstance(body, str) else "", limit)
    return original_id, thread_id, urls


def build_notice_content(
    body: NoticeBody, thread_id: str | None = None, reply_to: str | None = None
) -> dict[str, Any]:
    """``m.notice`` content that pings nobody, kept in *thread_id* if given."""
    content: dict[str, Any] = {
        "msgtype": "m.notice",
        "body": body.text,
        "format": HTML_FORMAT,
        "formatted_body": body.html,
        "m.mentions": {},
    }
    if thread_id:
        relates_to: dict[str, Any] = {
            "rel_type": "m.thread",
            "event_id": thread_id,
            "is_falling_back": True,
        }
        if reply_to:
            relates_to["m.in_reply_to"] = {"event_id": reply_to}
        content["m.relates_to"] = relates_to
    return content


def build_edit_content(target_event_id: str, body: NoticeBody) -> dict[str, Any]:
    """``m.replace`` content swapping *target_event_id* for *body*."""
    new_content: dict[str, Any] = {
        "msgtype": "m.notice",
        "body": body.text,
        "format": HTML_FORMAT,
        "formatted_body": body.html,
        "m.mentions": {},
    }
    return {
        "msgtype": "m.notice",
        "body": f"* {body.text}",
        "format": HTML_FORMAT,
        "formatted_body": f"* {body.html}",
        "m.mentions": {},
        "m.new_content": new_content,
        "m.relates_to": {
            "rel_type": "m.replace",
            "event_id": target_event_id,
        },
    }


def redacted_event_id(evt: Any) -> str | None:
    """The target of a redaction, top-level before room v11, in content after."""
    redacts = getattr(evt, "redacts", None)
    if not redacts:
        redacts = getattr(getattr(evt, "content", None), "redacts", None)
    return str(redacts) if redacts else None


# ── state store ────────────────────────────────────────────────────────────────────────


class BotStateStore(MemoryStateStore):
    """Tracks joined members so ``OlmMachine`` knows whose devices to encrypt for."""

    async def find_shared_rooms(self, user_id: UserID) -> list[RoomID]:
        joined = [
            room_id
            for room_id, members in self.members.items()
            if user_id in members and members[user_id].membership == Membership.JOIN
        ]
        return [room_id for room_id in joined if await self.is_encrypted(room_id)]


# ── decryption ───────────────────────────────────────────────────────────────────────────────────────────


class RetryingDecryptionDispatcher(DecryptionDispatcher):
    """Waits up to 5 s for a missing Megolm session before giving up, so
    keys arriving in the next sync batch still decrypt the event.
    Events that stay undecryptable are logged and dropped."""

    async def handle(self, evt: Any) -> None:
        try:
            decrypted = await self.client.crypto.decrypt_megolm_event(evt)
        except Exception as first_err:
            session_id = getattr(getattr(evt, "content", None), "session_id", None)
            if not session_id or not await self.client.crypto.wait_for_session(
                evt.room_id, session_id, timeout=5
            ):
                log.error(
                    "Unable to decrypt room %s, event %s: %s",
                    evt.room_id,
                    evt.event_id,
                    first_err,
                )
                return
            try:
                decrypted = await self.client.crypto.decrypt_megolm_event(evt)
            except Exception as retry_err:
                log.error(
                    "Unable to decrypt room %s, event %s after session wait: %s",
                    evt.room_id,
                    evt.event_id,
                    retry_err,
                )
                return
        self.client.dispatch_event(decrypted, evt.source)


# ── Main bot class ───────────────────────────────────────────────────


class MatrixBot:
    """Matrix client for the previewer; also the worker's chat client."""

    # Populated during __init__ / run()
    client: Client
    state_store: BotStateStore
    crypto_db: Database
    crypto_store: PgCryptoStore
    crypto_machine: OlmMachine
    worker: Worker

    def __init__(self, config: PreviewerConfig | None = None) -> None:
        self.homeserver: str = os.environ["MATRIX_HOMESERVER"]
        self.bot_mxid: str = os.environ["MATRIX_USER_ID"]
        self.access_token: str = os.environ.get("MATRIX_ACCESS_TOKEN", "")
        self.password: str = os.environ.get("MATRIX_PASSWORD", "")
        self.device_id: str = os.environ.get("MATRIX_DEVICE_ID", "")
        self.store_path: str = os.environ.get("MATRIX_STORE_PATH", "./matrix_store/")
        self.server_name: str = self.bot_mxid.split(":", 1)[-1]

        self.config = config or PreviewerConfig.from_dict(
            get_config(), store_path=self.store_path
        )
        self._initial_sync_done = False
        self._tasks: set[asyncio.Task] = set()

    # ── lifecycle ────────────────────────────────────────────────────

    async def run(self) -> None:
        """Async entry-point: login, set up E2EE, sync, serve forever."""
        os.makedirs(self.store_path, exist_ok=True)
        self._load_session()

        self.state_store = BotStateStore()

        db_path = os.path.join(self.store_path, "crypto.db")
        self.crypto_db = Database.create(
            url=sqlite_url(db_path),
            upgrade_table=PgCryptoStore.upgrade_table,
        )
        await self.crypto_db.start()
        self.crypto_store = PgCryptoStore(
            account_id=self.bot_mxid,
            pickle_key="url_previewer_pickle_key",
            db=self.crypto_db,
        )

        # A fresh crypto store needs a fresh device, otherwise other clients
        # never learn the new identity keys.
        existing_account = await self.crypto_store.get_account()
        if existing_account is None and self.device_id:
            log.info(
                "Fresh crypto store: discarding stale device_id %s "
                "to force new device creation on login",
                self.device_id,
            )
            self.device_id = ""
            self.access_token = ""

        self.client = Client(
            mxid=UserID(self.bot_mxid),
            device_id=self.device_id,
            base_url=self.homeserver,
            token=self.access_token,
            state_store=self.state_store,
            sync_store=self.crypto_store,
        )

        if not self.access_token:
            if not self.password:
                raise RuntimeError(
                    "Either MATRIX_ACCESS_TOKEN or MATRIX_PASSWORD must be set"
                )
            resp = await self.client.login(
                password=self.password,
                device_name="url-previewer",
            )
            self.access_token = resp.access_token
            self.device_id = resp.device_id
            self._save_session()
            log.info("Logged in as %s (device %s)", self.bot_mxid, self.device_id)

        await self._setup_e2ee()
        self.worker = await Worker.create(self.config, self)

        self.client.add_event_handler(EventType.ROOM_MESSAGE, self._on_message)
        self.client.add_event_handler(EventType.ROOM_REDACTION, self._on_redaction)
        self.client.add_event_handler(EventType.ROOM_MEMBER, self._on_member)
        self.client.add_event_handler(InternalEventType.INVITE, self._on_invite)

        # Room events are gated behind _initial_sync_done instead of
        # ignore_initial_sync, which would also drop to-device key shares.
        sync_ready = asyncio.Event()

        async def _on_first_sync(_data: Any) -> None:
            sync_ready.set()

        self.client.add_event_handler(InternalEventType.SYNC_SUCCESSFUL, _on_first_sync)

        sync_task = self.client.start(filter_data=None)
        log.info(
            "Skipping messages since last logout. May take longer depending on "
            "the number of rooms joined."
        )
        await sync_ready.wait()
        self._initial_sync_done = True
        try:
            self.client.remove_event_handler(
                InternalEventType.SYNC_SUCCESSFUL, _on_first_sync
            )
        except (KeyError, ValueError):
            pass
        log.info("Sync established")

        try:
            await sync_task
        except asyncio.CancelledError:
            pass
        finally:
            self.client.stop()
            await self._cancel_tasks()
            await self.worker.close()
            await self.crypto_db.stop()

    async def _cancel_tasks(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    # ── session persistence ──────────────────────────────────────────

    @property
    def session_path(self) -> str:
        return os.path.join(self.store_path, "session.json")

    def _load_session(self) -> None:
        path = self.session_path
        try:
            with open(path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError:
            return
        except (OSError, ValueError) as exc:
            log.warning("Failed to load session from %s: %s", path, exc)
            return
        if data.get("user_id") not in (None, self.bot_mxid):
            log.warning("Ignoring session for %s in %s", data.get("user_id"), path)
            return
        if not self.access_token and data.get("access_token"):
            self.access_token = data["access_token"]
        if not self.device_id and data.get("device_id"):
            self.device_id = data["device_id"]
        log.info("Restored session from %s", path)

    def _save_session(self) -> None:
        path = self.session_path
        tmp_path = path + ".tmp"
        with open(tmp_path, "w", encoding="utf-8") as fh:
            json.dump(
                {
                    "user_id": self.bot_mxid,
                    "device_id": self.device_id,
                    "access_token": self.access_token,
                },
                fh,
            )
        os.replace(tmp_path, path)  # atomic

    # ── E2EE setup ───────────────────────────────────────────────────

    async def _setup_e2ee(self) -> None:
        self.crypto_machine = OlmMachine(
            client=self.client,
            crypto_store=self.crypto_store,
            state_store=self.state_store,
        )
        self.client.crypto = self.crypto_machine
        # Undecryptable previews are retried, not dropped.
        self.client.remove_dispatcher(DecryptionDispatcher)
        self.client.add_dispatcher(RetryingDecryptionDispatcher)

        await self.crypto_machine.load()
        await self.crypto_machine.share_keys()
        log.info(
            "E2EE initialised (device %s, curve25519 %s)",
            self.device_id,
            self.crypto_machine.account.identity_keys.get("curve25519", "?"),
        )

        recovery_key = os.environ.get("MATRIX_RECOVERY_KEY", "").strip()
        if recovery_key:
            try:
                await self.crypto_machine.verify_with_recovery_key(recovery_key)
                log.info("Device cross-signed via recovery key")
            except Exception as exc:
                log.warning("Cross-signing via recovery key failed: %s", exc)
        else:
            log.info("No MATRIX_RECOVERY_KEY set -- device will appear unverified.")

    # ── event handlers ───────────────────────────────────────────────

    async def _on_invite(self, evt: Any) -> None:
        """Auto-join rooms the bot is invited to."""
        room_id = getattr(evt, "room_id", None)
        if not room_id:
            return
        try:
            await self.client.join_room(room_id)
            log.info("Joined room %s after invite", room_id)
        except Exception as exc:
            log.warning("Failed to join %s: %s", room_id, exc)

    async def _on_message(self, evt: Any) -> None:
        """Handle ``m.room.message`` events, decrypted ones included."""
        if not self._initial_sync_done:
            return
        if str(evt.sender) == self.bot_mxid:
            return

        room_id = str(evt.room_id)
        event_id = str(evt.event_id)
        content = evt.content
        raw_content: dict = content.serialize() if hasattr(content, "serialize") else {}

        try:
            parsed = parse_message_content(
                event_id, raw_content, self.config.max_urls_per_message
            )
        except ExtractionLimitExceeded:
            log.exception("Dropping event %s in %s", event_id, room_id)
            return
        if parsed is None:
            return

        original_id, thread_id, urls = parsed
        try:
            await self.worker.on_message(room_id, original_id, urls, thread_id)
        except Exception:
            log.exception("Failed to handle message %s in %s", event_id, room_id)

    async def _on_redaction(self, evt: Any) -> None:
        if not self._initial_sync_done:
            return
        if str(evt.sender) == self.bot_mxid:
            return
        original_id = redacted_event_id(evt)
        if not original_id:
            return
        room_id = str(evt.room_id)
        try:
            await self.worker.on_deletion(room_id, original_id)
        except Exception:
            log.exception("Failed to handle deletion of %s in %s", original_id, room_id)

    async def _on_member(self, evt: Any) -> None:
        """Leave rooms where only the bot remains; forget rooms it left."""
        membership = getattr(evt.content, "membership", None)
        if membership not in (Membership.LEAVE, Membership.BAN):
            return
        room_id = str(evt.room_id)
        if str(getattr(evt, "state_key", "")) == self.bot_mxid:
            create_task(
                self._forget_room(room_id), name=f"forget-{room_id}", tracked=self._tasks
            )
        else:
            create_task(
                self._leave_if_alone(room_id), name=f"leave-{room_id}", tracked=self._tasks
            )

    async def _leave_if_alone(self, room_id: str) -> None:
        try:
            members = await self.client.get_joined_members(RoomID(room_id))
        except Exception as exc:
            log.warning("Failed to sync members of %s: %s", room_id, exc)
            return
        if len(members) > 1:
            return
        log.info("Leaving room %s.", room_id)
        try:
            await self.client.leave_room(RoomID(room_id))
            log.info("Left room %s.", room_id)
        except Exception as exc:
            log.error("Failed to leave room %s: %s", room_id, exc)

    async def _forget_room(self, room_id: str) -> None:
        log.info("Forgetting room %s.", room_id)
        try:
            await self.client.forget_room(RoomID(room_id))
            log.info("Forgot room %s.", room_id)
        except Exception as exc:
            log.error("Failed to forget room %s: %s", room_id, exc)

    # ── chat client primitives ───────────────────────────────────────

    def event_permalink(self, room_id: str, event_id: str) -> str:
        return MatrixURI.build(
            RoomID(room_id), EventID(event_id), via=[self.server_name]
        ).matrix_to_url

    async def send_notice(
        self,
        room_id: str,
        body: NoticeBody,
        thread_id: str | None = None,
        reply_to: str | None = None,
    ) -> EventID:
        """Send an HTML notice. Errors propagate to the caller."""
        return await self.client.send_message_event(
            RoomID(room_id),
            EventType.ROOM_MESSAGE,
            build_notice_content(body, thread_id, reply_to),
        )

    async def edit_notice(self, room_id: str, event_id: str, body: NoticeBody) -> None:
        """Replace a notice's content via ``m.replace``."""
        await self.client.send_message_event(
            RoomID(room_id), EventType.ROOM_MESSAGE, build_edit_content(event_id, body)
        )

    async def redact(self, room_id: str, event_id: str) -> None:
        await self.client.redact(RoomID(room_id), EventID(event_id))


# ── Entry point ──────────────────────────────────────────────────────


def run_bot() -> None:
    """Start the Matrix bot (blocking)."""
    bot = MatrixBot()
    asyncio.run(bot.run())
