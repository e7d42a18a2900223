"""Durable mapping from a source message to the notice previewing it.

Rows are never removed. A deleted source message keeps its row with
``redacted`` set, so a redelivered event or a repeated redaction is
recognised as already handled.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from mautrix.util.async_db import Connection, Database, UpgradeTable

log = logging.getLogger(__name__)

upgrade_table = UpgradeTable()


@upgrade_table.register(description="Initial revision")
async def upgrade_v1(conn: Connection) -> None:
    await conn.execute(
        """CREATE TABLE messages (
            room_id     TEXT NOT NULL,
            event_id    TEXT NOT NULL,
            response_id TEXT NOT NULL,
            redacted    BOOLEAN NOT NULL DEFAULT false,
            PRIMARY KEY (room_id, event_id)
        )"""
    )


@dataclass(frozen=True)
class LinkageRecord:
    room_id: str
    event_id: str
    response_id: str
    redacted: bool = False


class LinkageStore:
    _lookup_q = (
        "SELECT room_id, event_id, response_id, redacted FROM messages "
        "WHERE room_id=$1 AND event_id=$2"
    )
    _upsert_q = (
        "INSERT INTO messages (room_id, event_id, response_id, redacted) "
        "VALUES ($1, $2, $3, $4) "
        "ON CONFLICT (room_id, event_id) DO UPDATE "
        "SET response_id=excluded.response_id, redacted=excluded.redacted"
    )

    def __init__(self, db: Database) -> None:
        self.db = db

    async def lookup(self, room_id: str, event_id: str) -> LinkageRecord | None:
        row = await self.db.fetchrow(self._lookup_q, room_id, event_id)
        if row is None:
            return None
        return LinkageRecord(
            room_id=row["room_id"],
            event_id=row["event_id"],
            response_id=row["response_id"],
            redacted=bool(row["redacted"]),
        )

    async def upsert(
        self, room_id: str, event_id: str, response_id: str, redacted: bool = False
    ) -> None:
        await self.db.execute(self._upsert_q, room_id, event_id, response_id, redacted)
        log.debug(
            "Linked %s/%s -> %s (redacted=%s)", room_id, event_id, response_id, redacted
        )
