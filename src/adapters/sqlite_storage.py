"""SQLite storage adapter.

Implements the core MessageStorePort using a single SQLite database file.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Optional, Sequence

from core.models import (
    Failed,
    Inserted,
    InsertStatus,
    Message,
    MessageFilter,
    RecordResult,
    SkipReason,
    Skipped,
    timestamp_from_ms,
    timestamp_to_ms,
)

LOGGER = logging.getLogger(__name__)

_COLUMNS = "room_id, event_id, sender, message_type, timestamp_ms, content"


class SQLiteMessageStore:
    """Thin SQLite wrapper that satisfies the MessageStorePort contract."""

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Create tables and indexes if they do not exist.

        Tables:
        - messages: one row per archived event, unique per (room_id, event_id)
        """

        with self._connect() as conn:
            # messages is append-only apart from operator deletes.
            # Fields:
            # - id: insertion order, used as a stable tie-break for equal timestamps
            # - room_id / event_id: dedup key
            # - sender: full Matrix user id
            # - message_type: always m.room.message
            # - timestamp_ms: origin_server_ts in milliseconds
            # - content: the normalized content map as JSON text
            # - created_at: when this row was written
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    room_id TEXT NOT NULL,
                    event_id TEXT NOT NULL,
                    sender TEXT NOT NULL,
                    message_type TEXT NOT NULL,
                    timestamp_ms INTEGER NOT NULL,
                    content TEXT NOT NULL,
                    created_at TIMESTAMP NOT NULL,
                    UNIQUE (room_id, event_id)
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_room_ts ON messages (room_id, timestamp_ms)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_messages_sender ON messages (sender)")

    @staticmethod
    def _insert(conn: sqlite3.Connection, message: Message) -> bool:
        # ``json.dumps`` runs before the statement so unserializable content
        # fails this record only.
        content = json.dumps(message.content, ensure_ascii=False)
        cur = conn.execute(
            f"""
            INSERT INTO messages ({_COLUMNS}, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(room_id, event_id) DO NOTHING
            """,
            (
                message.room_id,
                message.event_id,
                message.sender,
                message.message_type,
                timestamp_to_ms(message.timestamp),
                content,
                datetime.now(timezone.utc).isoformat(),
            ),
        )
        return cur.rowcount > 0

    def insert_one(self, message: Message) -> InsertStatus:
        """Insert one message; an existing (room_id, event_id) is a duplicate."""

        try:
            with self._connect() as conn:
                inserted = self._insert(conn, message)
        except (sqlite3.Error, TypeError, ValueError) as exc:
            LOGGER.error("Failed to insert %s: %s", message.event_id, exc)
            return InsertStatus.ERROR
        return InsertStatus.OK if inserted else InsertStatus.DUPLICATE

    def insert_batch(self, messages: Sequence[Message]) -> list[RecordResult]:
        """Insert a batch in one transaction with one result per message.

        Each record gets its own savepoint, so a record that fails rolls back
        alone and its siblings still commit.
        """

        if not messages:
            return []

        results: list[RecordResult] = []
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self._connect()
            conn.isolation_level = None
            conn.execute("BEGIN")
            for message in messages:
                conn.execute("SAVEPOINT record")
                try:
                    inserted = self._insert(conn, message)
                except (sqlite3.Error, TypeError, ValueError) as exc:
                    conn.execute("ROLLBACK TO record")
                    conn.execute("RELEASE record")
                    results.append(Failed(message.event_id, str(exc)))
                    continue
                conn.execute("RELEASE record")
                if inserted:
                    results.append(Inserted(message.event_id))
                else:
                    results.append(Skipped(message.event_id, SkipReason.DUPLICATE))
            conn.execute("COMMIT")
        except sqlite3.Error as exc:
            if conn is not None and conn.in_transaction:
                conn.execute("ROLLBACK")
            LOGGER.error("Batch of %s messages failed: %s", len(messages), exc)
            return [Failed(message.event_id, str(exc)) for message in messages]
        finally:
            if conn is not None:
                conn.close()
        return results

    def query(
        self,
        message_filter: Optional[MessageFilter] = None,
        limit: int = 0,
        offset: int = 0,
    ) -> list[Message]:
        """Return matching messages oldest first (insertion order breaks ties)."""

        where, args = (message_filter or MessageFilter()).to_sql()
        sql = f"SELECT {_COLUMNS} FROM messages"
        if where:
            sql += f" WHERE {where}"
        # SQLite needs a LIMIT before OFFSET; -1 means unbounded.
        sql += " ORDER BY timestamp_ms, id LIMIT ? OFFSET ?"
        args.extend([limit if limit > 0 else -1, max(offset, 0)])

        with self._connect() as conn:
            rows = conn.execute(sql, args).fetchall()
        return [_row_to_message(row) for row in rows]

    def count(self, message_filter: Optional[MessageFilter] = None) -> int:
        where, args = (message_filter or MessageFilter()).to_sql()
        sql = "SELECT COUNT(*) AS total FROM messages"
        if where:
            sql += f" WHERE {where}"
        with self._connect() as conn:
            row = conn.execute(sql, args).fetchone()
        return int(row["total"])

    def get_message(self, room_id: str, event_id: str) -> Optional[Message]:
        messages = self.query(MessageFilter(room_id=room_id, event_id=event_id), limit=1)
        return messages[0] if messages else None

    def delete_message(self, room_id: str, event_id: str) -> bool:
        """Operator delete; returns whether a row was removed."""

        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM messages WHERE room_id = ? AND event_id = ?",
                (room_id, event_id),
            )
            return cur.rowcount > 0

    def list_rooms(self) -> list[tuple[str, int]]:
        """Return (room_id, message count) for every archived room."""

        with self._connect() as conn:
            rows = conn.execute(
                "SELECT room_id, COUNT(*) AS total FROM messages GROUP BY room_id ORDER BY room_id"
            ).fetchall()
        return [(row["room_id"], int(row["total"])) for row in rows]


def _row_to_message(row: sqlite3.Row) -> Message:
    return Message(
        room_id=row["room_id"],
        event_id=row["event_id"],
        sender=row["sender"],
        timestamp=timestamp_from_ms(row["timestamp_ms"]),
        content=json.loads(row["content"]),
        message_type=row["message_type"],
    )
