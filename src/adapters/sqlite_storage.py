"""SQLite storage adapter.

Implements the core StoragePort using a simple SQLite database.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, List, Optional, Sequence

from core.errors import StoreError
from core.models import Notification, SeenRecord
from core.protocol import irc_lower

LOGGER = logging.getLogger(__name__)


def _to_db_time(value: datetime) -> str:
    # Fixed-width UTC timestamps compare correctly as text.
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_db_time(value: str) -> datetime:
    return datetime.fromisoformat(value)


class SQLiteStorage:
    """Thin SQLite wrapper that satisfies the StoragePort contract."""

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        # sqlite serializes writers across processes; the lock keeps our own
        # read-modify-write sequences from interleaving across threads.
        self._lock = threading.RLock()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=5.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run statements in one IMMEDIATE transaction, mapping failures to StoreError."""

        with self._lock:
            try:
                conn = self._connect()
            except sqlite3.Error as exc:
                raise StoreError(f"cannot open database {self._db_path}: {exc}") from exc
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield conn
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
            except sqlite3.Error as exc:
                raise StoreError(str(exc)) from exc
            finally:
                conn.close()

    def init_db(self) -> None:
        """Create tables if they do not exist.

        Tables:
        - seen: last observation per identity
        - notifications: memos, kept after delivery for auditing
        - weather_locations: last weather query per identity
        """

        with self._transaction() as conn:
            # seen keeps a single row per identity; identity is the casemapped
            # nickname so "Bob" and "bob" share a record.
            # Fields:
            # - identity: normalized nickname (PRIMARY KEY)
            # - nickname: nickname as last written by the user
            # - timestamp: UTC ISO-8601, never moves backwards
            # - snippet: "saying: ...", "performing: ..." or "being kicked from ..."
            # - channel: channel of the observation, NULL for private messages
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS seen (
                    identity TEXT PRIMARY KEY,
                    nickname TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    snippet TEXT NOT NULL,
                    channel TEXT
                )
                """
            )
            # notifications is drained in id order. delivered flips to 1 in the
            # same transaction that hands the memo to the router.
            # Fields:
            # - id: auto-increment primary key, also the delivery order
            # - sender: nickname that left the memo
            # - recipient: normalized recipient nickname
            # - body: memo text
            # - created_at / delivered_at: UTC ISO-8601
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS notifications (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    sender TEXT NOT NULL,
                    recipient TEXT NOT NULL,
                    body TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    delivered INTEGER NOT NULL DEFAULT 0,
                    delivered_at TEXT
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_notifications_due
                ON notifications (recipient, delivered, id)
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS weather_locations (
                    identity TEXT PRIMARY KEY,
                    location TEXT NOT NULL
                )
                """
            )
        LOGGER.info("Database ready at %s", self._db_path)

    def record_seen(
        self,
        nickname: str,
        timestamp: datetime,
        snippet: str,
        channel: Optional[str],
    ) -> None:
        """Upsert the SeenRecord, ignoring observations older than the stored one."""

        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO seen (identity, nickname, timestamp, snippet, channel)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(identity) DO UPDATE SET
                    nickname = excluded.nickname,
                    timestamp = excluded.timestamp,
                    snippet = excluded.snippet,
                    channel = excluded.channel
                WHERE excluded.timestamp >= seen.timestamp
                """,
                (irc_lower(nickname), nickname, _to_db_time(timestamp), snippet, channel),
            )

    def get_seen(self, nickname: str) -> Optional[SeenRecord]:
        """Return the SeenRecord for a nickname, if any."""

        with self._transaction() as conn:
            row = conn.execute(
                "SELECT identity, nickname, timestamp, snippet, channel FROM seen WHERE identity = ?",
                (irc_lower(nickname),),
            ).fetchone()
        if row is None:
            return None
        return SeenRecord(
            identity=row["identity"],
            nickname=row["nickname"],
            timestamp=_from_db_time(row["timestamp"]),
            snippet=row["snippet"],
            channel=row["channel"],
        )

    def enqueue_notification(self, notification: Notification) -> Notification:
        """Persist a new memo and return it with its id."""

        with self._transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO notifications (sender, recipient, body, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (
                    notification.sender,
                    irc_lower(notification.recipient),
                    notification.body,
                    _to_db_time(notification.created_at),
                ),
            )
            new_id = cur.lastrowid
        return Notification(
            id=new_id,
            sender=notification.sender,
            recipient=irc_lower(notification.recipient),
            body=notification.body,
            created_at=notification.created_at,
        )

    def drain_due_notifications(self, nickname: str, limit: int) -> List[Notification]:
        """Return up to ``limit`` undelivered memos, oldest first, marked delivered.

        The select and the update commit together. Lines still queued at a
        clean shutdown are handed back through ``requeue_notifications``; a
        crash after the commit but before the line reaches the network loses
        that memo, so a memo is never delivered twice.
        """

        if limit <= 0:
            return []
        now = _to_db_time(datetime.now(timezone.utc))
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT id, sender, recipient, body, created_at
                FROM notifications
                WHERE recipient = ? AND delivered = 0
                ORDER BY id
                LIMIT ?
                """,
                (irc_lower(nickname), limit),
            ).fetchall()
            conn.executemany(
                "UPDATE notifications SET delivered = 1, delivered_at = ? WHERE id = ?",
                [(now, row["id"]) for row in rows],
            )
        return [
            Notification(
                id=row["id"],
                sender=row["sender"],
                recipient=row["recipient"],
                body=row["body"],
                created_at=_from_db_time(row["created_at"]),
                delivered=True,
            )
            for row in rows
        ]

    def requeue_notifications(self, ids: Sequence[int]) -> None:
        """Mark memos undelivered again after their lines were never sent."""

        if not ids:
            return
        placeholders = ", ".join("?" for _ in ids)
        with self._transaction() as conn:
            conn.execute(
                "UPDATE notifications SET delivered = 0, delivered_at = NULL "
                f"WHERE id IN ({placeholders})",
                list(ids),
            )

    def set_location(self, nickname: str, location: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO weather_locations (identity, location) VALUES (?, ?)
                ON CONFLICT(identity) DO UPDATE SET location = excluded.location
                """,
                (irc_lower(nickname), location),
            )

    def get_location(self, nickname: str) -> Optional[str]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT location FROM weather_locations WHERE identity = ?",
                (irc_lower(nickname),),
            ).fetchone()
        return row["location"] if row else None

    def counts(self) -> dict[str, int]:
        """Return row counts used by the ``check`` command."""

        with self._transaction() as conn:
            seen = conn.execute("SELECT COUNT(*) FROM seen").fetchone()[0]
            pending = conn.execute(
                "SELECT COUNT(*) FROM notifications WHERE delivered = 0"
            ).fetchone()[0]
            delivered = conn.execute(
                "SELECT COUNT(*) FROM notifications WHERE delivered = 1"
            ).fetchone()[0]
        return {"seen": seen, "pending": pending, "delivered": delivered}
