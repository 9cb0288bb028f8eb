"""
Database - notification outbox and the repositories the checkers read.

Usage:
    db = Database("data/valwatch.db")
    await db.connect()
    await db.create_notification(notification)
    pending = await db.find_notifications(sent=False, max_retry_count=MAX_RETRIES)
"""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Optional

import aiosqlite

from valwatch.models import Notification

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS notifications (
    notification_id TEXT PRIMARY KEY,
    event TEXT NOT NULL,
    data TEXT,
    condition TEXT,
    type TEXT NOT NULL,
    recipient TEXT NOT NULL,
    sent INTEGER NOT NULL DEFAULT 0,
    retry_count INTEGER NOT NULL DEFAULT 0,
    created_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_notifications_pending ON notifications(sent, created_at);

CREATE TABLE IF NOT EXISTS validators (
    operator_address TEXT PRIMARY KEY,
    voter_address TEXT,
    moniker TEXT,
    consensus_address TEXT,
    status TEXT,
    uptime REAL,
    uptime_level TEXT,
    updated_at REAL
);
CREATE INDEX IF NOT EXISTS idx_validators_voter ON validators(voter_address);

CREATE TABLE IF NOT EXISTS telegram_users (
    chat_id TEXT PRIMARY KEY,
    username TEXT,
    created_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS polls (
    poll_id TEXT PRIMARY KEY,
    chain TEXT,
    state TEXT,
    participants TEXT,
    tx_hash TEXT,
    tx_height INTEGER,
    created_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS poll_votes (
    poll_id TEXT NOT NULL,
    voter_address TEXT NOT NULL,
    chain TEXT,
    vote TEXT,
    tx_hash TEXT,
    tx_height INTEGER,
    notified INTEGER NOT NULL DEFAULT 0,
    voted_at REAL NOT NULL,
    PRIMARY KEY (poll_id, voter_address)
);

CREATE TABLE IF NOT EXISTS rpc_endpoints (
    name TEXT PRIMARY KEY,
    url TEXT NOT NULL,
    is_healthy INTEGER,
    checked_at REAL
);
"""


class Database:
    """aiosqlite-backed store. One instance per path, constructed explicitly."""

    def __init__(self, path: str | Path = "data/valwatch.db"):
        self._path = Path(path)
        self._connection: Optional[aiosqlite.Connection] = None

    @property
    def conn(self) -> aiosqlite.Connection:
        """Get database connection."""
        if not self._connection:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._connection

    async def connect(self) -> "Database":
        """Connect to database and initialize schema."""
        if self._connection is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._connection = await aiosqlite.connect(self._path)
            self._connection.row_factory = aiosqlite.Row
            await self._connection.execute("PRAGMA journal_mode=WAL")
            await self._connection.execute("PRAGMA busy_timeout=30000")
            await self._connection.executescript(SCHEMA)
            await self._connection.commit()
            logger.info(f"Connected to database at {self._path}")
        return self

    async def close(self) -> None:
        """Close database connection. The handle is dropped even if closing fails."""
        connection, self._connection = self._connection, None
        if connection is not None:
            await connection.close()

    async def ping(self) -> bool:
        """Lightweight liveness check. Raises if the store is unreachable."""
        cursor = await self.conn.execute("SELECT 1")
        row = await cursor.fetchone()
        return row is not None and row[0] == 1

    # -------------------------------------------------------------------------
    # Notifications (outbox)
    # -------------------------------------------------------------------------

    async def create_notification(self, notification: Notification) -> Notification:
        row = notification.to_row()
        cols = ", ".join(row.keys())
        placeholders = ", ".join("?" * len(row))
        await self.conn.execute(
            f"INSERT INTO notifications ({cols}) VALUES ({placeholders})",  # noqa: S608
            tuple(row.values()),
        )
        await self.conn.commit()
        return notification

    async def find_notifications(
        self,
        sent: Optional[bool] = None,
        max_retry_count: Optional[int] = None,
    ) -> list[Notification]:
        """Notifications matching the filter, oldest first.

        Args:
            sent: only records with this delivery state
            max_retry_count: only records with ``retry_count`` strictly below this
        """
        query = "SELECT * FROM notifications"
        clauses = []
        params: list[Any] = []
        if sent is not None:
            clauses.append("sent = ?")
            params.append(int(sent))
        if max_retry_count is not None:
            clauses.append("retry_count < ?")
            params.append(max_retry_count)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at ASC, rowid ASC"

        cursor = await self.conn.execute(query, params)
        rows = await cursor.fetchall()
        return [Notification.from_row(row) for row in rows]

    async def find_notification(self, notification_id: str) -> Optional[Notification]:
        cursor = await self.conn.execute(
            "SELECT * FROM notifications WHERE notification_id = ?",
            (notification_id,),
        )
        row = await cursor.fetchone()
        return Notification.from_row(row) if row else None

    async def update_notification(self, notification_id: str, **patch: Any) -> bool:
        """Apply a partial update. Returns False if no record matched.

        ``sent`` can only be set to True: delivery state never goes back.
        """
        if not patch:
            return False
        if "sent" in patch:
            if not patch["sent"]:
                raise ValueError("A delivered notification cannot be marked unsent")
            patch["sent"] = 1
        if "data" in patch:
            patch["data"] = json.dumps(patch["data"])

        sets = ", ".join(f"{k} = ?" for k in patch.keys())
        cursor = await self.conn.execute(
            f"UPDATE notifications SET {sets} WHERE notification_id = ?",  # noqa: S608
            (*patch.values(), notification_id),
        )
        await self.conn.commit()
        return cursor.rowcount > 0

    async def mark_notification_sent(self, notification_id: str) -> bool:
        return await self.update_notification(notification_id, sent=True)

    async def increment_notification_retry_count(self, notification_id: str, max_retries: int) -> Optional[int]:
        """Atomically bump ``retry_count`` unless it already reached ``max_retries``.

        Returns:
            The new count, or None if the record is missing, sent, or at the cap
        """
        cursor = await self.conn.execute(
            """UPDATE notifications SET retry_count = retry_count + 1
               WHERE notification_id = ? AND sent = 0 AND retry_count < ?""",
            (notification_id, max_retries),
        )
        await self.conn.commit()
        if cursor.rowcount == 0:
            return None
        cursor = await self.conn.execute(
            "SELECT retry_count FROM notifications WHERE notification_id = ?",
            (notification_id,),
        )
        row = await cursor.fetchone()
        return row["retry_count"] if row else None

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------

    async def get_validator(self, operator_address: str) -> Optional[dict]:
        cursor = await self.conn.execute(
            "SELECT * FROM validators WHERE operator_address = ?",
            (operator_address,),
        )
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def get_validator_by_voter(self, voter_address: str) -> Optional[dict]:
        cursor = await self.conn.execute(
            "SELECT * FROM validators WHERE voter_address = ?",
            (voter_address,),
        )
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def get_validators(self) -> list[dict]:
        cursor = await self.conn.execute("SELECT * FROM validators ORDER BY operator_address")
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def upsert_validator(self, operator_address: str, **data: Any) -> None:
        """Insert or update a validator."""
        data["updated_at"] = time.time()
        existing = await self.get_validator(operator_address)
        if existing:
            sets = ", ".join(f"{k} = ?" for k in data.keys())
            await self.conn.execute(
                f"UPDATE validators SET {sets} WHERE operator_address = ?",  # noqa: S608
                (*data.values(), operator_address),
            )
        else:
            data["operator_address"] = operator_address
            cols = ", ".join(data.keys())
            placeholders = ", ".join("?" * len(data))
            await self.conn.execute(
                f"INSERT INTO validators ({cols}) VALUES ({placeholders})",  # noqa: S608
                tuple(data.values()),
            )
        await self.conn.commit()

    # -------------------------------------------------------------------------
    # Telegram users
    # -------------------------------------------------------------------------

    async def add_telegram_user(self, chat_id: str, username: Optional[str] = None) -> None:
        await self.conn.execute(
            "INSERT OR IGNORE INTO telegram_users (chat_id, username, created_at) VALUES (?, ?, ?)",
            (str(chat_id), username, time.time()),
        )
        await self.conn.commit()

    async def get_telegram_users(self) -> list[dict]:
        cursor = await self.conn.execute("SELECT * FROM telegram_users ORDER BY created_at, rowid")
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    # -------------------------------------------------------------------------
    # Polls and votes
    # -------------------------------------------------------------------------

    async def upsert_poll(
        self,
        poll_id: str,
        chain: Optional[str] = None,
        state: Optional[str] = None,
        participants: Optional[list[str]] = None,
        tx_hash: Optional[str] = None,
        tx_height: Optional[int] = None,
    ) -> None:
        await self.conn.execute(
            """INSERT INTO polls (poll_id, chain, state, participants, tx_hash, tx_height, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(poll_id) DO UPDATE SET
                   chain = COALESCE(excluded.chain, polls.chain),
                   state = COALESCE(excluded.state, polls.state),
                   participants = COALESCE(excluded.participants, polls.participants),
                   tx_hash = COALESCE(excluded.tx_hash, polls.tx_hash),
                   tx_height = COALESCE(excluded.tx_height, polls.tx_height)""",
            (
                poll_id,
                chain,
                state,
                json.dumps(participants) if participants is not None else None,
                tx_hash,
                tx_height,
                time.time(),
            ),
        )
        await self.conn.commit()

    async def get_poll(self, poll_id: str) -> Optional[dict]:
        cursor = await self.conn.execute("SELECT * FROM polls WHERE poll_id = ?", (poll_id,))
        row = await cursor.fetchone()
        if not row:
            return None
        poll = dict(row)
        poll["participants"] = json.loads(poll["participants"]) if poll["participants"] else []
        return poll

    async def upsert_poll_vote(
        self,
        poll_id: str,
        voter_address: str,
        vote: str,
        chain: Optional[str] = None,
        tx_hash: Optional[str] = None,
        tx_height: Optional[int] = None,
        voted_at: Optional[float] = None,
    ) -> None:
        """Record a vote. Re-recording a vote keeps its notified flag."""
        await self.conn.execute(
            """INSERT INTO poll_votes (poll_id, voter_address, chain, vote, tx_hash, tx_height, voted_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(poll_id, voter_address) DO UPDATE SET
                   vote = excluded.vote,
                   chain = COALESCE(excluded.chain, poll_votes.chain),
                   tx_hash = COALESCE(excluded.tx_hash, poll_votes.tx_hash),
                   tx_height = COALESCE(excluded.tx_height, poll_votes.tx_height)""",
            (poll_id, voter_address, chain, vote, tx_hash, tx_height, voted_at or time.time()),
        )
        await self.conn.commit()

    async def get_unnotified_poll_votes(self, voter_address: str, since: float) -> list[dict]:
        """Votes by ``voter_address`` at or after ``since`` not yet notified, oldest first."""
        cursor = await self.conn.execute(
            """SELECT * FROM poll_votes
               WHERE voter_address = ? AND notified = 0 AND voted_at >= ?
               ORDER BY voted_at ASC""",
            (voter_address, since),
        )
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def mark_poll_vote_notified(self, poll_id: str, voter_address: str) -> None:
        await self.conn.execute(
            "UPDATE poll_votes SET notified = 1 WHERE poll_id = ? AND voter_address = ?",
            (poll_id, voter_address),
        )
        await self.conn.commit()

    # -------------------------------------------------------------------------
    # RPC endpoints
    # -------------------------------------------------------------------------

    async def get_rpc_endpoint(self, name: str) -> Optional[dict]:
        cursor = await self.conn.execute("SELECT * FROM rpc_endpoints WHERE name = ?", (name,))
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def set_rpc_endpoint_health(self, name: str, url: str, is_healthy: bool) -> None:
        await self.conn.execute(
            """INSERT OR REPLACE INTO rpc_endpoints (name, url, is_healthy, checked_at)
               VALUES (?, ?, ?, ?)""",
            (name, url, int(is_healthy), time.time()),
        )
        await self.conn.commit()
