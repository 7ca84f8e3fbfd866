"""Processed-message store.

Answers "has this account already replied to this message?" and records
that it now has. The uniqueness of (email_account, message_id) is enforced
by the database with INSERT OR IGNORE, so concurrent per-message workflows
and overlapping runs can never create two records for one message.

Usage:
    from autoreply.db.store import DatabaseStore

    store = DatabaseStore("data/autoreply.db")
    await store.initialize()

    if not await store.has("me@example.com", "<abc@mail.example.com>"):
        ...send reply...
        await store.record("me@example.com", "<abc@mail.example.com>",
                           sender="them@example.com", subject="Hello")
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite

from autoreply.core.errors import DatabaseError
from autoreply.core.logging import get_logger
from autoreply.db.models import init_database

logger = get_logger(__name__)


@dataclass(frozen=True)
class ProcessedRecord:
    """Durable marker that a reply was sent for (email_account, message_id)."""

    email_account: str
    message_id: str
    sender: str | None
    subject: str | None
    processed_at: datetime


class DatabaseStore:
    """Async store for processed-message records.

    Attributes:
        db_path: Path to the SQLite database file
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self._initialized = False

    async def initialize(self) -> None:
        """Initialize the database, creating tables if needed.

        This must be called before any other operations.
        """
        await init_database(self.db_path)
        self._initialized = True

    @asynccontextmanager
    async def _db(self) -> AsyncIterator[aiosqlite.Connection]:
        """Get a configured database connection.

        busy_timeout covers concurrent writers (scheduler run + manual trigger
        from the API); synchronous=NORMAL is safe with WAL.
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA busy_timeout = 10000")
            await db.execute("PRAGMA synchronous = NORMAL")
            db.row_factory = aiosqlite.Row
            yield db

    # =========================================================================
    # Processed-message operations
    # =========================================================================

    async def has(self, email_account: str, message_id: str) -> bool:
        """Check whether a reply was already sent for this message.

        Raises:
            DatabaseError: If the query fails
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT 1 FROM processed_emails WHERE email_account = ? AND message_id = ?",
                    (email_account, message_id),
                )
                row = await cursor.fetchone()
                return row is not None

        except aiosqlite.Error as e:
            logger.error(
                "Failed to check processed message",
                account=email_account,
                message_id=message_id,
                error=str(e),
            )
            raise DatabaseError(f"Failed to check processed message {message_id}: {e}") from e

    async def record(
        self,
        email_account: str,
        message_id: str,
        sender: str | None = None,
        subject: str | None = None,
    ) -> bool:
        """Record that a reply was sent. Idempotent.

        Returns:
            True if a new record was committed, False if one already existed
            (the existing record is left untouched)

        Raises:
            DatabaseError: If the insert fails
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT OR IGNORE INTO processed_emails (
                        email_account, message_id, sender, subject, processed_at
                    ) VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        email_account,
                        message_id,
                        sender,
                        subject,
                        datetime.now(UTC).isoformat(),
                    ),
                )
                await db.commit()
                inserted = cursor.rowcount == 1

            if not inserted:
                logger.debug(
                    "Processed record already exists",
                    account=email_account,
                    message_id=message_id,
                )
            return inserted

        except aiosqlite.Error as e:
            logger.error(
                "Failed to record processed message",
                account=email_account,
                message_id=message_id,
                error=str(e),
            )
            raise DatabaseError(f"Failed to record processed message {message_id}: {e}") from e

    async def get_processed(self, email_account: str, message_id: str) -> ProcessedRecord | None:
        """Fetch a single processed record, or None."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM processed_emails WHERE email_account = ? AND message_id = ?",
                    (email_account, message_id),
                )
                row = await cursor.fetchone()
                return self._row_to_record(row) if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to get processed record", message_id=message_id, error=str(e))
            raise DatabaseError(f"Failed to get processed record: {e}") from e

    async def list_processed(
        self,
        email_account: str | None = None,
        limit: int = 100,
    ) -> list[ProcessedRecord]:
        """List processed records, newest first, optionally for one account."""
        try:
            async with self._db() as db:
                query = "SELECT * FROM processed_emails WHERE 1=1"
                params: list[Any] = []

                if email_account:
                    query += " AND email_account = ?"
                    params.append(email_account)

                query += " ORDER BY processed_at DESC, id DESC LIMIT ?"
                params.append(limit)

                cursor = await db.execute(query, params)
                rows = await cursor.fetchall()
                return [self._row_to_record(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("Failed to list processed records", error=str(e))
            raise DatabaseError(f"Failed to list processed records: {e}") from e

    async def count_processed(self, email_account: str | None = None) -> int:
        """Count processed records, optionally for one account."""
        try:
            async with self._db() as db:
                if email_account:
                    cursor = await db.execute(
                        "SELECT COUNT(*) FROM processed_emails WHERE email_account = ?",
                        (email_account,),
                    )
                else:
                    cursor = await db.execute("SELECT COUNT(*) FROM processed_emails")
                row = await cursor.fetchone()
                return int(row[0]) if row else 0

        except aiosqlite.Error as e:
            logger.error("Failed to count processed records", error=str(e))
            raise DatabaseError(f"Failed to count processed records: {e}") from e

    def _row_to_record(self, row: aiosqlite.Row) -> ProcessedRecord:
        """Convert a database row to a ProcessedRecord dataclass."""
        return ProcessedRecord(
            email_account=row["email_account"],
            message_id=row["message_id"],
            sender=row["sender"],
            subject=row["subject"],
            processed_at=datetime.fromisoformat(row["processed_at"]),
        )
