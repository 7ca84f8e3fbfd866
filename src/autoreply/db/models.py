"""Schema for the processed-message database.

One table, ``processed_emails``, keyed by (email_account, message_id). The
schema version is stored in SQLite's ``user_version`` pragma so a newer
database is detected instead of silently misread.

Usage:
    from autoreply.db.models import init_database

    await init_database("data/autoreply.db")
"""

import stat
from pathlib import Path

import aiosqlite

from autoreply.core.errors import DatabaseError
from autoreply.core.logging import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION = 1

PROCESSED_TABLE = "processed_emails"
PROCESSED_COLUMNS = frozenset(
    {"id", "email_account", "message_id", "sender", "subject", "processed_at"}
)

SCHEMA_SQL = f"""
CREATE TABLE IF NOT EXISTS {PROCESSED_TABLE} (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email_account TEXT NOT NULL,            -- mailbox the reply was sent from
    message_id TEXT NOT NULL,               -- Message-ID header or synthesized id
    sender TEXT,                            -- address the reply went to
    subject TEXT,                           -- subject of the original
    processed_at DATETIME NOT NULL,         -- ISO 8601, UTC
    UNIQUE (email_account, message_id)
);

CREATE INDEX IF NOT EXISTS idx_processed_account_time
    ON {PROCESSED_TABLE}(email_account, processed_at DESC);
"""

# Owner read/write only: rows hold sender addresses and subjects
_FILE_MODE = stat.S_IRUSR | stat.S_IWUSR


def _restrict_permissions(db_path: Path) -> None:
    for path in (db_path, *(db_path.with_name(db_path.name + s) for s in ("-wal", "-shm"))):
        if path.exists():
            path.chmod(_FILE_MODE)


async def init_database(db_path: str | Path) -> None:
    """Create the database file, enable WAL and apply the schema.

    Safe to call on every start.

    Raises:
        DatabaseError: If the file cannot be created or was written by a
            newer schema version
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("PRAGMA journal_mode=WAL")
            row = await cursor.fetchone()
            if row and str(row[0]).lower() != "wal":
                logger.warning("db_wal_unavailable", db_path=str(db_path), mode=row[0])

            cursor = await db.execute("PRAGMA user_version")
            row = await cursor.fetchone()
            found_version = row[0] if row else 0
            if found_version > SCHEMA_VERSION:
                raise DatabaseError(
                    f"Database {db_path} has schema version {found_version}, "
                    f"newer than supported version {SCHEMA_VERSION}. "
                    "Upgrade the service or point database.path at a fresh file."
                )

            await db.executescript(SCHEMA_SQL)
            await db.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
            await db.commit()
    except aiosqlite.Error as e:
        logger.error("db_init_failed", db_path=str(db_path), error=str(e))
        raise DatabaseError(
            f"Failed to initialize database at {db_path}: {e}. "
            "Check that the directory is writable and the file is a SQLite database."
        ) from e

    _restrict_permissions(db_path)
    logger.info("db_initialized", db_path=str(db_path), schema_version=SCHEMA_VERSION)


async def verify_schema(db_path: str | Path) -> bool:
    """True if the processed-message table exists with every expected column."""
    try:
        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute(f"PRAGMA table_info({PROCESSED_TABLE})")
            columns = {row[1] for row in await cursor.fetchall()}
    except aiosqlite.Error as e:
        logger.error("db_schema_check_failed", db_path=str(db_path), error=str(e))
        return False

    missing = PROCESSED_COLUMNS - columns
    if missing:
        logger.warning("db_schema_incomplete", db_path=str(db_path), missing=sorted(missing))
        return False
    return True
