"""Bounded, append-only log ledger with a JSON-lines mirror on disk.

The ledger is the audit surface of the service: every component records its
significant events here, and the CLI and HTTP API query it. Entries live in
an in-memory window capped at ``max_entries`` (oldest evicted first) and the
same window is mirrored to a line-oriented file, one JSON object per line.

Writes to disk are handed to a single background worker so that ``log()``
never blocks on file I/O. Pending writes are coalesced: however many entries
arrive while a write is queued, the worker rewrites the file once from the
latest snapshot.

Each entry is also forwarded to structlog at the matching level, so the
ledger and the process log tell the same story.

Usage:
    from autoreply.core.ledger import LogLedger

    ledger = LogLedger("logs/app.log", max_entries=1000)
    ledger.info("Connected to IMAP server", account="me@example.com")

    recent = ledger.recent(50)
    errors = ledger.by_level("ERROR")

    ledger.close()  # flush pending writes on shutdown
"""

from __future__ import annotations

import json
import os
import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

from autoreply.core.errors import LedgerError
from autoreply.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_ENTRIES = 1000

LogLevel = Literal["INFO", "WARNING", "ERROR"]
LOG_LEVELS: tuple[LogLevel, ...] = ("INFO", "WARNING", "ERROR")


@dataclass(frozen=True)
class LogEntry:
    """A single ledger event. Never mutated after creation."""

    id: int
    level: LogLevel
    message: str
    email_account: str | None
    created_at: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LogEntry:
        """Build an entry from a persisted line.

        Raises:
            ValueError: If required fields are missing or malformed
        """
        level = data.get("level")
        if level not in LOG_LEVELS:
            raise ValueError(f"Unknown log level: {level!r}")
        entry_id = data.get("id")
        if not isinstance(entry_id, int) or isinstance(entry_id, bool) or entry_id < 1:
            raise ValueError(f"Invalid log entry id: {entry_id!r}")
        message = data.get("message")
        if not isinstance(message, str):
            raise ValueError("Log entry message must be a string")
        account = data.get("email_account")
        return cls(
            id=entry_id,
            level=level,
            message=message,
            email_account=account if isinstance(account, str) else None,
            created_at=str(data.get("created_at") or ""),
        )


class LogLedger:
    """In-memory ledger of operational events with a durable mirror.

    Thread-safe: the scheduler thread, the asyncio loop and concurrent
    per-message workflows may all append at once.

    Attributes:
        path: Location of the JSON-lines mirror
        max_entries: Size of the retained window
    """

    def __init__(self, path: str | Path, max_entries: int = DEFAULT_MAX_ENTRIES):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")

        self.path = Path(path)
        self.max_entries = max_entries

        self._lock = threading.Lock()
        self._entries: deque[LogEntry] = deque(maxlen=max_entries)
        self._next_id = 1
        self._write_pending = False
        self._closed = False
        # Bumped by clear(); a snapshot from an older generation is discarded
        self._generation = 0
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="log-ledger")
        self._last_write: Future[None] | None = None

        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._load()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def _load(self) -> None:
        """Load persisted entries, skipping lines that do not parse."""
        if not self.path.exists():
            return

        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise LedgerError(
                f"Failed to read log ledger at {self.path}: {e}. "
                "Check file permissions or remove the file to start fresh."
            ) from e

        loaded: list[LogEntry] = []
        skipped = 0
        for line in text.splitlines():
            if not line.strip():
                continue
            try:
                loaded.append(LogEntry.from_dict(json.loads(line)))
            except (json.JSONDecodeError, ValueError, TypeError, AttributeError):
                skipped += 1

        if loaded:
            self._next_id = max(entry.id for entry in loaded) + 1
        self._entries.extend(loaded)

        logger.debug(
            "ledger_loaded",
            path=str(self.path),
            entries=len(self._entries),
            skipped_lines=skipped,
            next_id=self._next_id,
        )

    def flush(self) -> None:
        """Block until every pending write has reached disk."""
        with self._lock:
            pending = self._last_write
        if pending is not None:
            pending.result()

    def close(self) -> None:
        """Flush pending writes and stop the background writer."""
        if self._closed:
            return
        self.flush()
        self._closed = True
        self._executor.shutdown(wait=True)

    # =========================================================================
    # Append
    # =========================================================================

    def log(self, level: LogLevel, message: str, account: str | None = None) -> LogEntry:
        """Append an event and schedule the mirror rewrite.

        Args:
            level: INFO, WARNING or ERROR
            message: Human-readable description of the event
            account: Email address of the account involved, if any

        Returns:
            The created LogEntry
        """
        if level not in LOG_LEVELS:
            raise ValueError(f"Unknown log level: {level!r}")

        with self._lock:
            entry = LogEntry(
                id=self._next_id,
                level=level,
                message=message,
                email_account=account or None,
                created_at=datetime.now(UTC).isoformat(),
            )
            self._next_id += 1
            self._entries.append(entry)
            self._schedule_write()

        _forward_to_structlog(entry)
        return entry

    def info(self, message: str, account: str | None = None) -> LogEntry:
        return self.log("INFO", message, account)

    def warning(self, message: str, account: str | None = None) -> LogEntry:
        return self.log("WARNING", message, account)

    def error(self, message: str, account: str | None = None) -> LogEntry:
        return self.log("ERROR", message, account)

    # =========================================================================
    # Query
    # =========================================================================

    def all(self) -> list[LogEntry]:
        """All retained entries, most recent first."""
        with self._lock:
            return list(reversed(self._entries))

    def recent(self, count: int) -> list[LogEntry]:
        """The ``count`` most recent entries, most recent first."""
        if count <= 0:
            return []
        return self.all()[:count]

    def by_level(self, level: str) -> list[LogEntry]:
        """Entries with the given level, most recent first."""
        level = level.upper()
        return [entry for entry in self.all() if entry.level == level]

    def by_account(self, account: str) -> list[LogEntry]:
        """Entries tagged with the given account, most recent first."""
        return [entry for entry in self.all() if entry.email_account == account]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # =========================================================================
    # Clear
    # =========================================================================

    def clear(self) -> None:
        """Drop every entry, reset ids to 1 and delete the mirror file.

        Destructive and irreversible.
        """
        self.flush()
        with self._lock:
            self._entries.clear()
            self._next_id = 1
            self._generation += 1
            try:
                self.path.unlink(missing_ok=True)
            except OSError as e:
                raise LedgerError(f"Failed to remove log ledger at {self.path}: {e}") from e

        logger.info("ledger_cleared", path=str(self.path))

    # =========================================================================
    # Persistence
    # =========================================================================

    def _schedule_write(self) -> None:
        """Queue a mirror rewrite unless one is already waiting. Caller holds the lock."""
        if self._write_pending or self._closed:
            return
        self._write_pending = True
        self._last_write = self._executor.submit(self._write_snapshot)

    def _write_snapshot(self) -> None:
        """Rewrite the mirror from the current window (runs on the writer thread)."""
        with self._lock:
            self._write_pending = False
            snapshot = list(self._entries)
            generation = self._generation

        try:
            if not snapshot:
                with self._lock:
                    if generation == self._generation:
                        self.path.unlink(missing_ok=True)
                return

            data = "".join(
                json.dumps(entry.to_dict(), ensure_ascii=False) + "\n" for entry in snapshot
            )
            tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp_path.write_text(data, encoding="utf-8")
            with self._lock:
                if generation != self._generation:
                    tmp_path.unlink(missing_ok=True)
                    return
                os.replace(tmp_path, self.path)
        except OSError as e:
            # Logging must never fail because the disk did
            logger.error("ledger_write_failed", path=str(self.path), error=str(e))


def _forward_to_structlog(entry: LogEntry) -> None:
    method = {"INFO": logger.info, "WARNING": logger.warning, "ERROR": logger.error}[entry.level]
    method(entry.message, ledger_id=entry.id, account=entry.email_account)
