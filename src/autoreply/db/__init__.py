"""Database layer for the auto-reply service.

This module provides SQLite access with async operations for the
processed-message store.

Usage:
    from autoreply.db import DatabaseStore

    store = DatabaseStore("data/autoreply.db")
    await store.initialize()

    already = await store.has("me@example.com", "<abc@mail.example.com>")
"""

from autoreply.db.models import (
    SCHEMA_VERSION,
    init_database,
    verify_schema,
)
from autoreply.db.store import DatabaseStore, ProcessedRecord

__all__ = [
    # Models
    "SCHEMA_VERSION",
    "init_database",
    "verify_schema",
    # Store
    "DatabaseStore",
    "ProcessedRecord",
]
