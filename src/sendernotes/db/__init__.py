"""Storage layer for Sender Notes.

This package provides the versioned schema, the storage adapter contract with
its SQLite and in-memory backends, and the data migration runner.

Usage:
    from sendernotes.db import MIGRATIONS, MigrationRunner, SQLiteAdapter

    adapter = SQLiteAdapter("data/sender_notes.db")
    report = await MigrationRunner(adapter, MIGRATIONS).run_pending()

    note = await adapter.get_note_by_id(1)
    await adapter.close()
"""

from sendernotes.db.adapter import StorageAdapter
from sendernotes.db.memory_adapter import MemoryAdapter
from sendernotes.db.migrations import (
    MIGRATIONS,
    Migration,
    MigrationReport,
    MigrationRunner,
)
from sendernotes.db.models import MigrationRecord, Note, Template
from sendernotes.db.schema import (
    DB_SCHEMA,
    SCHEMA_VERSION,
    IndexDef,
    IndexModification,
    SchemaVersion,
    StoreDef,
    upgrade_database,
    verify_schema,
)
from sendernotes.db.sqlite_adapter import SQLiteAdapter

__all__ = [
    # Schema
    "DB_SCHEMA",
    "SCHEMA_VERSION",
    "SchemaVersion",
    "StoreDef",
    "IndexDef",
    "IndexModification",
    "upgrade_database",
    "verify_schema",
    # Adapters
    "StorageAdapter",
    "SQLiteAdapter",
    "MemoryAdapter",
    # Migrations
    "MIGRATIONS",
    "Migration",
    "MigrationReport",
    "MigrationRunner",
    # Records
    "Note",
    "Template",
    "MigrationRecord",
]
