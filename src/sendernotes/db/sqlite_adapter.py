"""SQLite storage adapter built on aiosqlite.

One connection is opened lazily on first use and reused until close(). It
runs in autocommit mode so this module owns the transaction boundaries:
``BEGIN IMMEDIATE``/``COMMIT`` for outer transactions and savepoints for
nested ones. Single SELECTs outside a transaction run in autocommit mode.
Opening the connection brings the schema up to date (sendernotes.db.schema)
and checks every declared store exists before any other statement runs.

Usage:
    from sendernotes.db.sqlite_adapter import SQLiteAdapter

    async with SQLiteAdapter("data/sender_notes.db") as adapter:
        note = await adapter.save_note(Note(pattern="a@x.com", match_type="exact", note="VIP"))
        matches = await adapter.find_notes_by_email("A@X.COM")
"""

from __future__ import annotations

import asyncio
import json
import stat
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path

import aiosqlite

from sendernotes.core.errors import DatabaseError, SchemaUpgradeError
from sendernotes.core.logging import get_logger
from sendernotes.db.adapter import StorageAdapter, resequence
from sendernotes.db.models import (
    MigrationRecord,
    Note,
    SettingValue,
    Template,
    format_timestamp,
    parse_timestamp,
    utcnow,
)
from sendernotes.db.schema import DB_SCHEMA, SchemaVersion, upgrade_database, verify_schema

logger = get_logger(__name__)

IN_MEMORY = ":memory:"

SETTINGS_KEY = "default"

# Match-type push-down. The email is lowercased before binding and stored
# patterns go through py_lower (Python's str.lower, registered on the
# connection), so rows left with mixed case by older data still match the
# way sendernotes.matching does.
_FIND_BY_EMAIL_SQL = """
    SELECT * FROM (SELECT *, py_lower(pattern) AS lower_pattern FROM notes)
    WHERE (match_type = 'exact' AND lower_pattern = :email)
       OR (match_type = 'startsWith'
           AND substr(:email, 1, length(lower_pattern)) = lower_pattern)
       OR (match_type = 'endsWith'
           AND length(lower_pattern) <= length(:email)
           AND substr(:email, length(:email) - length(lower_pattern) + 1) = lower_pattern)
       OR (match_type = 'contains' AND instr(:email, lower_pattern) > 0)
    ORDER BY
        CASE match_type
            WHEN 'exact' THEN 0
            WHEN 'startsWith' THEN 1
            WHEN 'endsWith' THEN 2
            ELSE 3
        END,
        id
"""


def _py_lower(value: str | None) -> str | None:
    return value.lower() if value is not None else None


class SQLiteAdapter(StorageAdapter):
    """Storage adapter persisting to a local SQLite database file.

    Attributes:
        db_path: Path to the SQLite database file (or ":memory:")
    """

    name = "sqlite"

    def __init__(
        self,
        db_path: str | Path,
        schema: Mapping[int, SchemaVersion] = DB_SCHEMA,
    ):
        super().__init__()
        self.db_path = db_path if str(db_path) == IN_MEMORY else Path(db_path)
        self._schema = schema
        self._conn: aiosqlite.Connection | None = None
        self._open_lock = asyncio.Lock()

    # =========================================================================
    # Connection management
    # =========================================================================

    async def _connection(self) -> aiosqlite.Connection:
        """Get the shared connection, opening and upgrading it on first use."""
        if self._conn is None:
            async with self._open_lock:
                if self._conn is None:
                    self._conn = await self._open()
        return self._conn

    async def _open(self) -> aiosqlite.Connection:
        """Open the database, apply PRAGMAs and bring the schema up to date.

        Sets the PRAGMAs used for reliability and performance:
        - journal_mode: WAL for file databases
        - busy_timeout: 10s in case another process holds the file
        - foreign_keys: ON
        - synchronous: NORMAL (safe with WAL, faster writes)

        Raises:
            SchemaUpgradeError: If the schema cannot be upgraded
            DatabaseError: If the database cannot be opened
        """
        is_file = isinstance(self.db_path, Path)
        if is_file:
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                logger.error("database_dir_failed", db_path=str(self.db_path), error=str(e))
                raise DatabaseError(
                    f"Cannot create the directory for {self.db_path}: {e}. "
                    "Check storage.db_path in the config."
                ) from e

        try:
            db = await aiosqlite.connect(self.db_path, isolation_level=None)
        except aiosqlite.Error as e:
            logger.error("database_open_failed", db_path=str(self.db_path), error=str(e))
            raise DatabaseError(
                f"Failed to open database at {self.db_path}: {e}. "
                "Check that the directory is writable and the file is not corrupted."
            ) from e

        try:
            if is_file:
                cursor = await db.execute("PRAGMA journal_mode=WAL")
                mode = await cursor.fetchone()
                if mode and mode[0].lower() != "wal":
                    logger.warning(
                        "WAL mode not enabled",
                        requested="wal",
                        actual=mode[0],
                        db_path=str(self.db_path),
                    )
            await db.execute("PRAGMA busy_timeout = 10000")
            await db.execute("PRAGMA foreign_keys = ON")
            await db.execute("PRAGMA synchronous = NORMAL")
            await db.create_function("py_lower", 1, _py_lower, deterministic=True)
            db.row_factory = aiosqlite.Row

            version = await upgrade_database(db, self._schema)
            missing = await verify_schema(db, self._schema)
            if missing:
                raise SchemaUpgradeError(
                    f"Database at {self.db_path} is at schema version {version} but is "
                    f"missing stores: {', '.join(missing)}. Restore the database from a "
                    "backup or remove it to start fresh.",
                    from_version=version,
                    to_version=version,
                )
        except SchemaUpgradeError:
            await db.close()
            raise
        except aiosqlite.Error as e:
            await db.close()
            logger.error("database_init_failed", db_path=str(self.db_path), error=str(e))
            raise DatabaseError(f"Failed to initialize database at {self.db_path}: {e}") from e

        if is_file:
            self._restrict_permissions()

        logger.info("database_opened", db_path=str(self.db_path), schema_version=version)
        return db

    def _restrict_permissions(self) -> None:
        """Limit the database and its WAL files to owner read/write (0600).

        Notes describe real people, so other local users should not read them.
        """
        assert isinstance(self.db_path, Path)
        for suffix in ["", "-wal", "-shm"]:
            path = Path(f"{self.db_path}{suffix}")
            if path.exists():
                path.chmod(stat.S_IRUSR | stat.S_IWUSR)

    async def close(self) -> None:
        """Close the shared connection if it is open."""
        if self._conn is not None:
            conn, self._conn = self._conn, None
            await conn.close()
            logger.debug("database_closed", db_path=str(self.db_path))

    @asynccontextmanager
    async def _outer_transaction(self) -> AsyncIterator[None]:
        db = await self._connection()
        try:
            await db.execute("BEGIN IMMEDIATE")
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to begin transaction: {e}") from e

        try:
            yield
        except BaseException:
            try:
                await db.execute("ROLLBACK")
            except aiosqlite.Error as e:
                logger.error("transaction_rollback_failed", error=str(e))
            raise

        try:
            await db.execute("COMMIT")
        except aiosqlite.Error as e:
            logger.error("transaction_commit_failed", error=str(e))
            if db.in_transaction:
                await db.execute("ROLLBACK")
            raise DatabaseError(f"Failed to commit transaction: {e}") from e

    @asynccontextmanager
    async def _nested_transaction(self, depth: int) -> AsyncIterator[None]:
        db = await self._connection()
        savepoint = f"sp_{depth}"
        await db.execute(f"SAVEPOINT {savepoint}")
        try:
            yield
        except BaseException:
            await db.execute(f"ROLLBACK TO {savepoint}")
            await db.execute(f"RELEASE {savepoint}")
            raise
        await db.execute(f"RELEASE {savepoint}")

    @asynccontextmanager
    async def _db(self) -> AsyncIterator[aiosqlite.Connection]:
        """Get the connection inside a transaction.

        Usage:
            async with self._db() as db:
                await db.execute(...)
        """
        async with self.transaction():
            yield await self._connection()

    @asynccontextmanager
    async def _read_db(self) -> AsyncIterator[aiosqlite.Connection]:
        """Get the connection for a single SELECT.

        Joins the current task's transaction when one is open. Otherwise the
        statement runs in autocommit mode under the adapter lock, so a plain
        read never takes the database write lock.
        """
        if self.in_transaction:
            yield await self._connection()
            return
        async with self._tx_lock:
            yield await self._connection()

    # =========================================================================
    # Note Operations
    # =========================================================================

    async def get_all_notes(self) -> dict[int, Note]:
        try:
            async with self._read_db() as db:
                cursor = await db.execute("SELECT * FROM notes ORDER BY id")
                rows = await cursor.fetchall()
                return {row["id"]: self._row_to_note(row) for row in rows}

        except aiosqlite.Error as e:
            logger.error("Failed to get all notes", error=str(e))
            raise DatabaseError(f"Failed to get all notes: {e}") from e

    async def get_note_by_id(self, note_id: int) -> Note | None:
        try:
            async with self._read_db() as db:
                cursor = await db.execute("SELECT * FROM notes WHERE id = ?", (note_id,))
                row = await cursor.fetchone()
                return self._row_to_note(row) if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to get note", note_id=note_id, error=str(e))
            raise DatabaseError(f"Failed to get note {note_id}: {e}") from e

    async def save_note(self, note: Note) -> Note:
        values = (
            note.pattern,
            note.match_type,
            note.note,
            note.original_email,
            format_timestamp(note.created_at),
            format_timestamp(note.updated_at),
        )
        try:
            async with self._db() as db:
                if note.id is None:
                    cursor = await db.execute(
                        """
                        INSERT INTO notes (
                            pattern, match_type, note, original_email, created_at, updated_at
                        ) VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        values,
                    )
                    saved = note.with_id(cursor.lastrowid)
                else:
                    await db.execute(
                        """
                        INSERT INTO notes (
                            id, pattern, match_type, note, original_email, created_at, updated_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT(id) DO UPDATE SET
                            pattern = excluded.pattern,
                            match_type = excluded.match_type,
                            note = excluded.note,
                            original_email = excluded.original_email,
                            created_at = excluded.created_at,
                            updated_at = excluded.updated_at
                        """,
                        (note.id, *values),
                    )
                    saved = note

                logger.debug("Note saved", note_id=saved.id)
                return saved

        except aiosqlite.Error as e:
            logger.error("Failed to save note", note_id=note.id, error=str(e))
            raise DatabaseError(f"Failed to save note: {e}") from e

    async def delete_note(self, note_id: int) -> None:
        try:
            async with self._db() as db:
                await db.execute("DELETE FROM notes WHERE id = ?", (note_id,))

        except aiosqlite.Error as e:
            logger.error("Failed to delete note", note_id=note_id, error=str(e))
            raise DatabaseError(f"Failed to delete note {note_id}: {e}") from e

    async def find_notes_by_email(self, email: str) -> list[Note]:
        try:
            async with self._read_db() as db:
                cursor = await db.execute(_FIND_BY_EMAIL_SQL, {"email": email.lower()})
                rows = await cursor.fetchall()
                return [self._row_to_note(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("Failed to find notes by email", error=str(e))
            raise DatabaseError(f"Failed to find notes by email: {e}") from e

    async def find_duplicate(
        self, pattern: str, match_type: str, exclude_id: int | None = None
    ) -> Note | None:
        try:
            async with self._read_db() as db:
                # Served by idx_notes_pattern_match_type
                cursor = await db.execute(
                    """
                    SELECT * FROM notes
                    WHERE pattern = ? AND match_type = ? AND id IS NOT ?
                    ORDER BY id
                    LIMIT 1
                    """,
                    (pattern.lower(), match_type, exclude_id),
                )
                row = await cursor.fetchone()
                return self._row_to_note(row) if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to find duplicate note", match_type=match_type, error=str(e))
            raise DatabaseError(f"Failed to find duplicate note: {e}") from e

    async def import_notes(self, notes: dict[int, Note]) -> int:
        if not notes:
            return 0

        try:
            async with self._db() as db:
                await db.executemany(
                    """
                    INSERT OR REPLACE INTO notes (
                        id, pattern, match_type, note, original_email, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            note_id,
                            note.pattern,
                            note.match_type,
                            note.note,
                            note.original_email,
                            format_timestamp(note.created_at),
                            format_timestamp(note.updated_at),
                        )
                        for note_id, note in notes.items()
                    ],
                )
                logger.info("Notes imported", count=len(notes))
                return len(notes)

        except aiosqlite.Error as e:
            logger.error("Failed to import notes", count=len(notes), error=str(e))
            raise DatabaseError(f"Failed to import notes: {e}") from e

    def _row_to_note(self, row: aiosqlite.Row) -> Note:
        return Note(
            id=row["id"],
            pattern=row["pattern"],
            match_type=row["match_type"],
            note=row["note"],
            original_email=row["original_email"],
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )

    # =========================================================================
    # Template Operations
    # =========================================================================

    async def get_templates(self) -> list[Template]:
        try:
            async with self._read_db() as db:
                cursor = await db.execute('SELECT * FROM templates ORDER BY "order", id')
                rows = await cursor.fetchall()
                return [self._row_to_template(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("Failed to get templates", error=str(e))
            raise DatabaseError(f"Failed to get templates: {e}") from e

    async def get_template_by_id(self, template_id: int) -> Template | None:
        try:
            async with self._read_db() as db:
                cursor = await db.execute("SELECT * FROM templates WHERE id = ?", (template_id,))
                row = await cursor.fetchone()
                return self._row_to_template(row) if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to get template", template_id=template_id, error=str(e))
            raise DatabaseError(f"Failed to get template {template_id}: {e}") from e

    async def add_template(self, text: str) -> Template:
        now = utcnow()
        try:
            async with self._db() as db:
                cursor = await db.execute('SELECT MAX("order") FROM templates')
                row = await cursor.fetchone()
                order = 0 if row[0] is None else row[0] + 1

                cursor = await db.execute(
                    """
                    INSERT INTO templates (text, "order", created_at, updated_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (text, order, now.isoformat(), now.isoformat()),
                )
                return Template(
                    id=cursor.lastrowid,
                    text=text,
                    order=order,
                    created_at=now,
                    updated_at=now,
                )

        except aiosqlite.Error as e:
            logger.error("Failed to add template", error=str(e))
            raise DatabaseError(f"Failed to add template: {e}") from e

    async def update_template(self, template_id: int, text: str) -> Template | None:
        try:
            async with self._db() as db:
                existing = await self.get_template_by_id(template_id)
                if existing is None:
                    return None

                existing.text = text
                existing.updated_at = utcnow()
                await db.execute(
                    "UPDATE templates SET text = ?, updated_at = ? WHERE id = ?",
                    (text, existing.updated_at.isoformat(), template_id),
                )
                return existing

        except aiosqlite.Error as e:
            logger.error("Failed to update template", template_id=template_id, error=str(e))
            raise DatabaseError(f"Failed to update template {template_id}: {e}") from e

    async def delete_template(self, template_id: int) -> None:
        try:
            async with self._db() as db:
                await db.execute("DELETE FROM templates WHERE id = ?", (template_id,))

        except aiosqlite.Error as e:
            logger.error("Failed to delete template", template_id=template_id, error=str(e))
            raise DatabaseError(f"Failed to delete template {template_id}: {e}") from e

    async def move_template(self, template_id: int, after_id: int | None) -> None:
        try:
            async with self._db() as db:
                templates = await self.get_templates()
                if not resequence(templates, template_id, after_id):
                    return

                now = utcnow().isoformat()
                await db.executemany(
                    'UPDATE templates SET "order" = ?, updated_at = ? WHERE id = ?',
                    [(template.order, now, template.id) for template in templates],
                )
                logger.debug(
                    "Templates re-sequenced",
                    template_id=template_id,
                    after_id=after_id,
                    count=len(templates),
                )

        except aiosqlite.Error as e:
            logger.error("Failed to move template", template_id=template_id, error=str(e))
            raise DatabaseError(f"Failed to move template {template_id}: {e}") from e

    def _row_to_template(self, row: aiosqlite.Row) -> Template:
        return Template(
            id=row["id"],
            text=row["text"],
            order=row["order"],
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )

    # =========================================================================
    # Settings Operations
    # =========================================================================

    async def get_settings(self) -> dict[str, SettingValue]:
        try:
            async with self._read_db() as db:
                cursor = await db.execute(
                    "SELECT settings FROM settings WHERE id = ?", (SETTINGS_KEY,)
                )
                row = await cursor.fetchone()
                return json.loads(row["settings"]) if row else {}

        except aiosqlite.Error as e:
            logger.error("Failed to get settings", error=str(e))
            raise DatabaseError(f"Failed to get settings: {e}") from e

    async def save_settings(self, settings: dict[str, SettingValue]) -> None:
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO settings (id, settings) VALUES (?, ?)
                    ON CONFLICT(id) DO UPDATE SET settings = excluded.settings
                    """,
                    (SETTINGS_KEY, json.dumps(settings)),
                )

        except aiosqlite.Error as e:
            logger.error("Failed to save settings", error=str(e))
            raise DatabaseError(f"Failed to save settings: {e}") from e

    # =========================================================================
    # Migration Bookkeeping
    # =========================================================================

    async def get_applied_migrations(self) -> list[MigrationRecord]:
        try:
            async with self._read_db() as db:
                cursor = await db.execute("SELECT * FROM migrations ORDER BY applied_at, id")
                rows = await cursor.fetchall()
                return [
                    MigrationRecord(id=row["id"], applied_at=parse_timestamp(row["applied_at"]))
                    for row in rows
                ]

        except aiosqlite.Error as e:
            logger.error("Failed to get applied migrations", error=str(e))
            raise DatabaseError(f"Failed to get applied migrations: {e}") from e

    async def record_migration(self, migration_id: str, applied_at: datetime) -> None:
        try:
            async with self._db() as db:
                await db.execute(
                    "INSERT OR REPLACE INTO migrations (id, applied_at) VALUES (?, ?)",
                    (migration_id, applied_at.isoformat()),
                )

        except aiosqlite.Error as e:
            logger.error("Failed to record migration", migration_id=migration_id, error=str(e))
            raise DatabaseError(f"Failed to record migration {migration_id}: {e}") from e

    async def remove_migration_record(self, migration_id: str) -> None:
        try:
            async with self._db() as db:
                await db.execute("DELETE FROM migrations WHERE id = ?", (migration_id,))

        except aiosqlite.Error as e:
            logger.error("Failed to remove migration", migration_id=migration_id, error=str(e))
            raise DatabaseError(f"Failed to remove migration record {migration_id}: {e}") from e

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def clear_all(self) -> None:
        try:
            async with self._db() as db:
                await db.execute("DELETE FROM notes")
                await db.execute("DELETE FROM templates")
                await db.execute("DELETE FROM settings")
            logger.warning("All notes, templates and settings cleared", db_path=str(self.db_path))

        except aiosqlite.Error as e:
            logger.error("Failed to clear data", error=str(e))
            raise DatabaseError(f"Failed to clear data: {e}") from e
