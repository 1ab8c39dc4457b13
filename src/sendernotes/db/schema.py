"""Versioned SQLite schema for Sender Notes.

The physical layout is declared as a map of schema versions. Each version
lists the stores (tables) it introduces and the index modifications it makes
to existing stores. Upgrading from version N to version M applies versions
N+1..M in order, so a database at any prior version reaches the current one
in a single pass.

Applying a version is re-entrant: stores and indexes that already exist are
skipped, and index deletions of absent indexes are skipped. The whole upgrade
plus the version bump runs in one transaction; if anything fails, nothing of
the upgrade persists and SchemaUpgradeError is raised.

Data backfills do NOT belong here. Row-level changes are data migrations
(see sendernotes.db.migrations) and run after the schema is current.

Stores in version 1:
- migrations: Applied data migrations
- notes: Sender notes, indexed by (pattern, match_type) for duplicate lookup
- templates: Canned note texts, indexed by order
- settings: One JSON settings record keyed 'default'

Usage:
    from sendernotes.db.schema import upgrade_database

    async with aiosqlite.connect(path, isolation_level=None) as db:
        version = await upgrade_database(db)
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field

import aiosqlite

from sendernotes.core.errors import SchemaUpgradeError
from sendernotes.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class IndexDef:
    """A secondary index on one or more columns."""

    name: str
    key_path: tuple[str, ...]
    unique: bool = False


@dataclass(frozen=True, slots=True)
class StoreDef:
    """A store (table).

    Attributes:
        name: Table name
        key_path: Primary key column
        columns: (name, SQL type/constraints) pairs for the non-key columns
        auto_increment: Integer keys generated on insert and never reused
        indexes: Secondary indexes created with the store
    """

    name: str
    key_path: str
    columns: tuple[tuple[str, str], ...] = ()
    auto_increment: bool = False
    indexes: tuple[IndexDef, ...] = ()


@dataclass(frozen=True, slots=True)
class IndexModification:
    """Add and/or delete an index on an existing store."""

    store: str
    add_index: IndexDef | None = None
    delete_index: str | None = None


@dataclass(frozen=True, slots=True)
class SchemaVersion:
    """Changes applied when upgrading TO a version."""

    description: str
    stores: tuple[StoreDef, ...] = ()
    modifications: tuple[IndexModification, ...] = field(default_factory=tuple)


DB_SCHEMA: dict[int, SchemaVersion] = {
    1: SchemaVersion(
        description="Initial schema - create all stores",
        stores=(
            StoreDef(
                name="migrations",
                key_path="id",
                columns=(("applied_at", "TEXT NOT NULL"),),
                indexes=(IndexDef("applied_at", ("applied_at",)),),
            ),
            StoreDef(
                name="notes",
                key_path="id",
                auto_increment=True,
                columns=(
                    ("pattern", "TEXT NOT NULL"),
                    ("match_type", "TEXT NOT NULL"),
                    ("note", "TEXT NOT NULL"),
                    ("original_email", "TEXT"),
                    ("created_at", "TEXT"),
                    ("updated_at", "TEXT"),
                ),
                indexes=(
                    IndexDef("pattern", ("pattern",)),
                    IndexDef("match_type", ("match_type",)),
                    IndexDef("pattern_match_type", ("pattern", "match_type")),
                ),
            ),
            StoreDef(
                name="templates",
                key_path="id",
                auto_increment=True,
                columns=(
                    ("text", "TEXT NOT NULL"),
                    ("order", "INTEGER NOT NULL DEFAULT 0"),
                    ("created_at", "TEXT"),
                    ("updated_at", "TEXT"),
                ),
                indexes=(IndexDef("order", ("order",)),),
            ),
            StoreDef(
                name="settings",
                key_path="id",
                columns=(("settings", "TEXT NOT NULL DEFAULT '{}'"),),
            ),
        ),
    ),
}

# Current schema version - add a DB_SCHEMA entry to bump it
SCHEMA_VERSION = max(DB_SCHEMA)


def _quote(identifier: str) -> str:
    """Quote an SQL identifier ('order' is a keyword)."""
    return '"' + identifier.replace('"', '""') + '"'


def index_name(store: str, index: str) -> str:
    """Physical index name (SQLite index names are database-wide)."""
    return f"idx_{store}_{index}"


async def _existing_objects(db: aiosqlite.Connection, kind: str) -> set[str]:
    cursor = await db.execute("SELECT name FROM sqlite_master WHERE type = ?", (kind,))
    return {row[0] for row in await cursor.fetchall()}


async def _create_store(db: aiosqlite.Connection, store: StoreDef) -> None:
    if store.auto_increment:
        key_column = f"{_quote(store.key_path)} INTEGER PRIMARY KEY AUTOINCREMENT"
    else:
        key_column = f"{_quote(store.key_path)} TEXT PRIMARY KEY"
    columns = [key_column] + [f"{_quote(name)} {decl}" for name, decl in store.columns]
    await db.execute(f"CREATE TABLE {_quote(store.name)} ({', '.join(columns)})")

    for index in store.indexes:
        await _create_index(db, store.name, index)

    logger.info(
        "store_created",
        store=store.name,
        auto_increment=store.auto_increment,
        indexes=[index.name for index in store.indexes],
    )


async def _create_index(db: aiosqlite.Connection, store: str, index: IndexDef) -> None:
    unique = "UNIQUE " if index.unique else ""
    key_columns = ", ".join(_quote(column) for column in index.key_path)
    await db.execute(
        f"CREATE {unique}INDEX {_quote(index_name(store, index.name))} "
        f"ON {_quote(store)} ({key_columns})"
    )


async def apply_schema_version(
    db: aiosqlite.Connection,
    version: int,
    schema: Mapping[int, SchemaVersion] = DB_SCHEMA,
) -> None:
    """Apply the changes of a single schema version.

    Missing versions are skipped. Existing stores and indexes are left alone,
    so applying a version twice is a no-op.

    Args:
        db: Connection with an open transaction
        version: Version whose changes should be applied
        schema: Declarative schema map
    """
    definition = schema.get(version)
    if definition is None:
        return

    logger.info("schema_version_applying", version=version, description=definition.description)

    tables = await _existing_objects(db, "table")
    for store in definition.stores:
        if store.name not in tables:
            await _create_store(db, store)
            tables.add(store.name)

    for mod in definition.modifications:
        if mod.store not in tables:
            logger.warning("schema_modification_skipped", store=mod.store, reason="store missing")
            continue

        indexes = await _existing_objects(db, "index")
        if mod.add_index and index_name(mod.store, mod.add_index.name) not in indexes:
            await _create_index(db, mod.store, mod.add_index)
            logger.info("index_added", store=mod.store, index=mod.add_index.name)

        if mod.delete_index and index_name(mod.store, mod.delete_index) in indexes:
            await db.execute(f"DROP INDEX {_quote(index_name(mod.store, mod.delete_index))}")
            logger.info("index_deleted", store=mod.store, index=mod.delete_index)


async def apply_schema_upgrade(
    db: aiosqlite.Connection,
    old_version: int,
    new_version: int,
    schema: Mapping[int, SchemaVersion] = DB_SCHEMA,
) -> None:
    """Apply every schema version in (old_version, new_version] in order.

    Args:
        db: Connection with an open transaction
        old_version: Version currently stored (0 for a new database)
        new_version: Target version
        schema: Declarative schema map
    """
    logger.info("schema_upgrade_started", old_version=old_version, new_version=new_version)
    for version in range(old_version + 1, new_version + 1):
        await apply_schema_version(db, version, schema)


async def get_schema_version(db: aiosqlite.Connection) -> int:
    """Read the stored schema version (0 for a new database)."""
    cursor = await db.execute("PRAGMA user_version")
    row = await cursor.fetchone()
    return int(row[0]) if row else 0


async def upgrade_database(
    db: aiosqlite.Connection,
    schema: Mapping[int, SchemaVersion] = DB_SCHEMA,
) -> int:
    """Bring a database to the latest version declared in schema.

    The connection must be in autocommit mode (isolation_level=None) so this
    function controls the transaction boundaries itself.

    Args:
        db: Open connection
        schema: Declarative schema map

    Returns:
        The schema version the database is now at

    Raises:
        SchemaUpgradeError: If the stored version is newer than the schema, or
            if the upgrade transaction fails (nothing is persisted)
    """
    target = max(schema) if schema else 0
    current = await get_schema_version(db)

    if current > target:
        raise SchemaUpgradeError(
            f"Database schema version {current} is newer than supported version {target}. "
            "Upgrade Sender Notes or restore a database written by this version.",
            from_version=current,
            to_version=target,
        )
    if current == target:
        return current

    try:
        await db.execute("BEGIN IMMEDIATE")
        await apply_schema_upgrade(db, current, target, schema)
        # user_version is transactional; it is rolled back with the upgrade
        await db.execute(f"PRAGMA user_version = {int(target)}")
        await db.execute("COMMIT")
    except aiosqlite.Error as e:
        await _rollback_quietly(db)
        logger.error(
            "schema_upgrade_failed",
            old_version=current,
            new_version=target,
            error=str(e),
        )
        raise SchemaUpgradeError(
            f"Failed to upgrade database schema from version {current} to {target}: {e}. "
            "No changes were applied. Check that the database file is writable and not corrupted.",
            from_version=current,
            to_version=target,
        ) from e
    except BaseException:
        await _rollback_quietly(db)
        raise

    logger.info("schema_upgraded", old_version=current, new_version=target)
    return target


async def _rollback_quietly(db: aiosqlite.Connection) -> None:
    try:
        await db.execute("ROLLBACK")
    except aiosqlite.Error as e:
        # No transaction open (BEGIN itself failed)
        logger.debug("schema_rollback_skipped", error=str(e))


async def verify_schema(
    db: aiosqlite.Connection,
    schema: Mapping[int, SchemaVersion] = DB_SCHEMA,
) -> list[str]:
    """Check that every store declared up to the current version exists.

    Args:
        db: Open connection
        schema: Declarative schema map

    Returns:
        Names of missing stores (empty when the schema is complete)
    """
    tables = await _existing_objects(db, "table")
    declared = [store.name for version in sorted(schema) for store in schema[version].stores]
    missing = [name for name in declared if name not in tables]
    if missing:
        logger.warning("schema_stores_missing", missing=missing)
    return missing
