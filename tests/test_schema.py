"""Tests for the declarative schema and upgrade process."""

from pathlib import Path

import aiosqlite
import pytest

from sendernotes.core.errors import SchemaUpgradeError
from sendernotes.db.schema import (
    DB_SCHEMA,
    SCHEMA_VERSION,
    IndexDef,
    IndexModification,
    SchemaVersion,
    StoreDef,
    get_schema_version,
    index_name,
    upgrade_database,
    verify_schema,
)
from sendernotes.db.sqlite_adapter import SQLiteAdapter

V2_SCHEMA = {
    **DB_SCHEMA,
    2: SchemaVersion(
        description="Add note labels",
        stores=(
            StoreDef(
                name="labels",
                key_path="id",
                auto_increment=True,
                columns=(("name", "TEXT NOT NULL"),),
                indexes=(IndexDef("name", ("name",), unique=True),),
            ),
        ),
        modifications=(
            IndexModification(
                store="notes", add_index=IndexDef("updated_at", ("updated_at",))
            ),
            IndexModification(store="notes", delete_index="match_type"),
        ),
    ),
}


_INSERT_NOTE = "INSERT INTO notes (pattern, match_type, note) VALUES ('a', 'exact', 'n')"


async def _objects(db: aiosqlite.Connection, kind: str) -> set[str]:
    cursor = await db.execute("SELECT name FROM sqlite_master WHERE type = ?", (kind,))
    return {row[0] for row in await cursor.fetchall()}


@pytest.fixture
async def conn(db_path: Path):
    """A raw autocommit connection, as the adapter opens it."""
    db = await aiosqlite.connect(db_path, isolation_level=None)
    yield db
    await db.close()


class TestSchemaDefinition:
    """Tests for the declared schema."""

    def test_current_version(self) -> None:
        assert SCHEMA_VERSION == 1
        assert SCHEMA_VERSION == max(DB_SCHEMA)

    def test_version_one_stores(self) -> None:
        names = {store.name for store in DB_SCHEMA[1].stores}
        assert names == {"migrations", "notes", "templates", "settings"}

    def test_index_name(self) -> None:
        assert index_name("notes", "pattern") == "idx_notes_pattern"


class TestUpgradeDatabase:
    """Tests for upgrade_database."""

    @pytest.mark.asyncio
    async def test_new_database_gets_all_stores_and_indexes(
        self, conn: aiosqlite.Connection
    ) -> None:
        version = await upgrade_database(conn)

        assert version == 1
        assert await get_schema_version(conn) == 1
        assert {"migrations", "notes", "templates", "settings"} <= await _objects(conn, "table")
        assert {
            "idx_notes_pattern",
            "idx_notes_match_type",
            "idx_notes_pattern_match_type",
            "idx_templates_order",
            "idx_migrations_applied_at",
        } <= await _objects(conn, "index")
        assert await verify_schema(conn) == []

    @pytest.mark.asyncio
    async def test_upgrade_is_idempotent(self, conn: aiosqlite.Connection) -> None:
        await upgrade_database(conn)
        await conn.execute(_INSERT_NOTE)

        assert await upgrade_database(conn) == 1

        cursor = await conn.execute("SELECT COUNT(*) FROM notes")
        assert (await cursor.fetchone())[0] == 1

    @pytest.mark.asyncio
    async def test_upgrade_across_versions(self, conn: aiosqlite.Connection) -> None:
        await upgrade_database(conn)
        await conn.execute(_INSERT_NOTE)

        assert await upgrade_database(conn, V2_SCHEMA) == 2

        assert "labels" in await _objects(conn, "table")
        indexes = await _objects(conn, "index")
        assert "idx_labels_name" in indexes
        assert "idx_notes_updated_at" in indexes
        assert "idx_notes_match_type" not in indexes
        cursor = await conn.execute("SELECT COUNT(*) FROM notes")
        assert (await cursor.fetchone())[0] == 1

    @pytest.mark.asyncio
    async def test_fresh_database_straight_to_v2(self, conn: aiosqlite.Connection) -> None:
        assert await upgrade_database(conn, V2_SCHEMA) == 2
        assert await verify_schema(conn, V2_SCHEMA) == []

    @pytest.mark.asyncio
    async def test_failed_upgrade_changes_nothing(self, conn: aiosqlite.Connection) -> None:
        await upgrade_database(conn)
        broken = {
            **DB_SCHEMA,
            2: SchemaVersion(
                description="Broken",
                stores=(
                    StoreDef(name="good", key_path="id", columns=(("a", "TEXT"),)),
                    StoreDef(name="bad", key_path="id", columns=(("b", "TEXT CHECK ("),)),
                ),
            ),
        }

        with pytest.raises(SchemaUpgradeError) as exc_info:
            await upgrade_database(conn, broken)

        assert exc_info.value.from_version == 1
        assert exc_info.value.to_version == 2
        assert await get_schema_version(conn) == 1
        assert "good" not in await _objects(conn, "table")

    @pytest.mark.asyncio
    async def test_newer_database_is_rejected(self, conn: aiosqlite.Connection) -> None:
        await conn.execute("PRAGMA user_version = 7")

        with pytest.raises(SchemaUpgradeError, match="newer"):
            await upgrade_database(conn)

    @pytest.mark.asyncio
    async def test_modification_on_missing_store_is_skipped(
        self, conn: aiosqlite.Connection
    ) -> None:
        schema = {
            1: SchemaVersion(
                description="Only a modification",
                modifications=(
                    IndexModification(store="ghost", add_index=IndexDef("x", ("x",))),
                ),
            )
        }

        assert await upgrade_database(conn, schema) == 1

    @pytest.mark.asyncio
    async def test_verify_schema_reports_missing(self, conn: aiosqlite.Connection) -> None:
        await upgrade_database(conn)
        await conn.execute("DROP TABLE settings")

        assert await verify_schema(conn) == ["settings"]


class TestAdapterSchema:
    """Tests for schema handling when the SQLite adapter opens a database."""

    @pytest.mark.asyncio
    async def test_adapter_upgrades_on_first_use(self, db_path: Path) -> None:
        adapter = SQLiteAdapter(db_path, schema=V2_SCHEMA)
        try:
            await adapter.get_all_notes()
        finally:
            await adapter.close()

        async with aiosqlite.connect(db_path) as db:
            assert await get_schema_version(db) == 2

    @pytest.mark.asyncio
    async def test_adapter_refuses_newer_database(self, db_path: Path) -> None:
        newer = SQLiteAdapter(db_path, schema=V2_SCHEMA)
        try:
            await newer.get_all_notes()
        finally:
            await newer.close()

        older = SQLiteAdapter(db_path)
        try:
            with pytest.raises(SchemaUpgradeError):
                await older.get_all_notes()
        finally:
            await older.close()

    @pytest.mark.asyncio
    async def test_database_file_is_private(self, db_path: Path) -> None:
        adapter = SQLiteAdapter(db_path)
        try:
            await adapter.get_settings()
        finally:
            await adapter.close()

        assert db_path.stat().st_mode & 0o777 == 0o600

    @pytest.mark.asyncio
    async def test_adapter_refuses_database_missing_a_store(self, db_path: Path) -> None:
        adapter = SQLiteAdapter(db_path)
        try:
            await adapter.get_settings()
        finally:
            await adapter.close()
        async with aiosqlite.connect(db_path) as db:
            await db.execute("DROP TABLE templates")
            await db.commit()

        reopened = SQLiteAdapter(db_path)
        try:
            with pytest.raises(SchemaUpgradeError, match="missing stores: templates"):
                await reopened.get_templates()
        finally:
            await reopened.close()
