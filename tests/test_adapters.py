"""Tests for the storage adapters.

Every test runs against both the SQLite and the in-memory backend through
the parametrized ``adapter`` fixture, so the two stay interchangeable.
"""

import asyncio
from datetime import datetime, timezone

import pytest

from sendernotes.core.errors import DatabaseError
from sendernotes.db.adapter import StorageAdapter, resequence
from sendernotes.db.models import Note, Template


def _note(pattern: str, match_type: str = "exact", text: str = "note") -> Note:
    now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    return Note(
        pattern=pattern,
        match_type=match_type,
        note=text,
        original_email=pattern,
        created_at=now,
        updated_at=now,
    )


class TestNoteStorage:
    """Tests for note CRUD."""

    @pytest.mark.asyncio
    async def test_save_assigns_id_and_round_trips(self, adapter: StorageAdapter) -> None:
        saved = await adapter.save_note(_note("alice@example.com", text="VIP"))

        assert saved.id is not None
        loaded = await adapter.get_note_by_id(saved.id)
        assert loaded == saved
        assert loaded.created_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_save_with_id_overwrites(self, adapter: StorageAdapter) -> None:
        saved = await adapter.save_note(_note("alice@example.com", text="first"))

        saved.note = "second"
        await adapter.save_note(saved)

        notes = await adapter.get_all_notes()
        assert list(notes) == [saved.id]
        assert notes[saved.id].note == "second"

    @pytest.mark.asyncio
    async def test_get_missing_note_returns_none(self, adapter: StorageAdapter) -> None:
        assert await adapter.get_note_by_id(999) is None

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, adapter: StorageAdapter) -> None:
        saved = await adapter.save_note(_note("alice@example.com"))

        await adapter.delete_note(saved.id)
        await adapter.delete_note(saved.id)

        assert saved.id not in await adapter.get_all_notes()

    @pytest.mark.asyncio
    async def test_ids_are_not_reused(self, adapter: StorageAdapter) -> None:
        first = await adapter.save_note(_note("a@x.com"))
        await adapter.delete_note(first.id)

        second = await adapter.save_note(_note("b@x.com"))

        assert second.id > first.id

    @pytest.mark.asyncio
    async def test_import_notes_keeps_ids(self, adapter: StorageAdapter) -> None:
        count = await adapter.import_notes({10: _note("a@x.com"), 20: _note("b@x.com")})

        assert count == 2
        notes = await adapter.get_all_notes()
        assert notes[10].pattern == "a@x.com"
        assert notes[20].pattern == "b@x.com"
        assert (await adapter.save_note(_note("c@x.com"))).id > 20


class TestNoteLookup:
    """Tests for indexed lookups."""

    @pytest.mark.asyncio
    async def test_find_notes_by_email_priority(self, adapter: StorageAdapter) -> None:
        contains = await adapter.save_note(_note("example", "contains"))
        ends = await adapter.save_note(_note("@example.com", "endsWith"))
        starts = await adapter.save_note(_note("alice", "startsWith"))
        exact = await adapter.save_note(_note("alice@example.com", "exact"))
        await adapter.save_note(_note("bob@example.com", "exact"))

        found = await adapter.find_notes_by_email("Alice@Example.com")

        assert [n.id for n in found] == [exact.id, starts.id, ends.id, contains.id]

    @pytest.mark.asyncio
    async def test_ends_with_longer_than_email(self, adapter: StorageAdapter) -> None:
        await adapter.save_note(_note("xalice@example.com", "endsWith"))

        assert await adapter.find_notes_by_email("alice@example.com") == []

    @pytest.mark.asyncio
    async def test_mixed_case_stored_patterns_still_match(self, adapter: StorageAdapter) -> None:
        """Rows written before patterns were lowercased match like any other."""
        await adapter.import_notes(
            {
                1: _note("foo@x.com"),
                2: _note("FOO@x.com"),
                3: _note("Foo", "startsWith"),
                4: _note("@X.COM", "endsWith"),
                5: _note("OO@", "contains"),
            }
        )

        found = await adapter.find_notes_by_email("foo@x.com")

        assert [n.id for n in found] == [1, 2, 3, 4, 5]

    @pytest.mark.asyncio
    async def test_find_duplicate(self, adapter: StorageAdapter) -> None:
        saved = await adapter.save_note(_note("alice@example.com"))

        assert (await adapter.find_duplicate("ALICE@example.com", "exact")).id == saved.id
        assert await adapter.find_duplicate("alice@example.com", "contains") is None
        assert await adapter.find_duplicate("alice@example.com", "exact", saved.id) is None


class TestTemplateStorage:
    """Tests for template CRUD and ordering."""

    @pytest.mark.asyncio
    async def test_add_appends_with_increasing_order(self, adapter: StorageAdapter) -> None:
        a = await adapter.add_template("A")
        b = await adapter.add_template("B")

        assert (a.order, b.order) == (0, 1)
        assert [t.text for t in await adapter.get_templates()] == ["A", "B"]

    @pytest.mark.asyncio
    async def test_update_and_missing_update(self, adapter: StorageAdapter) -> None:
        a = await adapter.add_template("A")

        updated = await adapter.update_template(a.id, "A2")

        assert updated.text == "A2"
        assert (await adapter.get_template_by_id(a.id)).text == "A2"
        assert await adapter.update_template(999, "nope") is None

    @pytest.mark.asyncio
    async def test_delete_template(self, adapter: StorageAdapter) -> None:
        a = await adapter.add_template("A")

        await adapter.delete_template(a.id)
        await adapter.delete_template(a.id)

        assert await adapter.get_templates() == []

    @pytest.mark.asyncio
    async def test_move_after(self, adapter: StorageAdapter) -> None:
        a = await adapter.add_template("A")
        await adapter.add_template("B")
        c = await adapter.add_template("C")

        await adapter.move_template(c.id, a.id)

        templates = await adapter.get_templates()
        assert [t.text for t in templates] == ["A", "C", "B"]
        assert [t.order for t in templates] == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_move_to_top_and_missing(self, adapter: StorageAdapter) -> None:
        await adapter.add_template("A")
        b = await adapter.add_template("B")

        await adapter.move_template(b.id, None)
        await adapter.move_template(999, None)

        assert [t.text for t in await adapter.get_templates()] == ["B", "A"]


class TestSettingsAndMigrations:
    """Tests for settings and migration bookkeeping."""

    @pytest.mark.asyncio
    async def test_settings_default_empty_then_replace(self, adapter: StorageAdapter) -> None:
        assert await adapter.get_settings() == {}

        await adapter.save_settings({"showBanner": True, "limit": 3})
        await adapter.save_settings({"theme": "dark"})

        assert await adapter.get_settings() == {"theme": "dark"}

    @pytest.mark.asyncio
    async def test_migration_records(self, adapter: StorageAdapter) -> None:
        when = datetime(2024, 1, 1, tzinfo=timezone.utc)
        await adapter.record_migration("001_a", when)

        records = await adapter.get_applied_migrations()
        assert [(r.id, r.applied_at) for r in records] == [("001_a", when)]

        await adapter.remove_migration_record("001_a")
        assert await adapter.get_applied_migrations() == []

    @pytest.mark.asyncio
    async def test_clear_all_keeps_migrations(self, adapter: StorageAdapter) -> None:
        await adapter.save_note(_note("a@x.com"))
        await adapter.add_template("A")
        await adapter.save_settings({"k": 1})
        await adapter.record_migration("001_a", datetime.now(timezone.utc))

        await adapter.clear_all()

        assert await adapter.get_all_notes() == {}
        assert await adapter.get_templates() == []
        assert await adapter.get_settings() == {}
        assert len(await adapter.get_applied_migrations()) == 1


class TestTransactions:
    """Tests for atomic groups of adapter calls."""

    @pytest.mark.asyncio
    async def test_rollback_on_error(self, adapter: StorageAdapter) -> None:
        await adapter.save_note(_note("keep@x.com"))

        with pytest.raises(RuntimeError):
            async with adapter.transaction():
                await adapter.save_note(_note("gone@x.com"))
                await adapter.add_template("gone")
                raise RuntimeError("boom")

        notes = await adapter.get_all_notes()
        assert [n.pattern for n in notes.values()] == ["keep@x.com"]
        assert await adapter.get_templates() == []

    @pytest.mark.asyncio
    async def test_nested_rollback_keeps_outer_work(self, adapter: StorageAdapter) -> None:
        async with adapter.transaction():
            await adapter.save_note(_note("outer@x.com"))
            with pytest.raises(RuntimeError):
                async with adapter.transaction():
                    await adapter.save_note(_note("inner@x.com"))
                    raise RuntimeError("inner")

        notes = await adapter.get_all_notes()
        assert [n.pattern for n in notes.values()] == ["outer@x.com"]

    @pytest.mark.asyncio
    async def test_in_transaction(self, adapter: StorageAdapter) -> None:
        assert not adapter.in_transaction
        async with adapter.transaction():
            assert adapter.in_transaction
        assert not adapter.in_transaction

    @pytest.mark.asyncio
    async def test_concurrent_tasks_are_serialized(self, adapter: StorageAdapter) -> None:
        """A second task waits for the first task's transaction to finish."""
        events: list[str] = []

        async def first() -> None:
            async with adapter.transaction():
                events.append("first-start")
                await asyncio.sleep(0.05)
                await adapter.save_note(_note("first@x.com"))
                events.append("first-end")

        async def second() -> None:
            await asyncio.sleep(0.01)
            await adapter.save_note(_note("second@x.com"))
            events.append("second")

        await asyncio.gather(first(), second())

        assert events == ["first-start", "first-end", "second"]


class TestResequence:
    """Tests for the shared resequence helper."""

    def _templates(self) -> list[Template]:
        return [Template(id=i, text=t, order=i * 10) for i, t in enumerate("ABC", start=1)]

    def test_move_after_missing_target_goes_last(self) -> None:
        templates = self._templates()

        assert resequence(templates, 1, 999)

        assert [t.text for t in templates] == ["B", "C", "A"]
        assert [t.order for t in templates] == [0, 1, 2]

    def test_missing_template_untouched(self) -> None:
        templates = self._templates()

        assert not resequence(templates, 42, None)

        assert [t.order for t in templates] == [10, 20, 30]


class TestSQLiteErrors:
    """Tests for SQLite-specific failure handling."""

    @pytest.mark.asyncio
    async def test_unopenable_database_raises_database_error(self, tmp_path) -> None:
        from sendernotes.db.sqlite_adapter import SQLiteAdapter

        blocker = tmp_path / "not_a_dir"
        blocker.write_text("file")
        adapter = SQLiteAdapter(blocker / "notes.db")

        with pytest.raises(DatabaseError):
            await adapter.get_all_notes()
        await adapter.close()


class TestSQLiteLocking:
    """Tests for how the SQLite adapter uses database locks."""

    @pytest.mark.asyncio
    async def test_reads_do_not_need_the_write_lock(self, db_path) -> None:
        import aiosqlite

        from sendernotes.db.sqlite_adapter import SQLiteAdapter

        adapter = SQLiteAdapter(db_path)
        await adapter.save_note(_note("alice@example.com"))

        writer = await aiosqlite.connect(db_path, isolation_level=None)
        try:
            await writer.execute("BEGIN IMMEDIATE")

            notes = await asyncio.wait_for(adapter.get_all_notes(), timeout=2)
            found = await asyncio.wait_for(
                adapter.find_notes_by_email("alice@example.com"), timeout=2
            )

            assert len(notes) == 1
            assert len(found) == 1
            await writer.execute("ROLLBACK")
        finally:
            await writer.close()
            await adapter.close()

    @pytest.mark.asyncio
    async def test_read_waits_for_another_tasks_transaction(self, db_path) -> None:
        from sendernotes.db.sqlite_adapter import SQLiteAdapter

        adapter = SQLiteAdapter(db_path)
        seen: list[int] = []

        async def writer() -> None:
            async with adapter.transaction():
                await adapter.save_note(_note("a@x.com"))
                await asyncio.sleep(0.05)
                await adapter.save_note(_note("b@x.com"))

        async def reader() -> None:
            await asyncio.sleep(0.01)
            seen.append(len(await adapter.get_all_notes()))

        try:
            await asyncio.gather(writer(), reader())
        finally:
            await adapter.close()

        assert seen == [2]
