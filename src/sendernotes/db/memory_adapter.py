"""In-process storage adapter.

Keeps everything in dictionaries for the lifetime of the adapter. Useful for
hosts without a writable profile directory and for exercising the
repository without a database file. Ids come from monotonic counters, so a
deleted id is never handed out again.

Transactions snapshot the state on entry and restore it if the block
raises, giving the same all-or-nothing behavior as the SQLite adapter.
"""

from __future__ import annotations

import copy
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime

from sendernotes.core.logging import get_logger
from sendernotes.db.adapter import StorageAdapter, resequence
from sendernotes.db.models import MigrationRecord, Note, SettingValue, Template, utcnow
from sendernotes.matching import rank_matches

logger = get_logger(__name__)


@dataclass
class _State:
    notes: dict[int, Note] = field(default_factory=dict)
    templates: dict[int, Template] = field(default_factory=dict)
    settings: dict[str, SettingValue] = field(default_factory=dict)
    migrations: dict[str, datetime] = field(default_factory=dict)
    next_note_id: int = 1
    next_template_id: int = 1


class MemoryAdapter(StorageAdapter):
    """Storage adapter holding all records in memory."""

    name = "memory"

    def __init__(self) -> None:
        super().__init__()
        self._state = _State()

    @asynccontextmanager
    async def _outer_transaction(self) -> AsyncIterator[None]:
        async with self._snapshot():
            yield

    @asynccontextmanager
    async def _nested_transaction(self, depth: int) -> AsyncIterator[None]:
        async with self._snapshot():
            yield

    @asynccontextmanager
    async def _snapshot(self) -> AsyncIterator[None]:
        saved = copy.deepcopy(self._state)
        try:
            yield
        except BaseException:
            self._state = saved
            raise

    # =========================================================================
    # Notes
    # =========================================================================

    async def get_all_notes(self) -> dict[int, Note]:
        async with self.transaction():
            return {note_id: replace(note) for note_id, note in self._state.notes.items()}

    async def get_note_by_id(self, note_id: int) -> Note | None:
        async with self.transaction():
            note = self._state.notes.get(note_id)
            return replace(note) if note else None

    async def save_note(self, note: Note) -> Note:
        async with self.transaction():
            if note.id is None:
                note = note.with_id(self._state.next_note_id)
            self._state.next_note_id = max(self._state.next_note_id, note.id + 1)
            self._state.notes[note.id] = replace(note)
            logger.debug("Note saved", note_id=note.id)
            return note

    async def delete_note(self, note_id: int) -> None:
        async with self.transaction():
            self._state.notes.pop(note_id, None)

    async def find_notes_by_email(self, email: str) -> list[Note]:
        notes = await self.get_all_notes()
        return rank_matches(email, notes.values())

    async def find_duplicate(
        self, pattern: str, match_type: str, exclude_id: int | None = None
    ) -> Note | None:
        pattern_lower = pattern.lower()
        async with self.transaction():
            for note in self._state.notes.values():
                if (
                    note.pattern == pattern_lower
                    and note.match_type == match_type
                    and note.id != exclude_id
                ):
                    return replace(note)
            return None

    async def import_notes(self, notes: dict[int, Note]) -> int:
        async with self.transaction():
            for note_id, note in notes.items():
                await self.save_note(note.with_id(note_id))
            return len(notes)

    # =========================================================================
    # Templates
    # =========================================================================

    async def get_templates(self) -> list[Template]:
        async with self.transaction():
            templates = [replace(t) for t in self._state.templates.values()]
        return sorted(templates, key=lambda t: (t.order, t.id))

    async def get_template_by_id(self, template_id: int) -> Template | None:
        async with self.transaction():
            template = self._state.templates.get(template_id)
            return replace(template) if template else None

    async def add_template(self, text: str) -> Template:
        async with self.transaction():
            orders = [t.order for t in self._state.templates.values()]
            now = utcnow()
            template = Template(
                id=self._state.next_template_id,
                text=text,
                order=max(orders) + 1 if orders else 0,
                created_at=now,
                updated_at=now,
            )
            self._state.next_template_id += 1
            self._state.templates[template.id] = replace(template)
            return template

    async def update_template(self, template_id: int, text: str) -> Template | None:
        async with self.transaction():
            template = self._state.templates.get(template_id)
            if template is None:
                return None
            template.text = text
            template.updated_at = utcnow()
            return replace(template)

    async def delete_template(self, template_id: int) -> None:
        async with self.transaction():
            self._state.templates.pop(template_id, None)

    async def move_template(self, template_id: int, after_id: int | None) -> None:
        async with self.transaction():
            templates = await self.get_templates()
            if not resequence(templates, template_id, after_id):
                return
            now = utcnow()
            for template in templates:
                template.updated_at = now
                self._state.templates[template.id] = template

    # =========================================================================
    # Settings
    # =========================================================================

    async def get_settings(self) -> dict[str, SettingValue]:
        async with self.transaction():
            return dict(self._state.settings)

    async def save_settings(self, settings: dict[str, SettingValue]) -> None:
        async with self.transaction():
            self._state.settings = dict(settings)

    # =========================================================================
    # Migration bookkeeping
    # =========================================================================

    async def get_applied_migrations(self) -> list[MigrationRecord]:
        async with self.transaction():
            records = [
                MigrationRecord(id=migration_id, applied_at=applied_at)
                for migration_id, applied_at in self._state.migrations.items()
            ]
        return sorted(records, key=lambda r: (r.applied_at, r.id))

    async def record_migration(self, migration_id: str, applied_at: datetime) -> None:
        async with self.transaction():
            self._state.migrations[migration_id] = applied_at

    async def remove_migration_record(self, migration_id: str) -> None:
        async with self.transaction():
            self._state.migrations.pop(migration_id, None)

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def clear_all(self) -> None:
        async with self.transaction():
            self._state.notes.clear()
            self._state.templates.clear()
            self._state.settings.clear()
        logger.warning("All notes, templates and settings cleared", backend=self.name)
