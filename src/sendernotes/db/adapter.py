"""Storage adapter contract.

Every storage backend implements StorageAdapter. Adapters are pure CRUD plus
indexed lookup: they never default fields, validate input or block
duplicates. Those rules live in NotesRepository.

Transactions:
    ``async with adapter.transaction():`` makes a group of adapter calls
    atomic. Every adapter write runs inside a transaction, and the outer
    transaction holds a per-adapter asyncio.Lock, so operations against one
    adapter are serialized. Single-statement reads may skip the transaction
    but still wait for that lock. Calls made from the task that already owns
    the transaction join it as a nested scope (a savepoint), which lets the
    repository wrap check-then-write sequences around ordinary adapter calls.

    Work inside a transaction must stay on the owning task. A different task
    waiting on the same adapter would block until the transaction ends.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import datetime
from types import TracebackType
from typing import Any

from sendernotes.db.models import MigrationRecord, Note, SettingValue, Template


class StorageAdapter(ABC):
    """Abstract persistence backend for notes, templates, settings and migrations."""

    #: Short backend name used in logs and CLI output
    name = "abstract"

    def __init__(self) -> None:
        self._tx_lock = asyncio.Lock()
        self._tx_owner: asyncio.Task[Any] | None = None
        self._tx_depth = 0

    async def __aenter__(self) -> StorageAdapter:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def close(self) -> None:
        """Release backend resources. Safe to call more than once."""
        return None

    # =========================================================================
    # Transactions
    # =========================================================================

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """Run the enclosed adapter calls atomically.

        On an exception every write made inside the block is rolled back and
        the exception propagates.
        """
        task = asyncio.current_task()
        if self._tx_owner is not None and self._tx_owner is task:
            self._tx_depth += 1
            try:
                async with self._nested_transaction(self._tx_depth):
                    yield
            finally:
                self._tx_depth -= 1
            return

        async with self._tx_lock:
            self._tx_owner = task
            try:
                async with self._outer_transaction():
                    yield
            finally:
                self._tx_owner = None

    @property
    def in_transaction(self) -> bool:
        """True when the current task owns an open transaction."""
        return self._tx_owner is not None and self._tx_owner is asyncio.current_task()

    @abstractmethod
    def _outer_transaction(self) -> AbstractAsyncContextManager[None]:
        """Begin/commit/rollback scope for an outermost transaction."""

    @abstractmethod
    def _nested_transaction(self, depth: int) -> AbstractAsyncContextManager[None]:
        """Savepoint scope for a transaction nested at the given depth."""

    # =========================================================================
    # Notes
    # =========================================================================

    @abstractmethod
    async def get_all_notes(self) -> dict[int, Note]:
        """Get all notes keyed by id, in storage iteration order."""

    @abstractmethod
    async def get_note_by_id(self, note_id: int) -> Note | None:
        """Get a single note, or None if it does not exist."""

    @abstractmethod
    async def save_note(self, note: Note) -> Note:
        """Insert a note (id is None) or overwrite the note with its id.

        Returns:
            The saved note, carrying its storage id
        """

    @abstractmethod
    async def delete_note(self, note_id: int) -> None:
        """Delete a note. Deleting a missing id is not an error."""

    @abstractmethod
    async def find_notes_by_email(self, email: str) -> list[Note]:
        """All notes matching an email, ordered by match priority.

        Semantics must equal sendernotes.matching.rank_matches over
        get_all_notes().
        """

    @abstractmethod
    async def find_duplicate(
        self, pattern: str, match_type: str, exclude_id: int | None = None
    ) -> Note | None:
        """Find a note with the same (lowercased) pattern and match type.

        This is a lookup, not a guard.

        Args:
            pattern: Pattern to look for (lowercased before lookup)
            match_type: Match type to look for
            exclude_id: Note id to ignore (the note being updated)
        """

    @abstractmethod
    async def import_notes(self, notes: dict[int, Note]) -> int:
        """Bulk write notes keeping their ids.

        Returns:
            Number of notes written
        """

    # =========================================================================
    # Templates
    # =========================================================================

    @abstractmethod
    async def get_templates(self) -> list[Template]:
        """Get all stored templates ordered by (order, id)."""

    @abstractmethod
    async def get_template_by_id(self, template_id: int) -> Template | None:
        """Get a single template, or None if it does not exist."""

    @abstractmethod
    async def add_template(self, text: str) -> Template:
        """Append a template after the current last one."""

    @abstractmethod
    async def update_template(self, template_id: int, text: str) -> Template | None:
        """Replace a template's text.

        Returns:
            The updated template, or None if the id does not exist
        """

    @abstractmethod
    async def delete_template(self, template_id: int) -> None:
        """Delete a template. Deleting a missing id is not an error."""

    @abstractmethod
    async def move_template(self, template_id: int, after_id: int | None) -> None:
        """Move a template directly after another one and re-sequence.

        ``after_id=None`` moves the template first; an ``after_id`` that does
        not exist moves it last. Afterwards orders are 0..n-1 and every
        template has a fresh updated_at. A missing ``template_id`` is a no-op.
        """

    # =========================================================================
    # Settings
    # =========================================================================

    @abstractmethod
    async def get_settings(self) -> dict[str, SettingValue]:
        """Get the settings map ({} when nothing was saved)."""

    @abstractmethod
    async def save_settings(self, settings: dict[str, SettingValue]) -> None:
        """Replace the whole settings map."""

    # =========================================================================
    # Migration bookkeeping
    # =========================================================================

    @abstractmethod
    async def get_applied_migrations(self) -> list[MigrationRecord]:
        """Completed migrations, oldest first."""

    @abstractmethod
    async def record_migration(self, migration_id: str, applied_at: datetime) -> None:
        """Mark a migration as applied."""

    @abstractmethod
    async def remove_migration_record(self, migration_id: str) -> None:
        """Forget a migration (after rolling it back)."""

    # =========================================================================
    # Maintenance
    # =========================================================================

    @abstractmethod
    async def clear_all(self) -> None:
        """Delete all notes, templates and settings (migration records are kept)."""


def resequence(templates: list[Template], template_id: int, after_id: int | None) -> bool:
    """Move a template within a list and renumber orders 0..n-1 in place.

    Shared by the adapters so every backend re-sequences identically.

    Args:
        templates: Templates in their current order
        template_id: Template to move
        after_id: Template to place it after, None for first position

    Returns:
        False if template_id is not in the list (list left untouched)
    """
    current = next((i for i, t in enumerate(templates) if t.id == template_id), None)
    if current is None:
        return False

    moved = templates.pop(current)
    if after_id is None:
        target = 0
    else:
        after = next((i for i, t in enumerate(templates) if t.id == after_id), None)
        target = len(templates) if after is None else after + 1
    templates.insert(target, moved)

    for position, template in enumerate(templates):
        template.order = position
    return True
