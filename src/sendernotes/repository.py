"""Notes repository: the single entry point for note, template and settings logic.

The repository owns the business rules and delegates persistence to a
StorageAdapter:

- Patterns are stored lowercase.
- No two notes share a (pattern, match_type) pair. A save that would create
  one is rejected with a structured result; nothing is written.
- created_at survives updates, updated_at strictly advances on every save.
- Templates fall back to configured defaults until the first template
  mutation, which stores all defaults before applying the change.
- Operations on ids that no longer exist succeed as no-ops, so UI retries
  (double-click delete, stale lists) are harmless.

Multi-step operations run inside one adapter transaction.

The repository does not check that a pattern matches the sender it is being
created for, or that texts are non-blank. That is the caller's validation
layer (see sendernotes.messaging).

Usage:
    from sendernotes.repository import NotesRepository

    repo = NotesRepository(adapter, default_templates_provider=lambda: ["VIP"])
    result = await repo.save_note("@example.com", "endsWith", "Whole company")
    note = await repo.find_note_by_email("alice@example.com")
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sendernotes.core.logging import get_logger
from sendernotes.db.adapter import StorageAdapter
from sendernotes.db.models import Note, SettingValue, Template, utcnow
from sendernotes.matching import MatchType
from sendernotes.matching import validate_pattern as _validate_pattern

logger = get_logger(__name__)

DefaultTemplatesProvider = Callable[[], Sequence[str]]

DUPLICATE_MESSAGE = "A note with this exact pattern and match type already exists."


@dataclass(frozen=True, slots=True)
class SaveResult:
    """Outcome of NotesRepository.save_note."""

    success: bool
    note_id: int | None = None
    error: str | None = None
    message: str | None = None
    existing_note_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        if self.success:
            return {"success": True, "noteId": self.note_id}
        return {
            "success": False,
            "error": self.error,
            "message": self.message,
            "existingNoteId": self.existing_note_id,
        }


@dataclass(frozen=True, slots=True)
class DuplicateCheck:
    """Outcome of NotesRepository.check_duplicate."""

    exists: bool
    note_id: int | None = None
    note: Note | None = None

    def to_dict(self) -> dict[str, Any]:
        if not self.exists:
            return {"exists": False}
        return {
            "exists": True,
            "noteId": self.note_id,
            "note": self.note.to_dict() if self.note else None,
        }


def _next_timestamp(previous: datetime | None) -> datetime:
    """Current time, nudged past previous so updated_at always advances."""
    now = utcnow()
    if previous is not None and now <= previous:
        now = previous + timedelta(microseconds=1)
    return now


class NotesRepository:
    """Business-logic facade over a storage adapter.

    Attributes:
        adapter: The storage backend in use
    """

    def __init__(
        self,
        adapter: StorageAdapter,
        default_templates_provider: DefaultTemplatesProvider | None = None,
    ):
        self._adapter = adapter
        self._default_templates_provider = default_templates_provider

    @property
    def adapter(self) -> StorageAdapter:
        return self._adapter

    def set_adapter(self, adapter: StorageAdapter) -> None:
        """Switch storage backend at runtime."""
        logger.info("storage_adapter_switched", old=self._adapter.name, new=adapter.name)
        self._adapter = adapter

    def set_default_templates_provider(self, provider: DefaultTemplatesProvider | None) -> None:
        self._default_templates_provider = provider

    # =========================================================================
    # Matching
    # =========================================================================

    @staticmethod
    def validate_pattern(email: str, pattern: str, match_type: str) -> bool:
        """Check whether a pattern matches an email (case-insensitive, lexical)."""
        return _validate_pattern(email, pattern, match_type)

    async def find_notes_by_email(self, email: str) -> list[Note]:
        """All notes matching an email, exact first, then startsWith, endsWith, contains."""
        return await self._adapter.find_notes_by_email(email)

    async def find_note_by_email(self, email: str) -> Note | None:
        """The highest-priority note matching an email, or None."""
        notes = await self._adapter.find_notes_by_email(email)
        return notes[0] if notes else None

    # =========================================================================
    # Notes
    # =========================================================================

    async def get_all_notes(self) -> dict[int, Note]:
        return await self._adapter.get_all_notes()

    async def get_note_by_id(self, note_id: int) -> Note | None:
        return await self._adapter.get_note_by_id(note_id)

    async def save_note(
        self,
        pattern: str,
        match_type: MatchType,
        note: str,
        *,
        note_id: int | None = None,
        original_email: str | None = None,
        created_at: datetime | None = None,
        updated_at: datetime | None = None,
    ) -> SaveResult:
        """Create or update a note.

        Args:
            pattern: Pattern to match senders against (stored lowercase)
            match_type: exact, startsWith, endsWith or contains
            note: Note text
            note_id: Id of the note being edited; None (or an unknown id)
                creates a new note
            original_email: Sender the note is written for. Ignored on update
                unless non-empty.
            created_at: Creation time to keep for a new note, as when importing
                older data. Ignored on update.
            updated_at: Last-modified time to keep for a new note; defaults to
                created_at. Ignored on update.

        Returns:
            SaveResult with the note id, or a duplicate rejection naming the
            note that already uses this pattern and match type
        """
        pattern_lower = pattern.lower()

        async with self._adapter.transaction():
            duplicate = await self._adapter.find_duplicate(pattern_lower, match_type, note_id)
            if duplicate is not None:
                logger.info(
                    "duplicate_rejected",
                    match_type=match_type,
                    existing_note_id=duplicate.id,
                    note_id=note_id,
                )
                return SaveResult(
                    success=False,
                    error="duplicate",
                    message=DUPLICATE_MESSAGE,
                    existing_note_id=duplicate.id,
                )

            existing = None
            if note_id is not None:
                existing = await self._adapter.get_note_by_id(note_id)

            now = _next_timestamp(existing.updated_at if existing else None)
            if existing is not None:
                record = Note(
                    id=existing.id,
                    pattern=pattern_lower,
                    match_type=match_type,
                    note=note,
                    original_email=original_email or existing.original_email or pattern,
                    created_at=existing.created_at or now,
                    updated_at=now,
                )
            else:
                created = created_at or now
                record = Note(
                    pattern=pattern_lower,
                    match_type=match_type,
                    note=note,
                    original_email=original_email or pattern,
                    created_at=created,
                    updated_at=max(updated_at or created, created),
                )

            saved = await self._adapter.save_note(record)

        logger.info(
            "note_saved",
            note_id=saved.id,
            match_type=match_type,
            created=existing is None,
        )
        return SaveResult(success=True, note_id=saved.id)

    async def check_duplicate(
        self, pattern: str, match_type: str, exclude_id: int | None = None
    ) -> DuplicateCheck:
        """Report whether another note already uses this pattern and match type."""
        duplicate = await self._adapter.find_duplicate(pattern.lower(), match_type, exclude_id)
        if duplicate is None:
            return DuplicateCheck(exists=False)
        return DuplicateCheck(exists=True, note_id=duplicate.id, note=duplicate)

    async def delete_note(self, note_id: int) -> None:
        """Delete a note. A missing id is a successful no-op."""
        await self._adapter.delete_note(note_id)
        logger.info("note_deleted", note_id=note_id)

    async def delete_note_by_email(self, email: str) -> Note | None:
        """Delete the highest-priority note matching an email.

        Returns:
            The deleted note, or None when nothing matched
        """
        async with self._adapter.transaction():
            note = await self.find_note_by_email(email)
            if note is not None and note.id is not None:
                await self._adapter.delete_note(note.id)
        if note is not None:
            logger.info("note_deleted", note_id=note.id, by="email")
        return note

    # =========================================================================
    # Templates
    # =========================================================================

    def _default_texts(self) -> list[str]:
        if self._default_templates_provider is None:
            return []
        return list(self._default_templates_provider())

    async def get_templates(self) -> list[Template]:
        """Stored templates, or the unsaved defaults when none are stored."""
        templates = await self._adapter.get_templates()
        if templates:
            return templates
        return [
            Template(id=None, text=text, order=index, is_default=True)
            for index, text in enumerate(self._default_texts())
        ]

    async def get_templates_as_text(self) -> list[str]:
        return [template.text for template in await self.get_templates()]

    async def get_template_by_id(self, template_id: int) -> Template | None:
        return await self._adapter.get_template_by_id(template_id)

    async def _materialize_defaults(self) -> list[Template]:
        """Store the default templates if no templates are stored yet.

        Must run inside a transaction.

        Returns:
            The stored templates (newly materialized defaults or the existing rows)
        """
        stored = await self._adapter.get_templates()
        if stored:
            return stored

        defaults = self._default_texts()
        for text in defaults:
            stored.append(await self._adapter.add_template(text))
        if defaults:
            logger.info("default_templates_materialized", count=len(defaults))
        return stored

    async def _resolve_template(
        self, template_id: int | None, default_order: int | None
    ) -> int | None:
        """Resolve a template reference to a stored id, materializing defaults.

        A stored template is addressed by id. An unsaved default has no id and
        is addressed by its order instead; only that case stores the defaults.
        """
        if template_id is not None:
            return template_id
        if default_order is None:
            return None
        for template in await self._materialize_defaults():
            if template.order == default_order:
                return template.id
        return None

    async def add_template(self, text: str) -> Template:
        """Append a template after the existing (or default) ones."""
        async with self._adapter.transaction():
            await self._materialize_defaults()
            template = await self._adapter.add_template(text)
        logger.info("template_added", template_id=template.id, order=template.order)
        return template

    async def update_template(
        self, template_id: int | None, text: str, *, default_order: int | None = None
    ) -> Template | None:
        """Replace a template's text.

        Args:
            template_id: Stored template id, or None to address a default
            text: New text
            default_order: Order of the default template when template_id is None

        Returns:
            The updated template, or None when the target does not exist
        """
        async with self._adapter.transaction():
            resolved = await self._resolve_template(template_id, default_order)
            if resolved is None:
                return None
            template = await self._adapter.update_template(resolved, text)
        if template is not None:
            logger.info("template_updated", template_id=template.id)
        return template

    async def delete_template(
        self, template_id: int | None, *, default_order: int | None = None
    ) -> None:
        """Delete a template. A missing target is a successful no-op."""
        async with self._adapter.transaction():
            resolved = await self._resolve_template(template_id, default_order)
            if resolved is not None:
                await self._adapter.delete_template(resolved)
        logger.info("template_deleted", template_id=resolved)

    async def move_template(
        self,
        template_id: int | None,
        after_id: int | None,
        *,
        default_order: int | None = None,
        after_default_order: int | None = None,
    ) -> None:
        """Move a template directly after another one (None: to the top).

        Args:
            template_id: Template to move, or None to address a default by order
            after_id: Template to place it after, or None
            default_order: Order of the default to move when template_id is None
            after_default_order: Order of the default to move after when
                after_id is None; when both are None the template moves first
        """
        async with self._adapter.transaction():
            resolved = await self._resolve_template(template_id, default_order)
            if resolved is None or await self._adapter.get_template_by_id(resolved) is None:
                return
            resolved_after = await self._resolve_template(after_id, after_default_order)
            await self._adapter.move_template(resolved, resolved_after)
        logger.info("template_moved", template_id=resolved, after_id=resolved_after)

    # =========================================================================
    # Settings
    # =========================================================================

    async def get_settings(self) -> dict[str, SettingValue]:
        return await self._adapter.get_settings()

    async def save_settings(self, settings: dict[str, SettingValue]) -> None:
        await self._adapter.save_settings(settings)

    async def get_setting(self, key: str, default: Any = None) -> Any:
        """Read one setting, returning default when it was never set."""
        settings = await self._adapter.get_settings()
        return settings[key] if key in settings else default

    async def set_setting(self, key: str, value: SettingValue) -> None:
        """Set one setting (read-modify-write of the whole settings record)."""
        async with self._adapter.transaction():
            settings = await self._adapter.get_settings()
            settings[key] = value
            await self._adapter.save_settings(settings)
        logger.debug("setting_saved", key=key)
