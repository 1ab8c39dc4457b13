"""Record types for notes, templates, settings and migrations.

Records are plain dataclasses. Storage adapters build them from rows and the
repository hands them to callers. ``to_dict()`` produces the camelCase shape
used by the host message contract.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any

from sendernotes.matching import MatchType

# Settings values are a flat map of JSON scalars
SettingValue = str | int | float | bool | None


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime | None) -> str | None:
    """Serialize a timestamp to ISO-8601 (None passes through)."""
    return value.isoformat() if value else None


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp, assuming UTC for naive values."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Note:
    """A sender note.

    Attributes:
        pattern: Lowercase string matched against sender addresses
        match_type: How the pattern is compared (exact, startsWith, endsWith, contains)
        note: Free-text annotation shown for matching senders
        original_email: Sender address the note was first written for (display only)
        id: Storage-generated key, None until first saved
        created_at: First save time, never changes afterwards
        updated_at: Time of the most recent save
    """

    pattern: str
    match_type: MatchType
    note: str
    original_email: str | None = None
    id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def with_id(self, note_id: int) -> Note:
        """Return a copy of this note carrying a storage id."""
        return replace(self, id=note_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "pattern": self.pattern,
            "matchType": self.match_type,
            "note": self.note,
            "originalEmail": self.original_email,
            "createdAt": format_timestamp(self.created_at),
            "updatedAt": format_timestamp(self.updated_at),
        }


@dataclass
class Template:
    """A reusable note text snippet.

    Default templates synthesized from the configured provider are not
    stored yet: they carry ``id=None`` and ``is_default=True`` until the
    first template mutation materializes them.
    """

    text: str
    order: int
    id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    is_default: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "text": self.text,
            "order": self.order,
            "createdAt": format_timestamp(self.created_at),
            "updatedAt": format_timestamp(self.updated_at),
        }
        if self.is_default:
            data["isDefault"] = True
        return data


@dataclass(frozen=True, slots=True)
class MigrationRecord:
    """A completed data migration."""

    id: str
    applied_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "appliedAt": format_timestamp(self.applied_at)}
