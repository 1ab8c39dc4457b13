"""Import of legacy key/value exports.

Early versions kept everything in one flat blob:

    {
        "notes": {
            "<id>": {"pattern": "...", "matchType": "exact", "note": "...",
                     "createdAt": "...", "updatedAt": "..."}
        },
        "templates": ["Template text", ...]
    }

Notes are re-saved through the repository so they get new ids, lowercase
patterns and the duplicate check. Their createdAt and updatedAt survive the
import; an entry with a missing or unreadable timestamp gets the import time.

Legacy string templates are only imported into a store that has no templates
of its own.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from sendernotes.core.errors import LegacyImportError
from sendernotes.core.logging import get_logger
from sendernotes.db.models import parse_timestamp
from sendernotes.matching import is_match_type
from sendernotes.repository import NotesRepository

logger = get_logger(__name__)


@dataclass
class LegacyImportReport:
    """Outcome of import_legacy_export.

    Attributes:
        imported: New note ids, in export order
        duplicates: Legacy ids skipped because an equivalent note exists
        invalid: Legacy ids skipped because the entry is malformed
        templates_imported: Number of templates stored
    """

    imported: list[int] = field(default_factory=list)
    duplicates: list[str] = field(default_factory=list)
    invalid: list[str] = field(default_factory=list)
    templates_imported: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "imported": list(self.imported),
            "duplicates": list(self.duplicates),
            "invalid": list(self.invalid),
            "templatesImported": self.templates_imported,
        }


def _legacy_note_fields(entry: Any) -> tuple[str, str, str] | None:
    if not isinstance(entry, dict):
        return None
    pattern = entry.get("pattern")
    match_type = entry.get("matchType", "exact")
    note = entry.get("note")
    if not isinstance(pattern, str) or not pattern.strip():
        return None
    if not isinstance(note, str) or not note.strip():
        return None
    if not is_match_type(match_type):
        return None
    return pattern, match_type, note


def _legacy_timestamp(entry: dict[str, Any], key: str) -> datetime | None:
    value = entry.get(key)
    if not isinstance(value, str):
        return None
    try:
        return parse_timestamp(value)
    except ValueError:
        logger.warning("legacy_timestamp_invalid", field=key, value=value)
        return None


async def import_legacy_export(
    repository: NotesRepository, data: dict[str, Any]
) -> LegacyImportReport:
    """Import a legacy export into the repository.

    Args:
        repository: Target repository
        data: Parsed legacy export

    Returns:
        LegacyImportReport with imported, duplicate and malformed entries

    Raises:
        LegacyImportError: If data is not a legacy export
        DatabaseError: If storage fails
    """
    if not isinstance(data, dict):
        raise LegacyImportError(
            f"Legacy export must be a JSON object, got {type(data).__name__}"
        )
    notes = data.get("notes") or {}
    templates = data.get("templates") or []
    if not isinstance(notes, dict) or not isinstance(templates, list):
        raise LegacyImportError(
            "Legacy export must have a 'notes' object and a 'templates' list"
        )

    report = LegacyImportReport()

    for legacy_id, entry in notes.items():
        fields = _legacy_note_fields(entry)
        if fields is None:
            logger.warning("legacy_note_invalid", legacy_id=legacy_id)
            report.invalid.append(str(legacy_id))
            continue

        pattern, match_type, note = fields
        original_email = entry.get("originalEmail")
        result = await repository.save_note(
            pattern,
            match_type,  # type: ignore[arg-type]
            note,
            original_email=original_email if isinstance(original_email, str) else None,
            created_at=_legacy_timestamp(entry, "createdAt"),
            updated_at=_legacy_timestamp(entry, "updatedAt"),
        )
        if result.success and result.note_id is not None:
            report.imported.append(result.note_id)
        else:
            report.duplicates.append(str(legacy_id))

    texts = [text for text in templates if isinstance(text, str) and text.strip()]
    if texts:
        async with repository.adapter.transaction():
            if not await repository.adapter.get_templates():
                for text in texts:
                    await repository.adapter.add_template(text)
                report.templates_imported = len(texts)

    logger.info(
        "legacy_import_complete",
        imported=len(report.imported),
        duplicates=len(report.duplicates),
        invalid=len(report.invalid),
        templates=report.templates_imported,
    )
    return report


async def import_legacy_file(repository: NotesRepository, path: Path) -> LegacyImportReport:
    """Read a legacy export from a JSON file and import it.

    Raises:
        LegacyImportError: If the file is missing or not valid JSON
    """
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError as e:
        raise LegacyImportError(f"Legacy export not found: {path}") from e
    except json.JSONDecodeError as e:
        raise LegacyImportError(f"Legacy export {path} is not valid JSON: {e}") from e
    return await import_legacy_export(repository, data)
