"""Data migrations for Sender Notes.

Schema changes (stores, indexes) live in sendernotes.db.schema and are
applied when the database is opened. The migrations here transform data on
top of a current schema: backfilling fields, normalizing values and similar
row-level work that runs through the storage adapter.

Migration id format: "NNN_description" with a 3-digit sequence number.
Migrations run in declaration order. Each one runs together with its
bookkeeping record in a single adapter transaction, so a migration is
either fully applied and recorded, or not applied at all.

Usage:
    from sendernotes.db.migrations import MIGRATIONS, MigrationRunner

    runner = MigrationRunner(adapter, MIGRATIONS)
    report = await runner.run_pending()
    if not report.ok:
        ...  # host decides: continue unmigrated or block features
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from sendernotes.core.errors import MigrationError
from sendernotes.core.logging import get_logger
from sendernotes.db.adapter import StorageAdapter
from sendernotes.db.models import Note, utcnow

logger = get_logger(__name__)

MigrationStep = Callable[[StorageAdapter], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class Migration:
    """A single data migration.

    Attributes:
        id: Unique, sortable id ("001_normalize_note_patterns")
        description: Human-readable summary
        up: Applies the migration
        down: Reverts it (optional; migrations without one cannot be rolled back)
    """

    id: str
    description: str
    up: MigrationStep
    down: MigrationStep | None = None


@dataclass
class MigrationFailure:
    """A migration whose up() raised."""

    migration_id: str
    error: str


@dataclass
class MigrationReport:
    """Result of MigrationRunner.run_pending.

    Attributes:
        applied: Ids applied by this run, in order
        skipped: Ids that were already applied
        failed: Ids that failed (at most one; the run stops at the first failure)
        errors: Details for each failure
        not_run: Pending ids left untouched because an earlier one failed
    """

    applied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    errors: list[MigrationFailure] = field(default_factory=list)
    not_run: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict[str, Any]:
        return {
            "applied": list(self.applied),
            "skipped": list(self.skipped),
            "failed": list(self.failed),
            "errors": [{"id": e.migration_id, "error": e.error} for e in self.errors],
            "notRun": list(self.not_run),
        }


@dataclass(frozen=True, slots=True)
class MigrationStatus:
    """Applied state of a registered migration."""

    id: str
    description: str
    applied_at: datetime | None
    reversible: bool


class MigrationRunner:
    """Runs registered data migrations that have not been applied yet."""

    def __init__(self, adapter: StorageAdapter, migrations: Sequence[Migration]):
        seen: set[str] = set()
        for migration in migrations:
            if migration.id in seen:
                raise MigrationError(
                    f"Migration id '{migration.id}' is registered twice. "
                    "Give every migration a unique id.",
                    migration_id=migration.id,
                )
            seen.add(migration.id)

        self._adapter = adapter
        self._migrations = list(migrations)

    async def _applied(self) -> dict[str, datetime]:
        records = await self._adapter.get_applied_migrations()
        return {record.id: record.applied_at for record in records}

    async def pending(self) -> list[Migration]:
        """Registered migrations not yet applied, in declaration order."""
        applied = await self._applied()
        return [m for m in self._migrations if m.id not in applied]

    async def status(self) -> list[MigrationStatus]:
        """Every registered migration with its applied timestamp (None if pending)."""
        applied = await self._applied()
        return [
            MigrationStatus(
                id=m.id,
                description=m.description,
                applied_at=applied.get(m.id),
                reversible=m.down is not None,
            )
            for m in self._migrations
        ]

    async def run_pending(self) -> MigrationReport:
        """Apply pending migrations in order, stopping at the first failure.

        A failed migration is rolled back and not recorded. Migrations applied
        before it (in this run or earlier ones) stay applied.

        Returns:
            MigrationReport listing applied, skipped and failed migrations

        Raises:
            DatabaseError: If the applied-migrations list cannot be read
        """
        report = MigrationReport()
        applied = await self._applied()

        for index, migration in enumerate(self._migrations):
            if migration.id in applied:
                report.skipped.append(migration.id)
                continue

            logger.info(
                "migration_running",
                migration_id=migration.id,
                description=migration.description,
            )
            try:
                async with self._adapter.transaction():
                    await migration.up(self._adapter)
                    await self._adapter.record_migration(migration.id, utcnow())
            except Exception as e:
                logger.error("migration_failed", migration_id=migration.id, error=str(e))
                report.failed.append(migration.id)
                report.errors.append(MigrationFailure(migration_id=migration.id, error=str(e)))
                report.not_run = [
                    m.id for m in self._migrations[index + 1 :] if m.id not in applied
                ]
                break

            report.applied.append(migration.id)
            logger.info("migration_applied", migration_id=migration.id)

        logger.info(
            "migrations_complete",
            applied=len(report.applied),
            skipped=len(report.skipped),
            failed=len(report.failed),
        )
        return report

    async def rollback(self, migration_id: str) -> None:
        """Revert an applied migration and forget it.

        Raises:
            MigrationError: If the migration is unknown, not applied, or has no down()
        """
        migration = next((m for m in self._migrations if m.id == migration_id), None)
        if migration is None:
            raise MigrationError(f"Unknown migration '{migration_id}'", migration_id=migration_id)
        if migration.down is None:
            raise MigrationError(
                f"Migration '{migration_id}' has no down step and cannot be rolled back",
                migration_id=migration_id,
            )

        async with self._adapter.transaction():
            if migration_id not in await self._applied():
                raise MigrationError(
                    f"Migration '{migration_id}' is not applied", migration_id=migration_id
                )
            await migration.down(self._adapter)
            await self._adapter.remove_migration_record(migration_id)

        logger.info("migration_rolled_back", migration_id=migration_id)


# =============================================================================
# Registered migrations
# =============================================================================


async def _normalize_note_patterns(adapter: StorageAdapter) -> None:
    """Lowercase stored patterns and backfill original_email from the pattern.

    A note whose lowercased (pattern, match_type) collides with another note
    keeps its pattern, so no duplicate pair is ever created.
    """
    notes = await adapter.get_all_notes()
    taken = {(note.pattern, note.match_type) for note in notes.values()}
    changed = 0
    collisions = 0

    for note in notes.values():
        updated: Note = note
        lowered = note.pattern.lower()
        if lowered != note.pattern:
            if (lowered, note.match_type) in taken:
                collisions += 1
            else:
                taken.discard((note.pattern, note.match_type))
                taken.add((lowered, note.match_type))
                updated = replace(updated, pattern=lowered)
        if not updated.original_email:
            updated = replace(updated, original_email=note.pattern)

        if updated != note:
            await adapter.save_note(updated)
            changed += 1

    logger.info("note_patterns_normalized", changed=changed, collisions=collisions)


MIGRATIONS: list[Migration] = [
    Migration(
        id="001_normalize_note_patterns",
        description="Lowercase note patterns and backfill original_email",
        up=_normalize_note_patterns,
    ),
]
