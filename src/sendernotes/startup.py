"""Application startup: storage backend, repository and data migrations.

Usage:
    from sendernotes.startup import start

    app = await start(config)
    try:
        note = await app.repository.find_note_by_email("alice@example.com")
    finally:
        await app.close()
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from sendernotes.config_schema import AppConfig
from sendernotes.core.errors import MigrationError
from sendernotes.core.logging import get_logger
from sendernotes.db.adapter import StorageAdapter
from sendernotes.db.memory_adapter import MemoryAdapter
from sendernotes.db.migrations import MIGRATIONS, Migration, MigrationReport, MigrationRunner
from sendernotes.db.sqlite_adapter import SQLiteAdapter
from sendernotes.repository import NotesRepository

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class App:
    """A started backend: the repository and the result of startup migrations."""

    repository: NotesRepository
    migration_report: MigrationReport

    async def close(self) -> None:
        await self.repository.adapter.close()


def create_adapter(config: AppConfig) -> StorageAdapter:
    """Build the storage adapter named by the config (not opened yet)."""
    if config.storage.backend == "memory":
        return MemoryAdapter()
    return SQLiteAdapter(config.storage.db_path)


def create_repository(config: AppConfig, adapter: StorageAdapter | None = None) -> NotesRepository:
    """Build a repository whose default templates come from the config."""
    return NotesRepository(
        adapter or create_adapter(config),
        default_templates_provider=lambda: config.templates.defaults,
    )


async def start(
    config: AppConfig,
    migrations: Sequence[Migration] = MIGRATIONS,
    adapter: StorageAdapter | None = None,
) -> App:
    """Open storage and run pending data migrations.

    A failed migration is logged and startup continues on the partially
    migrated data, unless ``migrations.require_all`` is set.

    Raises:
        SchemaUpgradeError: If the storage schema cannot be upgraded
        DatabaseError: If storage cannot be opened
        MigrationError: If a migration failed and require_all is set
    """
    repository = create_repository(config, adapter)
    try:
        report = await MigrationRunner(repository.adapter, migrations).run_pending()
    except BaseException:
        await repository.adapter.close()
        raise

    if not report.ok:
        failure = report.errors[0]
        if config.migrations.require_all:
            await repository.adapter.close()
            raise MigrationError(
                f"Data migration '{failure.migration_id}' failed: {failure.error}. "
                "Fix the stored data or set migrations.require_all to false to "
                "start without it.",
                migration_id=failure.migration_id,
            )
        logger.warning(
            "starting_with_failed_migrations",
            failed=report.failed,
            not_run=report.not_run,
        )

    logger.info(
        "backend_started",
        backend=repository.adapter.name,
        migrations_applied=len(report.applied),
    )
    return App(repository=repository, migration_report=report)
