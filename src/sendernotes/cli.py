"""Command-line interface for Sender Notes.

Provides commands for configuration validation, migrations, and managing
notes, templates and settings from a terminal.

Usage:
    python -m sendernotes validate-config
    python -m sendernotes notes add "@example.com" "Whole company" --match-type endsWith
    python -m sendernotes notes show alice@example.com
    python -m sendernotes templates move --id 3 --after-id 1
    python -m sendernotes request '{"action": "getTemplates"}'
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import AsyncIterator, Coroutine
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import click
import yaml
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from sendernotes.config import get_config, validate_config_file
from sendernotes.core.logging import configure_logging
from sendernotes.db.models import Note, Template
from sendernotes.matching import MATCH_PRIORITY, describe_match, extract_email
from sendernotes.startup import App, start

console = Console()


def _run(coro: Coroutine[Any, Any, None]) -> None:
    """Run a command coroutine, turning failures into a message and exit code."""
    try:
        asyncio.run(coro)
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled.[/yellow]")
        sys.exit(130)
    except SystemExit:
        raise
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)


@asynccontextmanager
async def _open_app(ctx: click.Context) -> AsyncIterator[App]:
    """Load config, open storage and run pending migrations for one command."""
    config = get_config(ctx.obj.get("config_path"))
    app = await start(config)
    try:
        yield app
    finally:
        await app.close()


def _notes_table(notes: list[Note], title: str) -> Table:
    table = Table(title=title)
    table.add_column("ID", justify="right")
    table.add_column("Pattern")
    table.add_column("Match")
    table.add_column("Note")
    table.add_column("Original email")
    for note in notes:
        table.add_row(
            str(note.id),
            escape(note.pattern),
            note.match_type,
            escape(note.note),
            escape(note.original_email or ""),
        )
    return table


def _templates_table(templates: list[Template]) -> Table:
    table = Table(title="Templates")
    table.add_column("Order", justify="right")
    table.add_column("ID", justify="right")
    table.add_column("Text")
    for template in templates:
        table.add_row(
            str(template.order),
            "default" if template.is_default else str(template.id),
            escape(template.text),
        )
    return table


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file (default: config/config.yaml)",
)
@click.pass_context
def cli(ctx: click.Context, debug: bool, config_path: Path | None) -> None:
    """Sender Notes - notes attached to email senders."""
    log_level = "DEBUG" if debug else "WARNING"
    configure_logging(log_level=log_level, json_output=False)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@cli.command("validate-config")
@click.pass_context
def validate_config(ctx: click.Context) -> None:
    """Validate the configuration file.

    Checks that config.yaml exists and passes Pydantic schema validation.
    Reports specific errors for invalid fields.
    """
    config_path = ctx.obj.get("config_path")
    console.print(f"Validating config: [cyan]{config_path or 'config/config.yaml'}[/cyan]")

    is_valid, message = validate_config_file(config_path)

    if is_valid:
        console.print(f"\n[green]✓[/green] {message}")
        sys.exit(0)
    else:
        console.print(f"\n[red]✗[/red] {escape(message)}")
        sys.exit(1)


# =============================================================================
# Migrations
# =============================================================================


@cli.command("migrate")
@click.option("--status", "show_status", is_flag=True, help="List migrations without running")
@click.option("--rollback", "rollback_id", default=None, help="Revert one applied migration")
@click.pass_context
def migrate(ctx: click.Context, show_status: bool, rollback_id: str | None) -> None:
    """Apply pending data migrations (or show their status)."""
    _run(_run_migrate(ctx, show_status, rollback_id))


async def _run_migrate(ctx: click.Context, show_status: bool, rollback_id: str | None) -> None:
    from sendernotes.db.migrations import MIGRATIONS, MigrationRunner
    from sendernotes.startup import create_repository

    config = get_config(ctx.obj.get("config_path"))
    repository = create_repository(config)
    runner = MigrationRunner(repository.adapter, MIGRATIONS)
    try:
        if rollback_id:
            await runner.rollback(rollback_id)
            console.print(f"[green]✓[/green] Rolled back {rollback_id}")
            return

        if not show_status:
            report = await runner.run_pending()
            for migration_id in report.applied:
                console.print(f"[green]✓[/green] Applied {migration_id}")
            for failure in report.errors:
                console.print(
                    f"[red]✗[/red] {failure.migration_id}: {escape(failure.error)}"
                )
            for migration_id in report.not_run:
                console.print(f"[yellow]-[/yellow] Not run: {migration_id}")
            if not report.applied and report.ok:
                console.print("Nothing to migrate.")
            if not report.ok:
                sys.exit(1)
            return

        table = Table(title="Migrations")
        table.add_column("ID")
        table.add_column("Description")
        table.add_column("Applied")
        for status in await runner.status():
            applied = (
                status.applied_at.isoformat() if status.applied_at else "[yellow]pending[/yellow]"
            )
            table.add_row(status.id, status.description, applied)
        console.print(table)
    finally:
        await repository.adapter.close()


# =============================================================================
# Notes
# =============================================================================


@cli.group("notes")
def notes_group() -> None:
    """Manage sender notes."""


@notes_group.command("list")
@click.pass_context
def notes_list(ctx: click.Context) -> None:
    """List all notes."""

    async def run() -> None:
        async with _open_app(ctx) as app:
            notes = list((await app.repository.get_all_notes()).values())
        if not notes:
            console.print("No notes yet.")
            return
        console.print(_notes_table(notes, f"Notes ({len(notes)})"))

    _run(run())


@notes_group.command("add")
@click.argument("pattern")
@click.argument("note")
@click.option(
    "--match-type",
    "-m",
    type=click.Choice(MATCH_PRIORITY),
    default="exact",
    show_default=True,
    help="How the pattern is compared to sender addresses",
)
@click.option("--email", default=None, help="Sender the note is for (pattern must match it)")
@click.option("--id", "note_id", type=int, default=None, help="Update the note with this id")
@click.pass_context
def notes_add(
    ctx: click.Context,
    pattern: str,
    note: str,
    match_type: str,
    email: str | None,
    note_id: int | None,
) -> None:
    """Add (or with --id, update) a note for PATTERN."""
    from sendernotes.messaging import MessageDispatcher

    message: dict[str, Any] = {
        "action": "saveNote",
        "pattern": pattern,
        "matchType": match_type,
        "note": note,
        "id": note_id,
    }
    if email:
        message["email"] = extract_email(email)

    async def run() -> None:
        async with _open_app(ctx) as app:
            result = await MessageDispatcher(app.repository).dispatch(message)
        if result["success"]:
            console.print(
                f"[green]✓[/green] Saved note {result['noteId']} "
                f"({escape(describe_match(pattern.lower(), match_type))})"
            )
        else:
            console.print(
                f"[red]✗[/red] {result['message']} (note {result['existingNoteId']})"
            )
            sys.exit(1)

    _run(run())


@notes_group.command("show")
@click.argument("sender")
@click.pass_context
def notes_show(ctx: click.Context, sender: str) -> None:
    """Show the notes matching SENDER (an address or 'Name <address>')."""
    email = extract_email(sender)

    async def run() -> None:
        async with _open_app(ctx) as app:
            notes = await app.repository.find_notes_by_email(email)
        if not notes:
            console.print(f"No note for {escape(email)}.")
            return
        console.print(_notes_table(notes, f"Notes for {escape(email)}"))

    _run(run())


@notes_group.command("delete")
@click.argument("note_id", type=int)
@click.pass_context
def notes_delete(ctx: click.Context, note_id: int) -> None:
    """Delete the note with NOTE_ID."""

    async def run() -> None:
        async with _open_app(ctx) as app:
            await app.repository.delete_note(note_id)
        console.print(f"[green]✓[/green] Deleted note {note_id}")

    _run(run())


@notes_group.command("delete-by-email")
@click.argument("sender")
@click.pass_context
def notes_delete_by_email(ctx: click.Context, sender: str) -> None:
    """Delete the highest-priority note matching SENDER."""
    email = extract_email(sender)

    async def run() -> None:
        async with _open_app(ctx) as app:
            deleted = await app.repository.delete_note_by_email(email)
        if deleted is None:
            console.print(f"No note for {escape(email)}.")
        else:
            console.print(
                f"[green]✓[/green] Deleted note {deleted.id} ({escape(deleted.pattern)})"
            )

    _run(run())


# =============================================================================
# Templates
# =============================================================================


@cli.group("templates")
def templates_group() -> None:
    """Manage quick note templates."""


def _template_ref_options(func: Any) -> Any:
    func = click.option(
        "--order", type=int, default=None, help="Order of an unsaved default template"
    )(func)
    func = click.option("--id", "template_id", type=int, default=None, help="Template id")(func)
    return func


@templates_group.command("list")
@click.pass_context
def templates_list(ctx: click.Context) -> None:
    """List templates (configured defaults until templates are edited)."""

    async def run() -> None:
        async with _open_app(ctx) as app:
            templates = await app.repository.get_templates()
        if not templates:
            console.print("No templates.")
            return
        console.print(_templates_table(templates))

    _run(run())


@templates_group.command("add")
@click.argument("text")
@click.pass_context
def templates_add(ctx: click.Context, text: str) -> None:
    """Append a template."""

    async def run() -> None:
        async with _open_app(ctx) as app:
            template = await app.repository.add_template(text)
        console.print(f"[green]✓[/green] Added template {template.id}")

    _run(run())


@templates_group.command("edit")
@_template_ref_options
@click.argument("text")
@click.pass_context
def templates_edit(
    ctx: click.Context, template_id: int | None, order: int | None, text: str
) -> None:
    """Replace a template's text."""

    async def run() -> None:
        async with _open_app(ctx) as app:
            template = await app.repository.update_template(template_id, text, default_order=order)
        if template is None:
            console.print("[yellow]No such template.[/yellow]")
        else:
            console.print(f"[green]✓[/green] Updated template {template.id}")

    _run(run())


@templates_group.command("delete")
@_template_ref_options
@click.pass_context
def templates_delete(ctx: click.Context, template_id: int | None, order: int | None) -> None:
    """Delete a template."""

    async def run() -> None:
        async with _open_app(ctx) as app:
            await app.repository.delete_template(template_id, default_order=order)
        console.print("[green]✓[/green] Template deleted")

    _run(run())


@templates_group.command("move")
@_template_ref_options
@click.option("--after-id", type=int, default=None, help="Place after this template id")
@click.option("--after-order", type=int, default=None, help="Place after this default")
@click.pass_context
def templates_move(
    ctx: click.Context,
    template_id: int | None,
    order: int | None,
    after_id: int | None,
    after_order: int | None,
) -> None:
    """Move a template after another one (or to the top when no --after-* is given)."""

    async def run() -> None:
        async with _open_app(ctx) as app:
            await app.repository.move_template(
                template_id,
                after_id,
                default_order=order,
                after_default_order=after_order,
            )
            templates = await app.repository.get_templates()
        console.print(_templates_table(templates))

    _run(run())


# =============================================================================
# Settings
# =============================================================================


@cli.group("settings")
def settings_group() -> None:
    """Read and change settings."""


@settings_group.command("show")
@click.pass_context
def settings_show(ctx: click.Context) -> None:
    """Show all settings."""

    async def run() -> None:
        async with _open_app(ctx) as app:
            settings = await app.repository.get_settings()
        if not settings:
            console.print("No settings saved.")
            return
        for key, value in sorted(settings.items()):
            console.print(f"{escape(key)} = {escape(json.dumps(value))}")

    _run(run())


@settings_group.command("get")
@click.argument("key")
@click.pass_context
def settings_get(ctx: click.Context, key: str) -> None:
    """Print one setting as JSON."""

    async def run() -> None:
        async with _open_app(ctx) as app:
            value = await app.repository.get_setting(key)
        click.echo(json.dumps(value))

    _run(run())


@settings_group.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def settings_set(ctx: click.Context, key: str, value: str) -> None:
    """Set KEY to VALUE (YAML scalar: true, 3, 0.5, text)."""
    parsed = yaml.safe_load(value)
    if parsed is not None and not isinstance(parsed, (str, int, float, bool)):
        console.print(
            f"[red]Error:[/red] Cannot store a {type(parsed).__name__} value. "
            "Use text, a number, true/false or null (quote a value to keep it as text)."
        )
        sys.exit(1)

    async def run() -> None:
        async with _open_app(ctx) as app:
            await app.repository.set_setting(key, parsed)
        console.print(f"[green]✓[/green] {escape(key)} = {escape(json.dumps(parsed))}")

    _run(run())


# =============================================================================
# Import and raw messages
# =============================================================================


@cli.command("import-legacy")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def import_legacy(ctx: click.Context, file: Path) -> None:
    """Import notes and templates from a legacy JSON export."""
    from sendernotes.legacy import import_legacy_file

    async def run() -> None:
        async with _open_app(ctx) as app:
            report = await import_legacy_file(app.repository, file)
        console.print(f"[green]✓[/green] Imported {len(report.imported)} notes")
        if report.duplicates:
            console.print(f"  Skipped {len(report.duplicates)} duplicates")
        if report.invalid:
            console.print(f"  Skipped {len(report.invalid)} malformed entries")
        console.print(f"  Imported {report.templates_imported} templates")

    _run(run())


@cli.command("request")
@click.argument("message")
@click.pass_context
def request(ctx: click.Context, message: str) -> None:
    """Send a raw JSON MESSAGE through the dispatcher and print the response."""
    from sendernotes.messaging import MessageDispatcher

    try:
        payload = json.loads(message)
    except json.JSONDecodeError as e:
        console.print(f"[red]Error:[/red] Message is not valid JSON: {escape(str(e))}")
        sys.exit(1)

    async def run() -> None:
        async with _open_app(ctx) as app:
            response = await MessageDispatcher(app.repository).dispatch(payload)
        click.echo(json.dumps(response, ensure_ascii=False))

    _run(run())


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
