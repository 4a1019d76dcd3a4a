# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
docbackup CLI - Run, inspect and restore backups from the command line.

The record store is loaded from a "module:factory" reference (--store or
DOCBACKUP_STORE). The factory may be a plain or an async callable returning a
RecordStore. --demo uses an in-memory store seeded with sample records.

    docbackup --demo backup
    docbackup --store myapp.db:backup_store backup --tier daily
    docbackup restore backup_2025-01-01T02-00-00-000Z --collection users_restored
    docbackup schedule
"""

import asyncio
import importlib
import inspect
import os
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Any, List, Optional

import structlog
import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from docbackup.config import SCHEDULED_TIERS, BackupConfig, Tier, parse_formats
from docbackup.core import BackupState, RunLog, RunStatus, initialize_backup_state
from docbackup.env import create_config_from_env, lightweight, long_retention
from docbackup.exceptions import BackupPipelineError, ConfigurationError
from docbackup.log_setup import setup_logging_from_config
from docbackup.records import Record
from docbackup.store import InMemoryRecordStore

logger = structlog.get_logger()

STORE_ENV = "DOCBACKUP_STORE"
DEMO_COLLECTION = "test_collection"

PROFILES = {
    "long": long_retention,
    "lightweight": lightweight,
}

STATUS_STYLES = {
    RunStatus.SUCCESS: "green",
    RunStatus.PARTIAL_SUCCESS: "yellow",
    RunStatus.FAILED: "red",
    RunStatus.IN_PROGRESS: "cyan",
}

app = typer.Typer(
    name="docbackup",
    help="Tiered backups of a document database",
    no_args_is_help=True,
)
console = Console()


@dataclass
class CliContext:
    """Options shared by every command."""

    config: BackupConfig
    store_ref: str | None = None
    demo: bool = False


def demo_store() -> InMemoryRecordStore:
    """In-memory store holding the sample user records."""
    documents = [
        {
            "id": "1",
            "name": "John Doe",
            "email": "john@example.com",
            "role": "admin",
            "createdAt": "2024-01-01T10:00:00Z",
            "lastLogin": "2024-01-15T08:30:00Z",
        },
        {
            "id": "2",
            "name": "Jane Smith",
            "email": "jane@example.com",
            "role": "user",
            "createdAt": "2024-01-02T14:20:00Z",
            "lastLogin": "2024-01-14T16:45:00Z",
        },
        {
            "id": "3",
            "name": "Bob Johnson",
            "email": "bob@example.com",
            "role": "moderator",
            "createdAt": "2024-01-03T09:15:00Z",
            "lastLogin": "2024-01-13T11:20:00Z",
        },
    ]
    return InMemoryRecordStore({DEMO_COLLECTION: [Record.from_document(d) for d in documents]})


def load_store_factory(reference: str) -> Any:
    """
    Call the factory named by a "package.module:callable" reference.

    Raises:
        ConfigurationError: If the reference cannot be imported or called
    """
    module_name, _, attribute = reference.partition(":")
    if not module_name or not attribute:
        raise ConfigurationError(
            f"Invalid store reference {reference!r}. Expected 'package.module:factory'."
        )
    try:
        factory = getattr(importlib.import_module(module_name), attribute)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"Cannot load store factory {reference!r}: {e}") from e
    return factory()


async def _open_store(cli: CliContext) -> Any:
    if cli.demo:
        return demo_store()
    if not cli.store_ref:
        raise ConfigurationError(
            f"No record store configured. Pass --store module:factory, set {STORE_ENV}, or use --demo."
        )
    store = load_store_factory(cli.store_ref)
    if inspect.isawaitable(store):
        store = await store
    return store


async def _open_state(
    cli: CliContext,
    need_store: bool = True,
    load_history: bool = False,
) -> BackupState:
    store = await _open_store(cli) if need_store else None
    state = initialize_backup_state(cli.config, store)

    if load_history:
        # Oldest first so the newest run of each tier wins
        for run_log in reversed(await state["run_logs"].list()):
            state["last_runs"][run_log.tier] = run_log
            state["last_run_at"] = run_log.started_at
    return state


def _run(coro: Any) -> Any:
    """Run a coroutine, turning pipeline errors into a red message and exit 1."""
    try:
        return asyncio.run(coro)
    except BackupPipelineError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        for detail in e.details.get("errors", []):
            console.print(f"  - {detail}")
        raise typer.Exit(1)


def _split(value: str | None) -> List[str] | None:
    if not value:
        return None
    return [item.strip() for item in value.split(",") if item.strip()]


def _format_size(size_bytes: float) -> str:
    """Format byte size as human-readable string."""
    for unit in ["B", "KB", "MB", "GB"]:
        if size_bytes < 1024:
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024
    return f"{size_bytes:.1f} TB"


def _status_text(status: RunStatus) -> str:
    return f"[{STATUS_STYLES[status]}]{status.value}[/{STATUS_STYLES[status]}]"


def _print_run(run_log: RunLog) -> None:
    title = f"{run_log.run_id} ({run_log.tier})"
    if run_log.dry_run:
        title += " [yellow]dry run[/yellow]"
    table = Table(title=title)
    table.add_column("Collection")
    table.add_column("Format")
    table.add_column("Records", justify="right")
    table.add_column("Size", justify="right")
    table.add_column("File")

    for manifest in run_log.manifests:
        table.add_row(
            manifest.collection,
            manifest.codec,
            str(manifest.record_count),
            _format_size(manifest.byte_size),
            Path(manifest.path).name,
        )
    for collection, names in sorted(run_log.planned.items()):
        for name in names:
            table.add_row(collection, "-", "-", "-", f"{name} (planned)")

    console.print(table)
    for error in run_log.errors:
        where = error.collection or "run"
        if error.codec:
            where += f"/{error.codec}"
        console.print(f"[red]✗[/red] {where}: {error.message}")

    console.print(
        f"Status: {_status_text(run_log.status)}  "
        f"records: {run_log.total_records}  "
        f"collections: {run_log.collections_attempted}  "
        f"duration: {run_log.duration_seconds:.2f}s"
        + ("  [yellow](cancelled)[/yellow]" if run_log.cancelled else "")
    )


@app.callback()
def main_options(
    ctx: typer.Context,
    root: Annotated[
        Optional[Path],
        typer.Option("--root", "-r", help="Backup root directory (overrides BACKUP_DIR)"),
    ] = None,
    store: Annotated[
        Optional[str],
        typer.Option("--store", envvar=STORE_ENV, help="Record store factory, 'package.module:factory'"),
    ] = None,
    demo: Annotated[
        bool,
        typer.Option("--demo", help="Use an in-memory store seeded with sample records"),
    ] = False,
    profile: Annotated[
        Optional[str],
        typer.Option("--profile", help="Apply a preset: 'long' or 'lightweight'"),
    ] = None,
    log_level: Annotated[
        Optional[str],
        typer.Option("--log-level", help="debug, info, warning or error"),
    ] = None,
) -> None:
    """Configuration comes from the BACKUP_* environment variables."""
    try:
        config = create_config_from_env()
        if root is not None:
            config = config.with_updates(root_dir=root)
        if log_level:
            config = config.with_updates(log_level=log_level.upper())
        if profile:
            if profile not in PROFILES:
                raise ConfigurationError(
                    f"Unknown profile {profile!r}. Expected one of: {', '.join(PROFILES)}."
                )
            config = PROFILES[profile](config)
        config.check_root_dir(create=False)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/red] {e.message}")
        for detail in e.details.get("errors", []):
            console.print(f"  - {detail}")
        raise typer.Exit(2)

    setup_logging_from_config(config)
    ctx.obj = CliContext(config=config, store_ref=store, demo=demo)


@app.command()
def backup(
    ctx: typer.Context,
    tier: Annotated[
        Optional[Tier],
        typer.Option("--tier", "-t", help="Tier to run and prune (default: manual)"),
    ] = None,
    collections: Annotated[
        Optional[str],
        typer.Option("--collections", "-c", help="Comma-separated collections (default: all)"),
    ] = None,
    formats: Annotated[
        str,
        typer.Option("--format", "-f", help="all, or comma-separated relational,document,tabular"),
    ] = "all",
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", help="Show the files a run would write"),
    ] = False,
) -> None:
    """Run a backup now."""
    from docbackup.core import run_backup

    cli: CliContext = ctx.obj
    console.print(Panel("[bold blue]docbackup - Backup[/bold blue]"))

    async def _backup() -> RunLog:
        state = await _open_state(cli)
        return await run_backup(
            cli.config,
            state,
            tier=tier,
            collections=_split(collections),
            formats=parse_formats(formats),
            dry_run=dry_run,
        )

    run_log = _run(_backup())

    _print_run(run_log)
    if run_log.status == RunStatus.FAILED:
        raise typer.Exit(1)


@app.command()
def restore(
    ctx: typer.Context,
    backup_id: Annotated[
        str,
        typer.Argument(help="Run id (backup_<stamp>), artifact file name or path"),
    ],
    collection: Annotated[
        Optional[str],
        typer.Option("--collection", help="Target collection (default: every collection of the run)"),
    ] = None,
    source: Annotated[
        Optional[str],
        typer.Option("--source", help="Collection to read from the run (default: the target)"),
    ] = None,
    fmt: Annotated[
        str,
        typer.Option("--format", "-f", help="auto, relational, document or tabular"),
    ] = "auto",
    overwrite: Annotated[
        bool,
        typer.Option("--overwrite", help="Replace records that already exist"),
    ] = False,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", help="Decode and count without writing"),
    ] = False,
) -> None:
    """Restore a backup into the record store."""
    from docbackup.backup.restore import RestoreRequest, restore_backup, restore_run

    cli: CliContext = ctx.obj
    console.print(Panel("[bold yellow]docbackup - Restore[/bold yellow]"))

    async def _restore():
        state = await _open_state(cli)
        if collection:
            request = RestoreRequest(
                backup_id=backup_id,
                target_collection=collection,
                format=fmt,
                overwrite=overwrite,
                source_collection=source,
                dry_run=dry_run,
            )
            return [await restore_backup(cli.config, state, request)]
        return await restore_run(
            cli.config, state, backup_id, format=fmt, overwrite=overwrite, dry_run=dry_run
        )

    results = _run(_restore())

    table = Table(title=f"Restore of {backup_id}")
    table.add_column("Collection")
    table.add_column("Format")
    table.add_column("Written", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Source")
    for result in results:
        table.add_row(
            result.collection,
            result.codec,
            str(result.written),
            str(result.skipped),
            f"[red]{result.failed}[/red]" if result.failed else "0",
            Path(result.artifact_path).name,
        )
    console.print(table)

    if dry_run:
        console.print("[yellow]Dry run - no changes made[/yellow]")

    duplicates = sum(1 for r in results for f in r.failures if f.error_type == "duplicate")
    if duplicates and not overwrite:
        console.print(f"[yellow]{duplicates} record(s) already existed; pass --overwrite to replace them[/yellow]")


@app.command()
def history(
    ctx: typer.Context,
    limit: Annotated[
        Optional[int],
        typer.Option("--limit", "-n", help="Number of runs to show"),
    ] = None,
) -> None:
    """List recent runs, newest first."""
    from docbackup.catalog import list_history

    cli: CliContext = ctx.obj

    async def _history() -> List[RunLog]:
        state = await _open_state(cli, need_store=False)
        return await list_history(cli.config, state, limit)

    runs = _run(_history())
    if not runs:
        console.print("[yellow]No backups found[/yellow]")
        return

    table = Table(title="Backup History")
    table.add_column("Run")
    table.add_column("Tier")
    table.add_column("Started")
    table.add_column("Status")
    table.add_column("Collections", justify="right")
    table.add_column("Records", justify="right")
    table.add_column("Size", justify="right")
    for run_log in runs:
        table.add_row(
            run_log.run_id,
            run_log.tier,
            run_log.started_at.strftime("%Y-%m-%d %H:%M:%S"),
            _status_text(run_log.status),
            str(len(run_log.collections)),
            str(run_log.total_records),
            _format_size(sum(m.byte_size for m in run_log.manifests)),
        )
    console.print(table)


@app.command()
def show(
    ctx: typer.Context,
    backup_id: Annotated[str, typer.Argument(help="Run id (backup_<stamp>)")],
) -> None:
    """Show the files and errors of one run."""
    from docbackup.catalog import get_run_log

    cli: CliContext = ctx.obj

    async def _show() -> RunLog:
        state = await _open_state(cli, need_store=False)
        return await get_run_log(cli.config, state, backup_id)

    _print_run(_run(_show()))


@app.command()
def delete(
    ctx: typer.Context,
    backup_id: Annotated[str, typer.Argument(help="Run id (backup_<stamp>)")],
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Do not ask for confirmation"),
    ] = False,
) -> None:
    """Delete every file of a run and its log."""
    from docbackup.catalog import delete_backup

    cli: CliContext = ctx.obj
    if not yes:
        typer.confirm(f"Delete backup {backup_id}?", abort=True)

    async def _delete():
        state = await _open_state(cli, need_store=False)
        return await delete_backup(cli.config, state, backup_id)

    result = _run(_delete())
    for path in result.deleted_files:
        console.print(f"  Removed: {path}")
    for path in result.failed_files:
        console.print(f"  [red]Could not remove:[/red] {path}")

    console.print(f"[green]Deleted {len(result.deleted_files)} file(s) of {result.run_id}[/green]")
    if result.failed_files:
        raise typer.Exit(1)


@app.command()
def prune(
    ctx: typer.Context,
    tier: Annotated[
        Optional[Tier],
        typer.Option("--tier", "-t", help="Tier to prune (default: every scheduled tier)"),
    ] = None,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", help="Show what would be removed"),
    ] = False,
) -> None:
    """Apply retention without running a backup."""
    from docbackup.backup.retention import prune_tier

    cli: CliContext = ctx.obj
    tiers = [tier] if tier else list(SCHEDULED_TIERS)

    if dry_run:
        console.print("[yellow]Dry run - showing what would be removed:[/yellow]")

    total = 0
    for selected in tiers:
        keep = cli.config.retention_for(selected)
        if keep is None:
            console.print(f"[yellow]{selected.value} backups are never pruned[/yellow]")
            continue
        try:
            result = prune_tier(cli.config.root_dir, selected, keep, dry_run=dry_run)
        except BackupPipelineError as e:
            console.print(f"[red]Error:[/red] {e.message}")
            raise typer.Exit(1)

        total += len(result.deleted)
        for collection, stamp in result.deleted:
            verb = "Would remove" if dry_run else "Removed"
            console.print(f"  {verb}: {selected.value}/{collection} @ {stamp}")
        for collection, stamp in result.failed:
            console.print(f"  [red]Could not remove:[/red] {selected.value}/{collection} @ {stamp}")
        if result.deleted:
            console.print(
                f"  {selected.value}: {len(result.deleted)} group(s), {_format_size(result.bytes_freed)}"
            )

    if not dry_run:
        console.print(f"[green]Cleaned up {total} old backup group(s)[/green]")


@app.command()
def status(ctx: typer.Context) -> None:
    """Show each tier's schedule, retention, last and next run."""
    from docbackup.backup.retention import get_storage_stats
    from docbackup.scheduler import BackupScheduler

    cli: CliContext = ctx.obj

    async def _status():
        state = await _open_state(cli, need_store=False, load_history=True)
        return BackupScheduler(cli.config, state).status()

    tiers = _run(_status())

    table = Table(title=f"Backup Schedule ({cli.config.timezone})")
    table.add_column("Tier")
    table.add_column("Schedule")
    table.add_column("Keep", justify="right")
    table.add_column("Last run")
    table.add_column("Last status")
    table.add_column("Next run")
    for name, info in tiers.items():
        schedule = info["schedule"] or "-"
        if not info["enabled"] and name != Tier.MANUAL.value:
            schedule = f"[dim]{schedule} (disabled)[/dim]"
        table.add_row(
            name,
            schedule,
            str(info["retention"]) if info["retention"] else "-",
            info["last_run_at"] or "-",
            _status_text(RunStatus(info["last_status"])) if info["last_status"] else "-",
            info["next_run_at"] or "-",
        )
    console.print(table)

    stats = get_storage_stats(cli.config.root_dir)
    for name, tier_stats in stats["tiers"].items():
        console.print(
            f"  {name}: {tier_stats['runs']} run(s), {tier_stats['files']} file(s), "
            f"{_format_size(tier_stats['bytes'])}"
        )


@app.command()
def schedule(ctx: typer.Context) -> None:
    """Run the scheduler in the foreground until interrupted."""
    from docbackup.scheduler import BackupScheduler

    cli: CliContext = ctx.obj

    async def _serve() -> None:
        state = await _open_state(cli)
        scheduler = BackupScheduler(cli.config, state)
        if not scheduler.tiers:
            raise ConfigurationError("Every tier is disabled; nothing to schedule")

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)

        for tier, next_at in scheduler.next_fire_times().items():
            console.print(f"  {tier.value}: next run at {next_at.isoformat() if next_at else '-'}")

        scheduler.start()
        logger.info("cli_scheduler_running", tiers=[t.value for t in scheduler.tiers])
        await stop.wait()
        console.print("[yellow]Stopping, waiting for runs in flight...[/yellow]")
        await scheduler.stop()

    console.print(Panel("[bold blue]docbackup - Scheduler[/bold blue]"))
    _run(_serve())


@app.command()
def crontab(
    ctx: typer.Context,
    command: Annotated[
        str,
        typer.Option("--command", help="How cron should invoke docbackup"),
    ] = "docbackup",
) -> None:
    """Print crontab lines for running the tiers from the system cron."""
    cli: CliContext = ctx.obj
    log_file = cli.config.logs_dir / "cron.log"
    workdir = os.getcwd()

    console.print(f"# docbackup schedules ({cli.config.timezone})", markup=False, highlight=False)
    if cli.config.timezone != "UTC":
        console.print(f"CRON_TZ={cli.config.timezone}", markup=False, highlight=False)
    for tier, tier_config in cli.config.tiers.items():
        if not tier_config.enabled:
            continue
        console.print(
            f"{tier_config.schedule} cd {workdir} && {command} backup --tier {tier.value} "
            f">> {log_file} 2>&1",
            markup=False,
            highlight=False,
            soft_wrap=True,
        )


def main() -> None:
    app()


if __name__ == "__main__":
    main()
