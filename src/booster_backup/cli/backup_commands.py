"""Backup, retention and restore commands."""

from __future__ import annotations

import json
import signal
import threading
from typing import List, Optional

import typer
from rich.table import Table

from ..errors import BackupError, BackupInProgressError
from ..health import HealthStatus
from ..logger import get_logger
from ..models import BackupKind, BackupStatus
from .core import app, console, format_size, get_service

log = get_logger(__name__)


def _parse_kind(kind: Optional[str]) -> Optional[BackupKind]:
    if kind is None:
        return None
    try:
        return BackupKind(kind.lower())
    except ValueError:
        console.print(f"[red]Error: Invalid backup kind '{kind}'. Use: database, blob, full[/red]")
        raise typer.Exit(1)


@app.command("create")
def create_backup(
    ctx: typer.Context,
    kind: str = typer.Option("database", "--kind", "-k", help="Backup kind: database, blob, full"),
) -> None:
    """Create a backup and wait for it to finish."""
    bkind = _parse_kind(kind) or BackupKind.DATABASE
    service = get_service(ctx)

    console.print(f"[blue]Creating {bkind.value} backup...[/blue]")
    try:
        run = service.create_backup(bkind)
    except BackupInProgressError as e:
        console.print(f"[yellow]{e}[/yellow]")
        raise typer.Exit(1)
    except BackupError as e:
        console.print(f"[red]Error creating backup: {e}[/red]")
        raise typer.Exit(1)

    if run.status != BackupStatus.SUCCESS:
        console.print(f"[red]✗ Backup {run.id} failed: {run.error_message}[/red]")
        raise typer.Exit(1)

    console.print("\n[green]Backup created successfully![/green]")
    console.print(f"  ID: {run.id}")
    console.print(f"  Kind: {run.kind.value}")
    console.print(f"  Size: {format_size(run.size_bytes)}")
    console.print(f"  Location: {run.artifact_location}")
    if run.table_count:
        console.print(f"  Tables: {run.table_count}")
    if run.object_count:
        console.print(f"  Objects: {run.object_count}")
    for warning in run.warnings:
        console.print(f"  [yellow]Warning: {warning}[/yellow]")


@app.command("list")
def list_backups(
    ctx: typer.Context,
    kind: Optional[str] = typer.Option(None, "--kind", "-k", help="Filter by kind"),
    limit: int = typer.Option(20, "--limit", "-l", help="Maximum number of runs to show"),
    as_json: bool = typer.Option(False, "--json", help="Print runs as JSON"),
) -> None:
    """List backup runs, newest first."""
    bkind = _parse_kind(kind)
    runs = get_service(ctx).list_backups(kind=bkind, limit=limit)
    if as_json:
        console.print_json(json.dumps([run.to_dict() for run in runs]))
        return
    if not runs:
        console.print("[yellow]No backups found[/yellow]")
        return

    table = Table(title=f"Backups ({len(runs)})")
    table.add_column("ID", style="cyan")
    table.add_column("Kind")
    table.add_column("Status")
    table.add_column("Finished", style="dim")
    table.add_column("Size", justify="right")
    table.add_column("Location")

    for run in runs:
        status = run.status.value
        if run.status == BackupStatus.SUCCESS:
            status = "[green]success[/green]" if run.purged_at is None else "[dim]purged[/dim]"
        elif run.status == BackupStatus.FAILED:
            status = "[red]failed[/red]"
        table.add_row(
            run.id,
            run.kind.value,
            status,
            run.finished_at.strftime("%Y-%m-%d %H:%M:%S") if run.finished_at else "-",
            format_size(run.size_bytes),
            run.artifact_location or (run.error_message or ""),
        )
    console.print(table)


@app.command("status")
def show_status(
    ctx: typer.Context,
    as_json: bool = typer.Option(False, "--json", help="Print the summary as JSON"),
) -> None:
    """Show the backup status summary."""
    summary = get_service(ctx).get_status()
    if as_json:
        console.print_json(json.dumps(summary.to_dict()))
        return
    table = Table(title="Backup Status", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Last backup", summary.last_backup.isoformat() if summary.last_backup else "never")
    table.add_row("Last status", summary.last_backup_status.value if summary.last_backup_status else "-")
    table.add_row("Backups", str(summary.backup_count))
    table.add_row("Total size", format_size(summary.total_backup_size))
    table.add_row(
        "Next scheduled",
        summary.next_scheduled_backup.isoformat() if summary.next_scheduled_backup else "-",
    )
    table.add_row("Running", summary.running_run_id or "-")
    console.print(table)


@app.command("cleanup")
def cleanup(
    ctx: typer.Context,
    dry_run: bool = typer.Option(False, "--dry-run", "-n", help="Show what would be deleted"),
) -> None:
    """Delete full and blob backups older than the retention window."""
    result = get_service(ctx).cleanup_old_backups(dry_run=dry_run)
    verb = "Would delete" if dry_run else "Deleted"
    if not result.purged_run_ids and not result.failed:
        console.print("[green]No backups to prune[/green]")
        return
    for path in result.deleted:
        console.print(f"  {verb} {path}")
    console.print(
        f"[green]{verb} {len(result.deleted)} artifact(s), {format_size(result.freed_bytes)}[/green]"
    )
    for failure in result.failed:
        console.print(f"  [red]✗ {failure['path']}: {failure['error']}[/red]")
    if result.failed:
        raise typer.Exit(1)


@app.command("delete")
def delete_artifacts(
    ctx: typer.Context,
    paths: List[str] = typer.Argument(..., help="Artifact paths to delete"),
) -> None:
    """Delete specific backup artifacts."""
    result = get_service(ctx).delete_artifacts(paths)
    for path in result.deleted:
        console.print(f"[green]✓ Deleted {path}[/green]")
    for failure in result.failed:
        console.print(f"[red]✗ {failure['path']}: {failure['error']}[/red]")
    if result.failed:
        raise typer.Exit(1)


@app.command("analyze")
def analyze(
    ctx: typer.Context,
    artifact_path: str = typer.Argument(..., help="Artifact path in the object store"),
    as_json: bool = typer.Option(False, "--json", help="Print the analysis as JSON"),
) -> None:
    """Summarise a dump's tables and record counts without restoring it."""
    try:
        analysis = get_service(ctx).analyze(artifact_path)
    except Exception as e:
        console.print(f"[red]Error reading {artifact_path}: {e}[/red]")
        raise typer.Exit(1)

    if as_json:
        console.print_json(json.dumps(analysis.to_dict()))
        return

    table = Table(title=f"{artifact_path}")
    table.add_column("Table", style="cyan")
    table.add_column("Records", justify="right")
    for detail in analysis.table_details:
        table.add_row(detail.name, str(detail.records))
    console.print(table)
    console.print(f"Tables: {analysis.total_tables}  Records: {analysis.total_records}")
    for warning in analysis.warnings:
        console.print(f"[yellow]Warning: {warning}[/yellow]")


@app.command("restore")
def restore(
    ctx: typer.Context,
    run_id: str = typer.Argument(..., help="Backup run ID to restore"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the typed confirmation"),
) -> None:
    """Replace the database contents with a backup. All or nothing."""
    service = get_service(ctx)
    run = service.get_backup(run_id)
    if run is None or not run.is_restorable:
        console.print(f"[red]Error: Backup '{run_id}' not found or not restorable[/red]")
        raise typer.Exit(1)

    if not yes:
        console.print("\n[yellow]You are about to restore:[/yellow]")
        console.print(f"  Backup ID: {run.id}")
        console.print(f"  Kind: {run.kind.value}")
        console.print(f"  Finished: {run.finished_at}")
        console.print(f"  Size: {format_size(run.size_bytes)}")
        console.print("\n[red]Warning: every backed-up table will be dropped and recreated.[/red]")
        typed = typer.prompt("Type the backup ID to confirm")
        if typed.strip() != run.id:
            console.print("[yellow]Restore cancelled[/yellow]")
            raise typer.Exit(1)

    console.print("[blue]Restoring backup...[/blue]")
    try:
        result = service.restore(run_id, confirm=True)
    except BackupError as e:
        console.print(f"[red]Error restoring backup: {e}[/red]")
        raise typer.Exit(1)

    if not result.success:
        console.print(f"[red]✗ Restore failed: {result.error}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]✓ Restored {run_id} ({result.statements_executed} statements)[/green]")


@app.command("verify")
def verify(
    ctx: typer.Context,
    run_id: str = typer.Argument(..., help="Backup run ID to verify"),
) -> None:
    """Check that a backup's artifact exists and is intact."""
    result = get_service(ctx).verify_backup(run_id)
    if result["valid"]:
        console.print(f"[green]✓ Backup {run_id} verified ({format_size(result['actual_size'])})[/green]")
        return
    console.print(f"[red]✗ Backup {run_id} failed verification: {result['error']}[/red]")
    raise typer.Exit(1)


@app.command("health")
def health(
    ctx: typer.Context,
    detailed: bool = typer.Option(False, "--detailed", help="Show per-component details"),
    as_json: bool = typer.Option(False, "--json", help="Print the report as JSON"),
) -> None:
    """Check that the database and the object store are reachable."""
    report = get_service(ctx).health_check()

    if as_json:
        console.print_json(json.dumps(report.to_dict()))
    else:
        console.print(f"\n[yellow]Backup Health Status: {report.status.value.upper()}[/yellow]")
        for name, component in report.components.items():
            ok = component.status == HealthStatus.HEALTHY
            color = "green" if ok else "red"
            console.print(f"[{color}]{name}: {component.status.value}[/{color}]")
            if detailed or not ok:
                console.print(f"  {component.message}")
            if detailed:
                for key, value in component.details.items():
                    console.print(f"  {key}: {value}")

    if not report.healthy:
        raise typer.Exit(1)


@app.command("schedule")
def schedule(ctx: typer.Context) -> None:
    """Run the backup scheduler in the foreground until interrupted."""
    service = get_service(ctx)
    if not service.config.enabled:
        console.print("[yellow]Backups are disabled in configuration[/yellow]")
        raise typer.Exit(1)

    stop = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        log.info("Received signal %s, shutting down...", signum)
        stop.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    service.scheduler.start()
    next_run = service.scheduler.next_scheduled_backup()
    console.print(f"[green]Scheduler running; next backup at {next_run.isoformat() if next_run else 'never'}[/green]")
    try:
        stop.wait()
    finally:
        service.scheduler.stop()
