"""Core CLI application and shared utilities."""

from __future__ import annotations

from typing import Optional

import typer
from rich.console import Console

from ..config import load_settings
from ..logger import configure_logging, get_logger
from ..service import BackupService, build_service

app = typer.Typer(add_completion=False, no_args_is_help=True, help="Booster club backup and restore")
console = Console()
log = get_logger(__name__)


@app.callback()
def main(
    ctx: typer.Context,
    config: str = typer.Option(None, "--config", "-c", help="Path to settings.yaml"),
    log_level: str = typer.Option(None, "--log-level", help="Log level (DEBUG, INFO, WARNING, ERROR)"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit JSON log lines"),
) -> None:
    """Back up, prune and restore the booster club database and file store."""
    configure_logging(level=log_level, json_output=json_logs)
    ctx.obj = {"config": config}


def get_config_path(ctx: typer.Context) -> Optional[str]:
    """Get config path from context."""
    return ctx.obj.get("config") if ctx.obj else None


def get_service(ctx: typer.Context) -> BackupService:
    settings = load_settings(get_config_path(ctx))
    return build_service(settings)


def format_size(size_bytes: int) -> str:
    size = float(size_bytes)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024 or unit == "GB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.2f} {unit}"
        size /= 1024
    return f"{size:.2f} GB"
