"""CLI commands for booster-backup."""

# These imports register CLI commands with the app via decorators
from . import backup_commands  # noqa: F401
from .core import app


def main() -> None:
    """Console entry point for the booster-backup CLI."""
    app()


__all__ = ["app", "main"]
