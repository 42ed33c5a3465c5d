"""Exception taxonomy for the backup engine.

Fatal errors (schema read, upload, timeout) end a run in ``failed``. Non-fatal
ones (table dump, object fetch, duplicate listing entry) are embedded in the
artifact and the run's warnings instead of being raised to the caller.
"""

from __future__ import annotations

from typing import Optional


class BackupError(Exception):
    """Base class for all backup engine errors."""


class ConfigurationError(BackupError):
    """Settings are missing or inconsistent."""


class SchemaReadError(BackupError):
    """The relational catalog could not be read; no partial schema is usable."""


class TableDumpError(BackupError):
    """Reading one table failed. Recorded inline in the dump, never raised out of it."""

    def __init__(self, table_name: str, message: str):
        super().__init__(f"could not dump table {table_name}: {message}")
        self.table_name = table_name
        self.reason = message


class ObjectFetchError(BackupError):
    """One object could not be downloaded from the object store."""

    def __init__(self, path: str, message: str):
        super().__init__(f"could not fetch object {path}: {message}")
        self.path = path
        self.reason = message


class DuplicateObjectError(BackupError):
    """The same object path appeared twice in a storage listing."""

    def __init__(self, path: str):
        super().__init__(f"duplicate object path in listing: {path}")
        self.path = path


class UploadError(BackupError):
    """The artifact could not be stored; the run cannot succeed."""


class BackupTimeoutError(BackupError, TimeoutError):
    """The run exceeded its wall-clock deadline."""

    def __init__(self, kind: str, seconds: float):
        super().__init__(f"{kind} backup timeout after {seconds:g} seconds")
        self.kind = kind
        self.seconds = seconds


class BackupInProgressError(BackupError):
    """Another run holds the single-flight lease."""

    def __init__(self, running_run_id: Optional[str]):
        super().__init__(f"backup already running: {running_run_id}")
        self.running_run_id = running_run_id


class BackupNotFoundError(BackupError):
    """The requested run does not exist or is not restorable."""


class RestoreNotConfirmedError(BackupError):
    """Restore was requested without explicit operator confirmation."""


class RestoreStatementError(BackupError):
    """A dump statement failed during restore; the transaction was rolled back."""

    def __init__(self, index: int, statement: str, message: str):
        excerpt = " ".join(statement.split())
        if len(excerpt) > 120:
            excerpt = excerpt[:117] + "..."
        super().__init__(f"statement {index} failed: {message} [{excerpt}]")
        self.index = index
        self.statement = statement
        self.reason = message


class AuthenticationError(BackupError):
    """An external trigger failed authentication."""
