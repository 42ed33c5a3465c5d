"""Data model for backup runs, dumps and object manifests."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class BackupKind(str, Enum):
    """What a run captures."""
    DATABASE = "database"
    BLOB = "blob"
    FULL = "full"


class BackupStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class CompressionType(str, Enum):
    """Compression applied to database dump artifacts."""
    NONE = "none"
    GZIP = "gzip"
    ZSTD = "zstd"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class BackupRun:
    """One attempt to produce a backup, as persisted in the registry."""
    id: str
    kind: BackupKind
    status: BackupStatus = BackupStatus.PENDING
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    artifact_location: Optional[str] = None
    size_bytes: int = 0
    duration_ms: int = 0
    error_message: Optional[str] = None
    object_count: int = 0
    table_count: int = 0
    warnings: List[str] = field(default_factory=list)
    purged_at: Optional[datetime] = None

    @property
    def is_restorable(self) -> bool:
        return (
            self.status == BackupStatus.SUCCESS
            and self.kind in (BackupKind.DATABASE, BackupKind.FULL)
            and self.artifact_location is not None
            and self.purged_at is None
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "kind": self.kind.value,
            "status": self.status.value,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "artifact_location": self.artifact_location,
            "size_bytes": self.size_bytes,
            "duration_ms": self.duration_ms,
            "error_message": self.error_message,
            "object_count": self.object_count,
            "table_count": self.table_count,
            "warnings": list(self.warnings),
            "purged_at": _iso(self.purged_at),
        }


@dataclass
class BackupStatusSummary:
    """Singleton status record shown on reports."""
    last_backup: Optional[datetime] = None
    last_backup_status: Optional[BackupStatus] = None
    backup_count: int = 0
    total_backup_size: int = 0
    next_scheduled_backup: Optional[datetime] = None
    running_run_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lastBackup": _iso(self.last_backup),
            "lastBackupStatus": self.last_backup_status.value if self.last_backup_status else None,
            "backupCount": self.backup_count,
            "totalBackupSize": self.total_backup_size,
            "nextScheduledBackup": _iso(self.next_scheduled_backup),
        }


@dataclass(frozen=True)
class ColumnDescriptor:
    name: str
    declared_type: str
    nullable: bool = True
    default: Optional[str] = None


@dataclass(frozen=True)
class TableDescriptor:
    name: str
    columns: tuple[ColumnDescriptor, ...]
    primary_key: tuple[str, ...] = ()

    @property
    def column_names(self) -> List[str]:
        return [c.name for c in self.columns]


@dataclass
class TableSnapshot:
    """Serialized form of one table inside a database dump."""
    table_name: str
    column_definitions: tuple[ColumnDescriptor, ...]
    row_count: int = 0
    payload: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass
class DatabaseDump:
    """A full dump: header plus per-table units in introspection order."""
    text: str
    snapshots: List[TableSnapshot]
    generated_at: datetime

    @property
    def failed_tables(self) -> List[str]:
        return [s.table_name for s in self.snapshots if s.failed]

    @property
    def total_rows(self) -> int:
        return sum(s.row_count for s in self.snapshots)


@dataclass(frozen=True)
class ObjectManifestEntry:
    path: str
    size_bytes: int
    included_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {"path": self.path, "size_bytes": self.size_bytes, "included_at": self.included_at.isoformat()}


@dataclass
class ArchiveResult:
    """Outcome of building an object archive."""
    data: bytes
    manifest: List[ObjectManifestEntry]
    excluded: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def object_count(self) -> int:
        return len(self.manifest)


@dataclass(frozen=True)
class RetentionWindow:
    """Maximum age per kind. ``database`` never participates in automatic deletion."""
    max_age_days: Dict[BackupKind, int]

    def eligible_kinds(self) -> List[BackupKind]:
        return [k for k in self.max_age_days if k != BackupKind.DATABASE]


@dataclass
class DeleteResult:
    deleted: List[str] = field(default_factory=list)
    failed: List[Dict[str, str]] = field(default_factory=list)


@dataclass
class CleanupResult:
    purged_run_ids: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    failed: List[Dict[str, str]] = field(default_factory=list)
    freed_bytes: int = 0
    dry_run: bool = False


@dataclass
class RestoreResult:
    success: bool
    run_id: str
    statements_executed: int = 0
    error: Optional[str] = None


@dataclass
class TableAnalysis:
    name: str
    records: int

    @property
    def description(self) -> str:
        return f"{self.records} records"


@dataclass
class DumpAnalysis:
    """Pre-restore report of a dump's contents, produced without executing it."""
    total_tables: int = 0
    total_records: int = 0
    table_details: List[TableAnalysis] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalTables": self.total_tables,
            "totalRecords": self.total_records,
            "tableDetails": [
                {"name": t.name, "records": t.records, "description": t.description}
                for t in self.table_details
            ],
            "warnings": list(self.warnings),
        }
