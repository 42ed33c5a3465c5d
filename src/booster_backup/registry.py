"""Persistent record of backup runs plus the singleton status row.

The status row doubles as the single-flight lease: ``running_run_id`` is only
ever claimed through a conditional UPDATE, so two processes sharing the
database cannot both believe they own it.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, List, Optional

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine

from .logger import get_logger
from .models import BackupKind, BackupRun, BackupStatus, BackupStatusSummary

log = get_logger(__name__)

STATUS_ROW_ID = 1

metadata = MetaData()

backup_runs = Table(
    "backup_runs",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("kind", String(16), nullable=False, index=True),
    Column("status", String(16), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("started_at", DateTime(timezone=True)),
    Column("finished_at", DateTime(timezone=True)),
    Column("artifact_location", String(512)),
    Column("size_bytes", BigInteger, nullable=False, default=0),
    Column("duration_ms", BigInteger, nullable=False, default=0),
    Column("error_message", Text),
    Column("object_count", Integer, nullable=False, default=0),
    Column("table_count", Integer, nullable=False, default=0),
    Column("warnings", Text),
    Column("purged_at", DateTime(timezone=True)),
)

backup_status = Table(
    "backup_status",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("last_backup", DateTime(timezone=True)),
    Column("last_backup_status", String(16)),
    Column("backup_count", Integer, nullable=False, default=0),
    Column("total_backup_size", BigInteger, nullable=False, default=0),
    Column("next_scheduled_backup", DateTime(timezone=True)),
    Column("running_run_id", String(32)),
    Column("lease_acquired_at", DateTime(timezone=True)),
)

REGISTRY_TABLES = (backup_runs.name, backup_status.name)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _row_to_run(row: Any) -> BackupRun:
    m = row._mapping
    return BackupRun(
        id=m["id"],
        kind=BackupKind(m["kind"]),
        status=BackupStatus(m["status"]),
        started_at=_aware(m["started_at"]),
        finished_at=_aware(m["finished_at"]),
        artifact_location=m["artifact_location"],
        size_bytes=m["size_bytes"] or 0,
        duration_ms=m["duration_ms"] or 0,
        error_message=m["error_message"],
        object_count=m["object_count"] or 0,
        table_count=m["table_count"] or 0,
        warnings=json.loads(m["warnings"]) if m["warnings"] else [],
        purged_at=_aware(m["purged_at"]),
    )


class MetadataRegistry:
    """SQLAlchemy Core access to ``backup_runs`` and ``backup_status``."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def create_schema(self) -> None:
        metadata.create_all(self.engine)
        with self.engine.begin() as conn:
            exists = conn.execute(
                select(backup_status.c.id).where(backup_status.c.id == STATUS_ROW_ID)
            ).first()
            if exists is None:
                conn.execute(insert(backup_status).values(id=STATUS_ROW_ID, backup_count=0, total_backup_size=0))
        log.debug("Registry schema ready")

    # Runs

    def create_run(self, kind: BackupKind, now: Optional[datetime] = None) -> BackupRun:
        run = BackupRun(id=uuid.uuid4().hex, kind=kind, status=BackupStatus.PENDING)
        with self.engine.begin() as conn:
            conn.execute(insert(backup_runs).values(
                id=run.id,
                kind=kind.value,
                status=run.status.value,
                created_at=now or utcnow(),
                size_bytes=0,
                duration_ms=0,
                object_count=0,
                table_count=0,
            ))
        return run

    def mark_running(self, run_id: str, now: Optional[datetime] = None) -> None:
        self._update_run(run_id, status=BackupStatus.RUNNING.value, started_at=now or utcnow())

    def mark_success(
        self,
        run_id: str,
        artifact_location: str,
        size_bytes: int,
        duration_ms: int,
        object_count: int = 0,
        table_count: int = 0,
        warnings: Iterable[str] = (),
        now: Optional[datetime] = None,
    ) -> None:
        self._update_run(
            run_id,
            status=BackupStatus.SUCCESS.value,
            finished_at=now or utcnow(),
            artifact_location=artifact_location,
            size_bytes=size_bytes,
            duration_ms=duration_ms,
            object_count=object_count,
            table_count=table_count,
            warnings=json.dumps(list(warnings)),
            error_message=None,
        )

    def mark_failed(
        self,
        run_id: str,
        error_message: str,
        duration_ms: int = 0,
        now: Optional[datetime] = None,
    ) -> None:
        self._update_run(
            run_id,
            status=BackupStatus.FAILED.value,
            finished_at=now or utcnow(),
            duration_ms=duration_ms,
            error_message=error_message,
        )

    def _update_run(self, run_id: str, **values: Any) -> None:
        with self.engine.begin() as conn:
            result = conn.execute(update(backup_runs).where(backup_runs.c.id == run_id).values(**values))
        if result.rowcount != 1:
            log.warning("Backup run %s not found for update", run_id)

    def get_run(self, run_id: str) -> Optional[BackupRun]:
        with self.engine.connect() as conn:
            row = conn.execute(select(backup_runs).where(backup_runs.c.id == run_id)).first()
        return _row_to_run(row) if row else None

    def list_runs(self, kind: Optional[BackupKind] = None, limit: Optional[int] = None) -> List[BackupRun]:
        """Runs newest first, optionally filtered by kind."""
        stmt = select(backup_runs).order_by(backup_runs.c.created_at.desc(), backup_runs.c.id.desc())
        if kind is not None:
            stmt = stmt.where(backup_runs.c.kind == kind.value)
        if limit:
            stmt = stmt.limit(limit)
        with self.engine.connect() as conn:
            return [_row_to_run(r) for r in conn.execute(stmt)]

    def latest_success(self, kind: BackupKind) -> Optional[BackupRun]:
        stmt = (
            select(backup_runs)
            .where(backup_runs.c.kind == kind.value, backup_runs.c.status == BackupStatus.SUCCESS.value)
            .order_by(backup_runs.c.finished_at.desc())
            .limit(1)
        )
        with self.engine.connect() as conn:
            row = conn.execute(stmt).first()
        return _row_to_run(row) if row else None

    def find_by_artifact(self, artifact_location: str) -> List[BackupRun]:
        stmt = select(backup_runs).where(backup_runs.c.artifact_location == artifact_location)
        with self.engine.connect() as conn:
            return [_row_to_run(r) for r in conn.execute(stmt)]

    def eligible_for_retention(self, kind: BackupKind, cutoff: datetime) -> List[BackupRun]:
        """Successful, unpurged runs of ``kind`` that finished before ``cutoff``."""
        stmt = (
            select(backup_runs)
            .where(
                backup_runs.c.kind == kind.value,
                backup_runs.c.status == BackupStatus.SUCCESS.value,
                backup_runs.c.purged_at.is_(None),
                backup_runs.c.finished_at < cutoff,
            )
            .order_by(backup_runs.c.finished_at)
        )
        with self.engine.connect() as conn:
            return [_row_to_run(r) for r in conn.execute(stmt)]

    def mark_purged(self, run_ids: Iterable[str], now: Optional[datetime] = None) -> int:
        ids = list(run_ids)
        if not ids:
            return 0
        with self.engine.begin() as conn:
            result = conn.execute(
                update(backup_runs)
                .where(backup_runs.c.id.in_(ids), backup_runs.c.purged_at.is_(None))
                .values(purged_at=now or utcnow())
            )
        return result.rowcount

    # Status / lease

    def get_status(self) -> BackupStatusSummary:
        with self.engine.connect() as conn:
            row = conn.execute(select(backup_status).where(backup_status.c.id == STATUS_ROW_ID)).first()
        if row is None:
            return BackupStatusSummary()
        m = row._mapping
        return BackupStatusSummary(
            last_backup=_aware(m["last_backup"]),
            last_backup_status=BackupStatus(m["last_backup_status"]) if m["last_backup_status"] else None,
            backup_count=m["backup_count"] or 0,
            total_backup_size=m["total_backup_size"] or 0,
            next_scheduled_backup=_aware(m["next_scheduled_backup"]),
            running_run_id=m["running_run_id"],
        )

    def record_outcome(
        self,
        status: BackupStatus,
        size_bytes: int = 0,
        next_scheduled: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Refresh the status row after a run reaches a terminal state."""
        values: dict = {
            "last_backup_status": status.value,
            "next_scheduled_backup": next_scheduled,
        }
        if status == BackupStatus.SUCCESS:
            values.update(
                last_backup=now or utcnow(),
                backup_count=backup_status.c.backup_count + 1,
                total_backup_size=backup_status.c.total_backup_size + size_bytes,
            )
        with self.engine.begin() as conn:
            conn.execute(update(backup_status).where(backup_status.c.id == STATUS_ROW_ID).values(**values))

    def acquire_lease(
        self,
        run_id: str,
        now: Optional[datetime] = None,
        stale_after: Optional[float] = None,
    ) -> bool:
        """Claim the single-flight lease for ``run_id``.

        A lease older than ``stale_after`` seconds is treated as abandoned by
        a crashed process: its run is marked failed and the lease taken over.
        """
        now = now or utcnow()
        with self.engine.begin() as conn:
            result = conn.execute(
                update(backup_status)
                .where(backup_status.c.id == STATUS_ROW_ID, backup_status.c.running_run_id.is_(None))
                .values(running_run_id=run_id, lease_acquired_at=now)
            )
            if result.rowcount == 1:
                return True
            if not stale_after:
                return False

            cutoff = now - timedelta(seconds=stale_after)
            holder = conn.execute(
                select(backup_status.c.running_run_id).where(backup_status.c.id == STATUS_ROW_ID)
            ).scalar()
            result = conn.execute(
                update(backup_status)
                .where(
                    backup_status.c.id == STATUS_ROW_ID,
                    backup_status.c.running_run_id == holder,
                    backup_status.c.lease_acquired_at < cutoff,
                )
                .values(running_run_id=run_id, lease_acquired_at=now)
            )
            if result.rowcount != 1:
                return False
            conn.execute(
                update(backup_runs)
                .where(backup_runs.c.id == holder, backup_runs.c.status.in_(
                    [BackupStatus.PENDING.value, BackupStatus.RUNNING.value]
                ))
                .values(
                    status=BackupStatus.FAILED.value,
                    finished_at=now,
                    error_message=f"lease expired after {stale_after:g} seconds",
                )
            )
        log.warning("Recovered stale backup lease held by run %s", holder)
        return True

    def release_lease(self, run_id: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                update(backup_status)
                .where(backup_status.c.id == STATUS_ROW_ID, backup_status.c.running_run_id == run_id)
                .values(running_run_id=None, lease_acquired_at=None)
            )
        if result.rowcount != 1:
            log.warning("Lease for run %s was not held at release", run_id)
            return False
        return True
