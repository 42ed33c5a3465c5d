"""Composition root: wires engine, object store and components together.

``BackupService`` is the surface the CLI (and any host application) uses.
"""

from __future__ import annotations

import time
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from sqlalchemy.engine import Engine

from .compression import extract_dump
from .config import BackupConfig, Settings
from .database import create_database_engine
from .health import HealthCheckResponse, run_health_check
from .logger import get_logger
from .models import (
    BackupKind,
    BackupRun,
    BackupStatus,
    BackupStatusSummary,
    CleanupResult,
    DeleteResult,
    DumpAnalysis,
    RestoreResult,
)
from .orchestrator import BackupOrchestrator
from .registry import MetadataRegistry, utcnow
from .restore import RestoreExecutor
from .retention import RetentionPolicy, window_from_config
from .scheduler import Scheduler, TriggerAuthenticator
from .sqlscript import analyze_dump
from .storage import ObjectStore, create_object_store

log = get_logger(__name__)


class BackupService:
    """Backup, retention and restore operations over one database and store."""

    def __init__(
        self,
        config: BackupConfig,
        engine: Engine,
        store: ObjectStore,
        registry: Optional[MetadataRegistry] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.engine = engine
        self.store = store
        self.registry = registry or MetadataRegistry(engine)
        self.registry.create_schema()

        self.scheduler = Scheduler(
            config.schedule,
            create_backup=self.create_backup,
            cleanup=self.cleanup_old_backups,
            authenticator=TriggerAuthenticator.from_config(config.trigger),
        )
        self.orchestrator = BackupOrchestrator(
            engine,
            store,
            self.registry,
            config,
            next_scheduled=self.scheduler.next_scheduled_backup,
        )
        self.retention = RetentionPolicy(
            self.registry,
            store,
            window_from_config(config.retention),
            marker_segments=config.archive.marker_segments,
            reserved_prefixes=config.archive.reserved_prefixes,
        )
        self.restorer = RestoreExecutor(
            engine,
            store,
            self.registry,
            confirmation_delay=config.restore.confirmation_delay_seconds,
            sleep=sleep,
        )

    def create_backup(self, kind: BackupKind) -> BackupRun:
        return self.orchestrator.run(kind)

    def perform_full_backup(self) -> BackupRun:
        return self.create_backup(BackupKind.FULL)

    def cleanup_old_backups(self, now: Optional[datetime] = None, dry_run: bool = False) -> CleanupResult:
        return self.retention.cleanup_old_backups(now=now, dry_run=dry_run)

    def get_status(self) -> BackupStatusSummary:
        summary = self.registry.get_status()
        summary.next_scheduled_backup = self.scheduler.next_scheduled_backup(utcnow())
        return summary

    def list_backups(self, kind: Optional[BackupKind] = None, limit: Optional[int] = None) -> List[BackupRun]:
        return self.registry.list_runs(kind=kind, limit=limit)

    def get_backup(self, run_id: str) -> Optional[BackupRun]:
        return self.registry.get_run(run_id)

    def delete_artifacts(self, paths: Iterable[str]) -> DeleteResult:
        return self.retention.delete_artifacts(paths)

    def restore(self, run_id: str, confirm: bool = False) -> RestoreResult:
        return self.restorer.restore(run_id, confirm=confirm)

    def analyze(self, artifact_path: str) -> DumpAnalysis:
        return self.restorer.analyze(artifact_path)

    def handle_trigger(self, headers: Mapping[str, str], kind: BackupKind = BackupKind.FULL) -> Dict[str, Any]:
        return self.scheduler.handle_trigger(headers, kind)

    def health_check(self) -> HealthCheckResponse:
        return run_health_check(self.engine, self.store)

    def verify_backup(self, run_id: str) -> Dict[str, Any]:
        """Check that a run's artifact exists, has the recorded size and, for
        restorable kinds, still parses as a dump."""
        result: Dict[str, Any] = {
            "run_id": run_id,
            "valid": False,
            "expected_size": None,
            "actual_size": None,
            "error": None,
        }
        run = self.registry.get_run(run_id)
        if run is None:
            result["error"] = "backup not found"
            return result
        result["expected_size"] = run.size_bytes
        if run.status != BackupStatus.SUCCESS or not run.artifact_location:
            result["error"] = f"backup status is {run.status.value}"
            return result
        if run.purged_at is not None:
            result["error"] = "artifact was purged by retention"
            return result

        stored = self.store.stat(run.artifact_location)
        if stored is None:
            result["error"] = "artifact missing from object store"
            return result
        result["actual_size"] = stored.size_bytes
        if stored.size_bytes != run.size_bytes:
            result["error"] = "artifact size does not match the recorded size"
            return result

        if run.is_restorable:
            try:
                script = extract_dump(self.store.get(run.artifact_location), run.artifact_location)
            except ValueError as e:
                result["error"] = str(e)
                return result
            result["tables"] = analyze_dump(script).total_tables

        result["valid"] = True
        log.info("Backup %s verified", run_id)
        return result


def build_service(settings: Settings, sleep: Callable[[float], None] = time.sleep) -> BackupService:
    config = settings.backup
    engine = create_database_engine(config.database)
    store = create_object_store(config.storage)
    return BackupService(config, engine, store, sleep=sleep)
