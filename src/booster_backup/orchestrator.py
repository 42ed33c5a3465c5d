"""Drive one backup run from creation to a terminal, recorded state."""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.engine import Engine

from .archive import ObjectArchiveBuilder
from .compression import CONTENT_TYPES, artifact_extension, artifact_key, compress
from .config import BackupConfig
from .dump import DumpSerializer
from .errors import BackupInProgressError, BackupTimeoutError, UploadError
from .logger import get_logger, log_extra
from .metrics import (
    backup_failed_tables_total,
    backup_in_progress,
    backup_runs_total,
    backup_skipped_objects_total,
    backup_timeouts_total,
    record_run,
)
from .models import BackupKind, BackupRun, BackupStatus, CompressionType
from .registry import REGISTRY_TABLES, MetadataRegistry, utcnow
from .storage import ObjectStore

log = get_logger(__name__)


@dataclass
class _Artifact:
    location: str
    size_bytes: int
    table_count: int = 0
    object_count: int = 0
    warnings: List[str] = field(default_factory=list)


class BackupOrchestrator:
    """Run backups one at a time, each bounded by its kind's deadline.

    Work happens on a worker thread; only this object writes the registry, so
    a run abandoned at its deadline can never be recorded as a success.
    """

    def __init__(
        self,
        engine: Engine,
        store: ObjectStore,
        registry: MetadataRegistry,
        config: BackupConfig,
        serializer: Optional[DumpSerializer] = None,
        archive_builder: Optional[ObjectArchiveBuilder] = None,
        next_scheduled: Optional[Callable[[datetime], Optional[datetime]]] = None,
    ):
        self.engine = engine
        self.store = store
        self.registry = registry
        self.config = config
        self.serializer = serializer or DumpSerializer(
            engine,
            exclude_tables=set(config.database.exclude_tables) | set(REGISTRY_TABLES),
            schema=config.database.schema_name,
        )
        self.archive_builder = archive_builder or ObjectArchiveBuilder(
            store,
            fetch_concurrency=config.archive.fetch_concurrency,
            marker_segments=config.archive.marker_segments,
            reserved_prefixes=config.archive.reserved_prefixes,
        )
        self.next_scheduled = next_scheduled
        self.compression = CompressionType(config.dump.compression)
        self._lock = threading.Lock()
        self._current_run_id: Optional[str] = None

    def deadline_for(self, kind: BackupKind) -> float:
        timeouts = self.config.timeouts
        return {
            BackupKind.DATABASE: timeouts.database_seconds,
            BackupKind.BLOB: timeouts.blob_seconds,
            BackupKind.FULL: timeouts.full_seconds,
        }[kind]

    def run(self, kind: BackupKind) -> BackupRun:
        """Execute a backup of ``kind`` and return its terminal record.

        Raises:
            BackupInProgressError: another run holds the lease.
        """
        if not self._lock.acquire(blocking=False):
            backup_runs_total.labels(kind=kind.value, status="rejected").inc()
            raise BackupInProgressError(self._current_run_id)
        try:
            return self._run_exclusive(kind)
        finally:
            self._lock.release()

    def _run_exclusive(self, kind: BackupKind) -> BackupRun:
        run = self.registry.create_run(kind)
        if not self.registry.acquire_lease(run.id, stale_after=self.config.timeouts.stale_lease_seconds):
            holder = self.registry.get_status().running_run_id
            error = BackupInProgressError(holder)
            self.registry.mark_failed(run.id, str(error))
            backup_runs_total.labels(kind=kind.value, status="rejected").inc()
            log.warning("Backup %s rejected: %s", run.id, error)
            raise error

        self._current_run_id = run.id
        backup_in_progress.set(1)
        started = time.monotonic()
        try:
            self.registry.mark_running(run.id)
            log.info("Backup started", extra=log_extra(run_id=run.id, kind=kind.value))
            self._execute(run, started)
        except Exception as e:
            # registry write failed mid-run; leave a terminal record if possible
            self._fail(run, e, started)
            raise
        finally:
            self.registry.release_lease(run.id)
            self._current_run_id = None
            backup_in_progress.set(0)

        return self.registry.get_run(run.id) or run

    def _execute(self, run: BackupRun, started: float) -> None:
        deadline = self.deadline_for(run.kind)
        cancel = threading.Event()
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"backup-{run.kind.value}")
        future = executor.submit(self._produce, run, cancel, deadline)
        try:
            artifact = future.result(timeout=deadline)
        except FuturesTimeoutError:
            cancel.set()
            self._fail(run, BackupTimeoutError(run.kind.value, deadline), started)
            backup_timeouts_total.labels(kind=run.kind.value).inc()
            return
        except Exception as e:
            log.exception("Backup %s failed", run.id)
            self._fail(run, e, started)
            return
        finally:
            # never wait on an abandoned worker
            executor.shutdown(wait=False, cancel_futures=True)

        duration_ms = int((time.monotonic() - started) * 1000)
        self.registry.mark_success(
            run.id,
            artifact_location=artifact.location,
            size_bytes=artifact.size_bytes,
            duration_ms=duration_ms,
            object_count=artifact.object_count,
            table_count=artifact.table_count,
            warnings=artifact.warnings,
        )
        self.registry.record_outcome(
            BackupStatus.SUCCESS,
            size_bytes=artifact.size_bytes,
            next_scheduled=self._next_scheduled(),
        )
        record_run(run.kind.value, "success", duration_ms / 1000.0, artifact.size_bytes)
        log.info(
            "Backup completed",
            extra=log_extra(
                run_id=run.id,
                kind=run.kind.value,
                location=artifact.location,
                size_bytes=artifact.size_bytes,
                duration_ms=duration_ms,
                warnings=len(artifact.warnings),
            ),
        )

    def _fail(self, run: BackupRun, error: BaseException, started: float) -> None:
        duration_ms = int((time.monotonic() - started) * 1000)
        message = str(error) or error.__class__.__name__
        self.registry.mark_failed(run.id, message, duration_ms=duration_ms)
        self.registry.record_outcome(BackupStatus.FAILED, next_scheduled=self._next_scheduled())
        record_run(run.kind.value, "failed", duration_ms / 1000.0)
        log.error("Backup %s failed: %s", run.id, message)

    def _next_scheduled(self) -> Optional[datetime]:
        if self.next_scheduled is None:
            return None
        return self.next_scheduled(utcnow())

    def _produce(self, run: BackupRun, cancel: threading.Event, deadline: float) -> _Artifact:
        """Worker body: dump and/or archive, then upload."""

        def checkpoint() -> None:
            if cancel.is_set():
                raise BackupTimeoutError(run.kind.value, deadline)

        dump = None
        if run.kind in (BackupKind.DATABASE, BackupKind.FULL):
            dump = self.serializer.dump(checkpoint=checkpoint)

        artifact = _Artifact(location="", size_bytes=0)
        if dump is not None:
            artifact.table_count = len(dump.snapshots)
            artifact.warnings.extend(s.error for s in dump.snapshots if s.error)
            backup_failed_tables_total.inc(len(dump.failed_tables))

        if dump is not None and run.kind == BackupKind.DATABASE:
            payload = compress(dump.text.encode("utf-8"), self.compression)
        else:
            archive = self.archive_builder.build(
                database_dump=dump.text if dump is not None else None,
                checkpoint=checkpoint,
            )
            payload = archive.data
            artifact.object_count = archive.object_count
            artifact.warnings.extend(archive.warnings)
            backup_skipped_objects_total.inc(len(archive.skipped))

        checkpoint()
        artifact.location = artifact_key(run.kind, run.id, utcnow(), self.compression)
        artifact.size_bytes = len(payload)
        self._upload(artifact.location, payload, run.kind)

        if cancel.is_set():
            # finished uploading after the deadline; the run is already failed
            self._discard(artifact.location)
            raise BackupTimeoutError(run.kind.value, deadline)
        return artifact

    def _upload(self, location: str, payload: bytes, kind: BackupKind) -> None:
        ext = artifact_extension(kind, self.compression)
        try:
            self.store.put(location, payload, content_type=CONTENT_TYPES[ext])
        except Exception as e:
            raise UploadError(f"upload of {location} failed: {e}") from e

    def _discard(self, location: str) -> None:
        try:
            self.store.delete(location)
            log.warning("Discarded late artifact %s", location)
        except Exception:
            log.exception("Could not discard late artifact %s", location)
