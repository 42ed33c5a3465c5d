"""Replay a dump into the live database, all or nothing."""

from __future__ import annotations

import time
from typing import Callable

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .compression import extract_dump
from .errors import BackupNotFoundError, RestoreNotConfirmedError, RestoreStatementError
from .logger import get_logger, log_extra
from .metrics import backup_restores_total
from .models import BackupRun, DumpAnalysis, RestoreResult
from .registry import MetadataRegistry
from .sqlscript import analyze_dump, split_statements
from .storage import ObjectStore

log = get_logger(__name__)


class RestoreExecutor:
    """Restore database and full backups.

    Every statement runs inside one transaction on a connection of its own;
    the first failing statement rolls the whole script back. Restores are only
    ever started by an operator.
    """

    def __init__(
        self,
        engine: Engine,
        store: ObjectStore,
        registry: MetadataRegistry,
        confirmation_delay: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.engine = engine
        self.store = store
        self.registry = registry
        self.confirmation_delay = confirmation_delay
        self.sleep = sleep

    def find_restorable(self, run_id: str) -> BackupRun:
        run = self.registry.get_run(run_id)
        if run is None:
            raise BackupNotFoundError(f"Backup not found: {run_id}")
        if not run.is_restorable:
            raise BackupNotFoundError(
                f"Backup {run_id} is not restorable "
                f"(kind={run.kind.value}, status={run.status.value}, purged={run.purged_at is not None})"
            )
        return run

    def load_dump(self, run: BackupRun) -> str:
        if not run.artifact_location:
            raise BackupNotFoundError(f"Backup {run.id} has no artifact")
        data = self.store.get(run.artifact_location)
        return extract_dump(data, run.artifact_location)

    def restore(self, run_id: str, confirm: bool = False) -> RestoreResult:
        """Restore ``run_id`` after an explicit confirmation.

        Raises:
            BackupNotFoundError: unknown, failed, purged or blob-only run.
            RestoreNotConfirmedError: ``confirm`` was not given.
        """
        run = self.find_restorable(run_id)
        if not confirm:
            raise RestoreNotConfirmedError(f"Restore of {run_id} requires explicit confirmation")

        try:
            script = self.load_dump(run)
        except Exception as e:
            backup_restores_total.labels(status="failed").inc()
            log.error("Could not read backup %s from %s: %s", run_id, run.artifact_location, e)
            return RestoreResult(
                success=False,
                run_id=run_id,
                statements_executed=0,
                error=f"could not read artifact {run.artifact_location}: {e}",
            )

        if self.confirmation_delay > 0:
            log.warning(
                "Restoring backup %s in %g seconds; interrupt to abort",
                run_id, self.confirmation_delay,
            )
            self.sleep(self.confirmation_delay)

        try:
            executed = self.execute_script(script)
        except RestoreStatementError as e:
            backup_restores_total.labels(status="failed").inc()
            log.error("Restore of %s rolled back: %s", run_id, e)
            return RestoreResult(success=False, run_id=run_id, statements_executed=0, error=str(e))

        backup_restores_total.labels(status="success").inc()
        log.info("Restore completed", extra=log_extra(run_id=run_id, statements=executed))
        return RestoreResult(success=True, run_id=run_id, statements_executed=executed)

    def execute_script(self, script: str) -> int:
        """Execute every statement of ``script`` in a single transaction.

        Returns the number of statements executed. Raises
        :class:`RestoreStatementError` after rolling back.
        """
        statements = split_statements(script)
        with self.engine.connect() as conn:
            trans = conn.begin()
            try:
                for index, statement in enumerate(statements, start=1):
                    try:
                        conn.exec_driver_sql(statement)
                    except SQLAlchemyError as e:
                        reason = str(getattr(e, "orig", None) or e)
                        raise RestoreStatementError(index, statement, reason) from e
            except BaseException:
                trans.rollback()
                raise
            trans.commit()
        return len(statements)

    def analyze(self, artifact_path: str) -> DumpAnalysis:
        """Summarise the dump stored at ``artifact_path`` without executing it."""
        data = self.store.get(artifact_path)
        try:
            script = extract_dump(data, artifact_path)
        except ValueError as e:
            analysis = DumpAnalysis()
            analysis.warnings.append(f"Error parsing SQL: {e}")
            return analysis
        return analyze_dump(script)
