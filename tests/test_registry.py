from __future__ import annotations

from datetime import datetime, timedelta, timezone

from booster_backup.models import BackupKind, BackupStatus
from booster_backup.registry import MetadataRegistry


def _finished(registry, kind, finished_at, size=100):
    run = registry.create_run(kind, now=finished_at - timedelta(minutes=5))
    registry.mark_running(run.id, now=finished_at - timedelta(minutes=5))
    registry.mark_success(run.id, f"backups/{kind.value}/{run.id}.zip", size, 1000, now=finished_at)
    return run


class TestRuns:

    def test_lifecycle(self, registry):
        run = registry.create_run(BackupKind.DATABASE)
        assert registry.get_run(run.id).status == BackupStatus.PENDING

        registry.mark_running(run.id)
        assert registry.get_run(run.id).status == BackupStatus.RUNNING
        assert registry.get_run(run.id).finished_at is None

        registry.mark_success(
            run.id, "backups/database/x.sql", 2048, 1500, table_count=4, warnings=["news skipped"]
        )
        done = registry.get_run(run.id)
        assert done.status == BackupStatus.SUCCESS
        assert done.finished_at is not None
        assert done.finished_at.tzinfo is not None
        assert done.size_bytes == 2048
        assert done.table_count == 4
        assert done.warnings == ["news skipped"]

    def test_mark_failed(self, registry):
        run = registry.create_run(BackupKind.BLOB)
        registry.mark_failed(run.id, "blob backup timeout after 1500 seconds", duration_ms=10)

        failed = registry.get_run(run.id)
        assert failed.status == BackupStatus.FAILED
        assert "timeout" in failed.error_message
        assert failed.finished_at is not None

    def test_list_newest_first_and_by_kind(self, registry):
        now = datetime.now(timezone.utc)
        old = _finished(registry, BackupKind.FULL, now - timedelta(days=2))
        new = _finished(registry, BackupKind.FULL, now - timedelta(days=1))
        db = _finished(registry, BackupKind.DATABASE, now)

        assert [r.id for r in registry.list_runs()] == [db.id, new.id, old.id]
        assert [r.id for r in registry.list_runs(kind=BackupKind.FULL)] == [new.id, old.id]
        assert registry.latest_success(BackupKind.FULL).id == new.id

    def test_eligible_for_retention(self, registry):
        now = datetime.now(timezone.utc)
        stale = _finished(registry, BackupKind.FULL, now - timedelta(days=40))
        _finished(registry, BackupKind.FULL, now - timedelta(days=5))
        purged = _finished(registry, BackupKind.FULL, now - timedelta(days=50))
        registry.mark_purged([purged.id])

        eligible = registry.eligible_for_retention(BackupKind.FULL, now - timedelta(days=30))

        assert [r.id for r in eligible] == [stale.id]


class TestStatusAndLease:

    def test_initial_status(self, registry):
        status = registry.get_status()
        assert status.backup_count == 0
        assert status.last_backup is None
        assert status.running_run_id is None

    def test_record_success_accumulates(self, registry):
        registry.record_outcome(BackupStatus.SUCCESS, size_bytes=100)
        registry.record_outcome(BackupStatus.SUCCESS, size_bytes=50)
        registry.record_outcome(BackupStatus.FAILED)

        status = registry.get_status()
        assert status.backup_count == 2
        assert status.total_backup_size == 150
        assert status.last_backup_status == BackupStatus.FAILED
        assert status.last_backup is not None

    def test_lease_is_single_flight(self, registry):
        assert registry.acquire_lease("run-a")
        assert not registry.acquire_lease("run-b")
        assert registry.get_status().running_run_id == "run-a"

        assert registry.release_lease("run-a")
        assert registry.acquire_lease("run-b")

    def test_lease_survives_new_registry_instance(self, engine, registry):
        assert registry.acquire_lease("run-a")
        other_process = MetadataRegistry(engine)
        other_process.create_schema()

        assert not other_process.acquire_lease("run-b")

    def test_release_by_non_holder_is_ignored(self, registry):
        registry.acquire_lease("run-a")
        assert not registry.release_lease("run-b")
        assert registry.get_status().running_run_id == "run-a"

    def test_stale_lease_recovered(self, registry):
        crashed = registry.create_run(BackupKind.FULL)
        registry.mark_running(crashed.id)
        long_ago = datetime.now(timezone.utc) - timedelta(hours=3)
        assert registry.acquire_lease(crashed.id, now=long_ago)

        assert not registry.acquire_lease("fresh", stale_after=None)
        assert registry.acquire_lease("fresh", stale_after=3600)

        assert registry.get_status().running_run_id == "fresh"
        abandoned = registry.get_run(crashed.id)
        assert abandoned.status == BackupStatus.FAILED
        assert "lease expired" in abandoned.error_message
