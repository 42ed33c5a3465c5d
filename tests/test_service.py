from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from booster_backup.errors import AuthenticationError
from booster_backup.models import BackupKind, BackupStatus
from booster_backup.service import BackupService


def test_perform_full_backup(service, store):
    store.put("insurance/band.pdf", b"pdf")

    run = service.perform_full_backup()

    assert run.kind == BackupKind.FULL
    assert run.status == BackupStatus.SUCCESS
    assert run.object_count == 1
    assert run.table_count == 4


def test_cleanup_is_independent_of_backups(service, store):
    finished = datetime.now(timezone.utc) - timedelta(days=45)
    run = service.registry.create_run(BackupKind.FULL, now=finished)
    store.put("backups/full/old.zip", b"old")
    service.registry.mark_success(run.id, "backups/full/old.zip", 3, 10, now=finished)

    result = service.cleanup_old_backups()

    assert result.purged_run_ids == [run.id]
    assert not store.exists("backups/full/old.zip")
    assert service.list_backups() == [service.get_backup(run.id)]


def test_status_reports_next_scheduled_backup(service):
    service.create_backup(BackupKind.DATABASE)

    status = service.get_status()

    assert status.backup_count == 1
    assert status.next_scheduled_backup > datetime.now(timezone.utc)


def test_list_backups_by_kind(service):
    service.create_backup(BackupKind.DATABASE)
    full = service.create_backup(BackupKind.FULL)

    assert [r.id for r in service.list_backups(kind=BackupKind.FULL)] == [full.id]
    assert len(service.list_backups(limit=1)) == 1


def test_trigger_requires_configured_secret(service):
    with pytest.raises(AuthenticationError):
        service.handle_trigger({"X-Backup-Trigger-Secret": "anything"})


def test_trigger_with_secret(backup_config, engine, store):
    backup_config.trigger.secret = "s3cret"
    service = BackupService(backup_config, engine, store, sleep=lambda seconds: None)

    response = service.handle_trigger({"X-Backup-Trigger-Secret": "s3cret"}, kind=BackupKind.DATABASE)

    assert response["success"] is True
    assert service.get_backup(response["run_id"]).kind == BackupKind.DATABASE


def test_verify_reports_size_mismatch(service, store):
    run = service.create_backup(BackupKind.DATABASE)
    store.put(run.artifact_location, b"truncated")

    report = service.verify_backup(run.id)

    assert report["valid"] is False
    assert report["error"] == "artifact size does not match the recorded size"


def test_verify_unknown_run(service):
    assert service.verify_backup("nope")["error"] == "backup not found"
