"""CLI coverage for the booster-backup commands against a temp SQLite database."""

from __future__ import annotations

import json
from unittest.mock import MagicMock

import pytest
from typer.testing import CliRunner

from booster_backup.cli import app
from booster_backup.cli.core import get_config_path
from booster_backup.config import load_settings
from booster_backup.models import BackupKind
from booster_backup.service import build_service
from booster_backup.storage import LocalObjectStore

runner = CliRunner()


@pytest.fixture
def settings_path(tmp_path, database_url, engine, monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("BOOSTER_BACKUP_BUCKET", raising=False)
    path = tmp_path / "settings.yaml"
    path.write_text(
        f"""
backup:
  database:
    url: "{database_url}"
  storage:
    provider: local
    local_root: "{tmp_path / 'objects'}"
  schedule:
    timezone: UTC
  restore:
    confirmation_delay_seconds: 0
        """,
        encoding="utf-8",
    )
    return str(path)


def _invoke(settings_path, *args, **kwargs):
    return runner.invoke(app, ["--config", settings_path, "--log-level", "ERROR", *args], **kwargs)


def _service(settings_path):
    return build_service(load_settings(settings_path))


def test_create_database_backup(settings_path):
    result = _invoke(settings_path, "create", "--kind", "database")

    assert result.exit_code == 0, result.stdout
    assert "Backup created successfully" in result.stdout
    assert "Tables: 4" in result.stdout


def test_create_rejects_unknown_kind(settings_path):
    result = _invoke(settings_path, "create", "--kind", "photos")

    assert result.exit_code == 1
    assert "Invalid backup kind" in result.stdout


def test_list_and_status(settings_path):
    _invoke(settings_path, "create", "--kind", "full")

    listing = _invoke(settings_path, "list")
    status = _invoke(settings_path, "status")

    assert listing.exit_code == 0
    assert "full" in listing.stdout
    assert status.exit_code == 0
    assert "Backups" in status.stdout
    assert "success" in status.stdout


def test_list_and_status_as_json(settings_path):
    run = _service(settings_path).create_backup(BackupKind.DATABASE)

    runs = json.loads(_invoke(settings_path, "list", "--json").stdout)
    status = json.loads(_invoke(settings_path, "status", "--json").stdout)

    assert [r["id"] for r in runs] == [run.id]
    assert runs[0]["status"] == "success"
    assert status["backupCount"] == 1
    assert status["lastBackupStatus"] == "success"
    assert status["nextScheduledBackup"] is not None


def test_list_when_empty(settings_path):
    result = _invoke(settings_path, "list")

    assert result.exit_code == 0
    assert "No backups found" in result.stdout


def test_verify_and_analyze(settings_path):
    run = _service(settings_path).create_backup(BackupKind.DATABASE)

    verify = _invoke(settings_path, "verify", run.id)
    analyze = _invoke(settings_path, "analyze", run.artifact_location, "--json")

    assert verify.exit_code == 0
    assert "verified" in verify.stdout
    assert analyze.exit_code == 0
    payload = json.loads(analyze.stdout)
    assert payload["totalTables"] == 4
    assert payload["totalRecords"] == 7


def test_restore_requires_typed_id(settings_path):
    run = _service(settings_path).create_backup(BackupKind.DATABASE)

    cancelled = _invoke(settings_path, "restore", run.id, input="wrong\n")
    confirmed = _invoke(settings_path, "restore", run.id, input=f"{run.id}\n")

    assert cancelled.exit_code == 1
    assert "Restore cancelled" in cancelled.stdout
    assert confirmed.exit_code == 0
    assert "Restored" in confirmed.stdout


def test_restore_unknown_backup(settings_path):
    result = _invoke(settings_path, "restore", "missing", "--yes")

    assert result.exit_code == 1
    assert "not found or not restorable" in result.stdout


def test_delete_refuses_ordinary_objects(settings_path):
    result = _invoke(settings_path, "delete", "officers/dana.jpg")

    assert result.exit_code == 1
    assert "not a backup artifact" in result.stdout


def test_cleanup_dry_run_with_nothing_to_prune(settings_path):
    result = _invoke(settings_path, "cleanup", "--dry-run")

    assert result.exit_code == 0
    assert "No backups to prune" in result.stdout


def test_restore_of_missing_artifact_reports_failure(settings_path, tmp_path):
    run = _service(settings_path).create_backup(BackupKind.DATABASE)
    (tmp_path / "objects" / run.artifact_location).unlink()

    result = _invoke(settings_path, "restore", run.id, "--yes")

    assert result.exit_code == 1
    assert "Restore failed: could not read artifact" in result.stdout


def test_config_path_comes_from_context_obj():
    ctx = MagicMock(obj={"config": "custom.yaml"})

    assert get_config_path(ctx) == "custom.yaml"
    assert get_config_path(MagicMock(obj=None)) is None


def test_health_reports_components(settings_path):
    result = _invoke(settings_path, "health", "--json")

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["status"] == "healthy"
    assert set(payload["components"]) == {"database", "object_store"}


def test_health_exits_nonzero_when_degraded(settings_path, monkeypatch):
    def broken_list(self, prefix=""):
        raise PermissionError("objects directory is not readable")

    monkeypatch.setattr(LocalObjectStore, "list", broken_list)

    result = _invoke(settings_path, "health")

    assert result.exit_code == 1
    assert "DEGRADED" in result.stdout
    assert "object_store: unhealthy" in result.stdout
