from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from .logger import get_logger

log = get_logger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///var/booster.db"


class DatabaseConfig(BaseModel):
    """Relational database connection settings."""
    url: str = DEFAULT_DATABASE_URL
    require_ssl: bool = True
    exclude_tables: List[str] = Field(default_factory=lambda: ["backup_runs", "backup_status"])
    schema_name: Optional[str] = None

    @property
    def is_postgres(self) -> bool:
        return self.url.startswith(("postgresql://", "postgresql+", "postgres://"))

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")


class StorageConfig(BaseModel):
    """Object storage backing uploaded files and backup artifacts."""
    provider: str = "local"  # local, s3
    bucket: str = ""
    region: str = "us-east-1"
    endpoint_url: Optional[str] = None
    local_root: str = "var/objects"


class ScheduleConfig(BaseModel):
    """Cron cadences (five-field expressions) evaluated in ``timezone``."""
    timezone: str = "America/Los_Angeles"
    daily_enabled: bool = True
    daily_cron: str = "0 2 * * *"
    weekly_enabled: bool = True
    weekly_cron: str = "0 3 * * sun"  # APScheduler numbers weekdays from Monday; use names
    cleanup_enabled: bool = True
    cleanup_cron: str = "0 5 * * *"


class TimeoutConfig(BaseModel):
    """Wall-clock deadlines per backup kind, in seconds."""
    database_seconds: float = 600.0
    blob_seconds: float = 1500.0
    full_seconds: float = 1500.0
    stale_lease_seconds: float = 3600.0


class RetentionConfig(BaseModel):
    """Maximum artifact age per kind. Database dumps are never auto-deleted."""
    max_age_days: Dict[str, int] = Field(default_factory=lambda: {"full": 30, "blob": 30})


class ArchiveConfig(BaseModel):
    fetch_concurrency: int = 4
    marker_segments: List[str] = Field(default_factory=lambda: ["backups", "backup", "tmp", "temp"])
    reserved_prefixes: List[str] = Field(
        default_factory=lambda: ["db-backup-", "blob-backup-", "full-backup-", "backup-"]
    )


class DumpConfig(BaseModel):
    compression: str = "none"  # none, gzip, zstd


class RestoreConfig(BaseModel):
    confirmation_delay_seconds: float = 10.0


class TriggerConfig(BaseModel):
    """Shared-secret authentication for externally triggered backups."""
    header: str = "X-Backup-Trigger-Secret"
    secret: Optional[str] = None


class BackupConfig(BaseModel):
    """Backup and recovery configuration."""
    enabled: bool = True
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    archive: ArchiveConfig = Field(default_factory=ArchiveConfig)
    dump: DumpConfig = Field(default_factory=DumpConfig)
    restore: RestoreConfig = Field(default_factory=RestoreConfig)
    trigger: TriggerConfig = Field(default_factory=TriggerConfig)


class Settings(BaseModel):
    backup: BackupConfig = Field(default_factory=BackupConfig)


def _find_settings_path(explicit: Optional[str]) -> Optional[Path]:
    candidates = []
    if explicit:
        candidates.append(Path(explicit))
    env = os.getenv("BOOSTER_BACKUP_CONFIG")
    if env:
        candidates.append(Path(env))
    candidates.extend([
        Path("settings.yaml"),
        Path("settings.yml"),
        Path("config/settings.yaml"),
    ])
    for p in candidates:
        if p and p.exists() and p.is_file():
            return p
    return None


def _apply_env_overrides(s: Settings) -> Settings:
    if db_url := os.getenv("DATABASE_URL"):
        s.backup.database.url = db_url
    if bucket := os.getenv("BOOSTER_BACKUP_BUCKET"):
        s.backup.storage.bucket = bucket
        s.backup.storage.provider = "s3"
    if local_root := os.getenv("BOOSTER_BACKUP_LOCAL_ROOT"):
        s.backup.storage.local_root = local_root
    if secret := os.getenv("BOOSTER_BACKUP_TRIGGER_SECRET"):
        s.backup.trigger.secret = secret
    return s


def load_settings(path: Optional[str] = None) -> Settings:
    p = _find_settings_path(path)
    if not p:
        log.warning("No settings file found; using defaults")
        return _apply_env_overrides(Settings())

    with open(p, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    try:
        s = Settings(**raw)
    except ValidationError as e:
        log.error("Settings validation failed: %s", e)
        raise
    return _apply_env_overrides(s)
