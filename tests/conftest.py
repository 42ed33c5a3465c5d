from __future__ import annotations

import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

import pytest
from sqlalchemy.engine import Engine

from booster_backup.config import (
    BackupConfig,
    DatabaseConfig,
    RestoreConfig,
    ScheduleConfig,
    StorageConfig,
)
from booster_backup.database import create_database_engine
from booster_backup.registry import MetadataRegistry
from booster_backup.service import BackupService
from booster_backup.storage import StoredObject

BOOSTER_SCHEMA = [
    """
    CREATE TABLE officers (
        id INTEGER PRIMARY KEY,
        name TEXT NOT NULL,
        role TEXT,
        email TEXT,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE volunteers (
        id INTEGER PRIMARY KEY,
        name TEXT NOT NULL,
        hours REAL DEFAULT 0,
        active INTEGER NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE TABLE news (
        id INTEGER PRIMARY KEY,
        title TEXT NOT NULL,
        body TEXT,
        created_at TEXT
    )
    """,
    """
    CREATE TABLE insurance_forms (
        id INTEGER PRIMARY KEY,
        club TEXT NOT NULL,
        payload TEXT
    )
    """,
]

BOOSTER_ROWS = [
    "INSERT INTO officers (id, name, role, email, created_at) VALUES "
    "(1, 'Dana Reyes', 'President', 'dana@example.org', '2024-01-05 10:00:00')",
    "INSERT INTO officers (id, name, role, email, created_at) VALUES "
    "(2, 'Sam O''Brien', 'Treasurer', NULL, '2024-01-04 09:00:00')",
    "INSERT INTO volunteers (id, name, hours, active) VALUES (1, 'Alex', 12.5, 1)",
    "INSERT INTO volunteers (id, name, hours, active) VALUES (2, 'Jordan', 3.0, 0)",
    "INSERT INTO volunteers (id, name, hours, active) VALUES (3, 'Riley', 0.5, 1)",
    "INSERT INTO news (id, title, body, created_at) VALUES "
    "(1, 'Bake sale; Friday', 'Bring -- cookies', '2024-02-01 08:00:00')",
    "INSERT INTO insurance_forms (id, club, payload) VALUES (1, 'Band', '{\"coverage\": \"event\"}')",
]


class MemoryObjectStore:
    """In-memory object store used in place of S3."""

    def __init__(self) -> None:
        self.objects: Dict[str, Tuple[bytes, datetime]] = {}
        self.fail_on: Set[str] = set()
        self.puts: List[str] = []
        self._lock = threading.Lock()

    def list(self, prefix: str = "") -> List[StoredObject]:
        with self._lock:
            return [
                StoredObject(path=p, size_bytes=len(d), last_modified=m)
                for p, (d, m) in sorted(self.objects.items())
                if p.startswith(prefix)
            ]

    def get(self, path: str) -> bytes:
        if path in self.fail_on:
            raise IOError(f"simulated failure reading {path}")
        with self._lock:
            if path not in self.objects:
                raise FileNotFoundError(path)
            return self.objects[path][0]

    def put(self, path: str, data: bytes, content_type: Optional[str] = None) -> StoredObject:
        now = datetime.now(timezone.utc)
        with self._lock:
            self.objects[path] = (data, now)
            self.puts.append(path)
        return StoredObject(path=path, size_bytes=len(data), last_modified=now)

    def delete(self, path: str) -> None:
        if path in self.fail_on:
            raise IOError(f"simulated failure deleting {path}")
        with self._lock:
            self.objects.pop(path, None)

    def stat(self, path: str) -> Optional[StoredObject]:
        with self._lock:
            if path not in self.objects:
                return None
            data, modified = self.objects[path]
        return StoredObject(path=path, size_bytes=len(data), last_modified=modified)

    def exists(self, path: str) -> bool:
        return self.stat(path) is not None


def seed_booster_tables(engine: Engine) -> None:
    with engine.begin() as conn:
        for ddl in BOOSTER_SCHEMA:
            conn.exec_driver_sql(ddl)
        for row in BOOSTER_ROWS:
            conn.exec_driver_sql(row)


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'booster.db'}"


@pytest.fixture
def backup_config(database_url: str, tmp_path: Path) -> BackupConfig:
    """Settings pointing at a temp SQLite file with no restore delay."""
    return BackupConfig(
        database=DatabaseConfig(url=database_url),
        storage=StorageConfig(provider="local", local_root=str(tmp_path / "objects")),
        schedule=ScheduleConfig(timezone="UTC"),
        restore=RestoreConfig(confirmation_delay_seconds=0),
    )


@pytest.fixture
def engine(backup_config: BackupConfig) -> Engine:
    eng = create_database_engine(backup_config.database)
    seed_booster_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def empty_engine(tmp_path: Path) -> Engine:
    """A second, table-less database to restore into."""
    eng = create_database_engine(DatabaseConfig(url=f"sqlite:///{tmp_path / 'restored.db'}"))
    yield eng
    eng.dispose()


@pytest.fixture
def store() -> MemoryObjectStore:
    return MemoryObjectStore()


@pytest.fixture
def registry(engine: Engine) -> MetadataRegistry:
    reg = MetadataRegistry(engine)
    reg.create_schema()
    return reg


@pytest.fixture
def service(backup_config: BackupConfig, engine: Engine, store: MemoryObjectStore) -> BackupService:
    return BackupService(backup_config, engine, store, sleep=lambda seconds: None)
