"""Prometheus metrics for backup, retention and restore operations."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram, generate_latest

backup_runs_total = Counter(
    "booster_backup_runs_total",
    "Total number of backup runs",
    ["kind", "status"],  # status: success, failed, rejected
)

backup_duration_seconds = Histogram(
    "booster_backup_duration_seconds",
    "Backup run duration in seconds",
    ["kind"],
    buckets=(1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1500.0),
)

backup_size_bytes = Histogram(
    "booster_backup_size_bytes",
    "Backup artifact size in bytes",
    ["kind"],
    buckets=(
        64 * 1024,
        1024 * 1024,  # 1 MB
        10 * 1024 * 1024,
        100 * 1024 * 1024,
        500 * 1024 * 1024,
        1024 * 1024 * 1024,  # 1 GB
    ),
)

backup_timeouts_total = Counter(
    "booster_backup_timeouts_total",
    "Backup runs abandoned at their deadline",
    ["kind"],
)

backup_failed_tables_total = Counter(
    "booster_backup_failed_tables_total",
    "Tables that could not be read during a dump",
)

backup_skipped_objects_total = Counter(
    "booster_backup_skipped_objects_total",
    "Objects skipped because their download failed",
)

backup_retention_pruned_total = Counter(
    "booster_backup_retention_pruned_total",
    "Artifacts removed by the retention policy",
    ["kind"],
)

backup_restores_total = Counter(
    "booster_backup_restores_total",
    "Total number of restore operations",
    ["status"],  # success, failed
)

backup_in_progress = Gauge(
    "booster_backup_in_progress",
    "1 while this process holds the backup lease",
)


def record_run(kind: str, status: str, duration: float, size_bytes: int = 0) -> None:
    """Record a finished backup run."""
    backup_runs_total.labels(kind=kind, status=status).inc()
    backup_duration_seconds.labels(kind=kind).observe(duration)
    if status == "success":
        backup_size_bytes.labels(kind=kind).observe(size_bytes)


def get_metrics() -> bytes:
    """Current metrics in Prometheus exposition format."""
    return generate_latest()
