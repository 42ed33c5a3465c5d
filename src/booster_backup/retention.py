"""Age-based artifact cleanup and explicit operator deletion."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable, Optional, Sequence

from .archive import DEFAULT_MARKER_SEGMENTS, DEFAULT_RESERVED_PREFIXES, is_backup_artifact
from .config import RetentionConfig
from .logger import get_logger, log_extra
from .metrics import backup_retention_pruned_total
from .models import BackupKind, CleanupResult, DeleteResult, RetentionWindow
from .registry import MetadataRegistry, utcnow
from .storage import ObjectStore

log = get_logger(__name__)


def window_from_config(config: RetentionConfig) -> RetentionWindow:
    """Build the window; unknown kinds in settings are ignored."""
    known = {k.value: k for k in BackupKind}
    ages = {}
    for name, days in config.max_age_days.items():
        kind = known.get(name)
        if kind is None:
            log.warning("Ignoring retention setting for unknown kind %r", name)
            continue
        ages[kind] = days
    return RetentionWindow(max_age_days=ages)


class RetentionPolicy:
    """Delete artifacts past their kind's maximum age and mark their runs purged.

    Run metadata is kept forever. Database dumps are never selected, whatever
    the configured window says.
    """

    def __init__(
        self,
        registry: MetadataRegistry,
        store: ObjectStore,
        window: RetentionWindow,
        marker_segments: Sequence[str] = DEFAULT_MARKER_SEGMENTS,
        reserved_prefixes: Sequence[str] = DEFAULT_RESERVED_PREFIXES,
    ):
        self.registry = registry
        self.store = store
        self.window = window
        self.marker_segments = tuple(marker_segments)
        self.reserved_prefixes = tuple(reserved_prefixes)

    def cleanup_old_backups(self, now: Optional[datetime] = None, dry_run: bool = False) -> CleanupResult:
        now = now or utcnow()
        result = CleanupResult(dry_run=dry_run)

        for kind in self.window.eligible_kinds():
            cutoff = now - timedelta(days=self.window.max_age_days[kind])
            runs = self.registry.eligible_for_retention(kind, cutoff)
            log.info("%d %s backups older than %s", len(runs), kind.value, cutoff.date().isoformat())

            for run in runs:
                location = run.artifact_location or ""
                if dry_run:
                    result.purged_run_ids.append(run.id)
                    if location:
                        result.deleted.append(location)
                    result.freed_bytes += run.size_bytes
                    continue
                try:
                    if location and self.store.exists(location):
                        self.store.delete(location)
                        result.deleted.append(location)
                        result.freed_bytes += run.size_bytes
                    self.registry.mark_purged([run.id], now=now)
                except Exception as e:
                    log.error("Failed to purge %s: %s", location or run.id, e)
                    result.failed.append({"path": location or run.id, "error": str(e)})
                    continue
                result.purged_run_ids.append(run.id)
                backup_retention_pruned_total.labels(kind=kind.value).inc()

        log.info(
            "Retention cleanup finished",
            extra=log_extra(
                purged=len(result.purged_run_ids),
                failed=len(result.failed),
                freed_bytes=result.freed_bytes,
                dry_run=dry_run,
            ),
        )
        return result

    def delete_artifacts(self, paths: Iterable[str]) -> DeleteResult:
        """Delete the given artifact paths, collecting per-path failures."""
        result = DeleteResult()
        for path in paths:
            if not is_backup_artifact(path, self.marker_segments, self.reserved_prefixes):
                result.failed.append({"path": path, "error": "not a backup artifact"})
                continue
            try:
                self.store.delete(path)
                runs = self.registry.find_by_artifact(path)
                self.registry.mark_purged(r.id for r in runs)
            except Exception as e:
                log.error("Failed to delete %s: %s", path, e)
                result.failed.append({"path": path, "error": str(e)})
                continue
            result.deleted.append(path)
            log.info("Deleted backup artifact %s", path)
        return result
