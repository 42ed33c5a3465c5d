"""Package object-store contents (and optionally a dump) into a ZIP archive."""

from __future__ import annotations

import io
import json
import zipfile
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import DuplicateObjectError, ObjectFetchError
from .logger import get_logger
from .models import ArchiveResult, ObjectManifestEntry
from .storage import ObjectStore, StoredObject

log = get_logger(__name__)

DEFAULT_MARKER_SEGMENTS = ("backups", "backup", "tmp", "temp")
MARKER_SEGMENT_PREFIXES = ("temp_", "tmp_")
DEFAULT_RESERVED_PREFIXES = ("db-backup-", "blob-backup-", "full-backup-", "backup-")
ARCHIVE_EXTENSIONS = (".tar.gz", ".sql.gz", ".sql.zst", ".tgz", ".tar", ".zip")

BLOB_PREFIX = "blob/"
MANIFEST_PATH = "manifest.json"
ARCHIVE_DUMP_PATH = "database/database-backup.sql"


def is_backup_artifact(
    path: str,
    marker_segments: Iterable[str] = DEFAULT_MARKER_SEGMENTS,
    reserved_prefixes: Iterable[str] = DEFAULT_RESERVED_PREFIXES,
) -> bool:
    """True when ``path`` looks like a backup artifact or scratch file.

    Such paths are never archived, so a backup cannot contain earlier backups.
    """
    parts = PurePosixPath(path.lower()).parts
    if not parts:
        return False
    markers = {m.lower() for m in marker_segments}
    for segment in parts[:-1]:
        if segment in markers or segment.startswith(MARKER_SEGMENT_PREFIXES):
            return True

    name = parts[-1]
    if name.startswith(MARKER_SEGMENT_PREFIXES):
        return True
    if name.endswith(ARCHIVE_EXTENSIONS):
        return name.startswith(tuple(p.lower() for p in reserved_prefixes))
    return False


def read_archive_dump(data: bytes) -> str:
    """Return the embedded database dump of a full-backup archive."""
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        try:
            raw = zf.read(ARCHIVE_DUMP_PATH)
        except KeyError:
            raise ValueError(f"Archive has no {ARCHIVE_DUMP_PATH}") from None
    return raw.decode("utf-8")


class ObjectArchiveBuilder:
    """Build deterministic ZIP archives from an object-store listing."""

    def __init__(
        self,
        store: ObjectStore,
        fetch_concurrency: int = 4,
        marker_segments: Sequence[str] = DEFAULT_MARKER_SEGMENTS,
        reserved_prefixes: Sequence[str] = DEFAULT_RESERVED_PREFIXES,
    ):
        self.store = store
        self.fetch_concurrency = max(1, fetch_concurrency)
        self.marker_segments = tuple(marker_segments)
        self.reserved_prefixes = tuple(reserved_prefixes)

    def select(self, listing: Iterable[StoredObject]) -> Tuple[List[StoredObject], List[str], List[str]]:
        """Split a listing into archivable objects, excluded artifact paths and
        warnings. Repeated paths keep their first entry only."""
        seen = set()
        included: List[StoredObject] = []
        excluded: List[str] = []
        warnings: List[str] = []
        for obj in listing:
            if obj.path in seen:
                error = DuplicateObjectError(obj.path)
                log.warning("%s", error)
                warnings.append(str(error))
                continue
            seen.add(obj.path)
            if is_backup_artifact(obj.path, self.marker_segments, self.reserved_prefixes):
                excluded.append(obj.path)
            else:
                included.append(obj)
        if excluded:
            log.info("Excluded %d backup artifacts from archive", len(excluded))
        return included, excluded, warnings

    def build(
        self,
        database_dump: Optional[str] = None,
        checkpoint: Optional[Callable[[], None]] = None,
        listing: Optional[Iterable[StoredObject]] = None,
    ) -> ArchiveResult:
        """Fetch every eligible object and write the archive.

        ``database_dump`` is embedded for full backups. ``checkpoint`` is
        called as fetches complete and raises to abandon the build.
        """
        if listing is None:
            listing = self.store.list()
        included, excluded, warnings = self.select(listing)

        fetched, skipped, fetch_warnings = self._fetch_all(included, checkpoint)
        warnings.extend(fetch_warnings)
        now = datetime.now(timezone.utc)
        manifest = sorted(
            (ObjectManifestEntry(path=p, size_bytes=len(b), included_at=now) for p, b in fetched.items()),
            key=lambda e: e.path,
        )
        if checkpoint:
            checkpoint()

        data = self._write_zip(manifest, fetched, skipped, database_dump, now)
        log.info(
            "Archive built: %d objects, %d skipped, %d excluded, %d bytes",
            len(manifest), len(skipped), len(excluded), len(data),
        )
        return ArchiveResult(data=data, manifest=manifest, excluded=excluded, skipped=skipped, warnings=warnings)

    def _fetch_all(
        self,
        objects: List[StoredObject],
        checkpoint: Optional[Callable[[], None]],
    ) -> Tuple[Dict[str, bytes], List[str], List[str]]:
        fetched: Dict[str, bytes] = {}
        skipped: List[str] = []
        warnings: List[str] = []
        if not objects:
            return fetched, skipped, warnings

        with ThreadPoolExecutor(max_workers=self.fetch_concurrency, thread_name_prefix="archive-fetch") as pool:
            futures: Dict[Future, str] = {pool.submit(self.store.get, o.path): o.path for o in objects}
            try:
                for future in as_completed(futures):
                    if checkpoint:
                        checkpoint()
                    path = futures[future]
                    try:
                        fetched[path] = future.result()
                    except Exception as e:
                        error = ObjectFetchError(path, str(e))
                        log.warning("%s", error)
                        skipped.append(path)
                        warnings.append(str(error))
            except BaseException:
                for pending in futures:
                    pending.cancel()
                raise

        skipped.sort()
        return fetched, skipped, warnings

    def _write_zip(
        self,
        manifest: List[ObjectManifestEntry],
        fetched: Dict[str, bytes],
        skipped: List[str],
        database_dump: Optional[str],
        now: datetime,
    ) -> bytes:
        stamp = now.timetuple()[:6]
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for entry in manifest:
                info = zipfile.ZipInfo(BLOB_PREFIX + entry.path, date_time=stamp)
                info.compress_type = zipfile.ZIP_DEFLATED
                zf.writestr(info, fetched[entry.path])

            document = {
                "created_at": now.isoformat(),
                "object_count": len(manifest),
                "total_size": sum(e.size_bytes for e in manifest),
                "objects": [e.to_dict() for e in manifest],
                "skipped": skipped,
                "includes_database": database_dump is not None,
            }
            info = zipfile.ZipInfo(MANIFEST_PATH, date_time=stamp)
            info.compress_type = zipfile.ZIP_DEFLATED
            zf.writestr(info, json.dumps(document, indent=2))

            if database_dump is not None:
                info = zipfile.ZipInfo(ARCHIVE_DUMP_PATH, date_time=stamp)
                info.compress_type = zipfile.ZIP_DEFLATED
                zf.writestr(info, database_dump.encode("utf-8"))
        return buffer.getvalue()
