"""Dump artifact compression and the artifact naming scheme."""

from __future__ import annotations

import gzip
import zipfile
from datetime import datetime

import zstandard as zstd

from .archive import read_archive_dump
from .models import BackupKind, CompressionType

_DUMP_EXTENSIONS = {
    CompressionType.NONE: "sql",
    CompressionType.GZIP: "sql.gz",
    CompressionType.ZSTD: "sql.zst",
}

CONTENT_TYPES = {
    "sql": "application/sql",
    "sql.gz": "application/gzip",
    "sql.zst": "application/zstd",
    "zip": "application/zip",
}


def artifact_extension(kind: BackupKind, compression: CompressionType = CompressionType.NONE) -> str:
    if kind == BackupKind.DATABASE:
        return _DUMP_EXTENSIONS[compression]
    return "zip"


def artifact_key(kind: BackupKind, run_id: str, when: datetime, compression: CompressionType = CompressionType.NONE) -> str:
    """``backups/<kind>/<YYYY-MM-DD>/<id>.<ext>``"""
    return f"backups/{kind.value}/{when.strftime('%Y-%m-%d')}/{run_id}.{artifact_extension(kind, compression)}"


def compress(data: bytes, compression: CompressionType) -> bytes:
    if compression == CompressionType.GZIP:
        return gzip.compress(data, compresslevel=6)
    if compression == CompressionType.ZSTD:
        return zstd.ZstdCompressor(level=3).compress(data)
    return data


def decompress(data: bytes, location: str) -> bytes:
    """Decompress according to the artifact's extension."""
    if location.endswith(".gz"):
        return gzip.decompress(data)
    if location.endswith(".zst"):
        return zstd.ZstdDecompressor().decompress(data)
    return data


def extract_dump(data: bytes, location: str) -> str:
    """Return the SQL dump carried by an artifact, whatever its packaging.

    Raises ValueError when the payload is not a readable dump.
    """
    try:
        if location.endswith(".zip"):
            return read_archive_dump(data)
        return decompress(data, location).decode("utf-8")
    except (zipfile.BadZipFile, OSError, EOFError, zstd.ZstdError, UnicodeDecodeError) as e:
        raise ValueError(f"unreadable artifact {location}: {e}") from e
