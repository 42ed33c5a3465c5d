"""Object-store clients: S3 (production) and a local directory (development)."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import List, Optional, Protocol

import boto3
from botocore.exceptions import ClientError

from .config import StorageConfig
from .errors import ConfigurationError
from .logger import get_logger

log = get_logger(__name__)


@dataclass(frozen=True)
class StoredObject:
    path: str
    size_bytes: int
    last_modified: Optional[datetime] = None


class ObjectStore(Protocol):
    """Minimal object-store surface used by archives, uploads and retention."""

    def list(self, prefix: str = "") -> List[StoredObject]: ...

    def get(self, path: str) -> bytes: ...

    def put(self, path: str, data: bytes, content_type: Optional[str] = None) -> StoredObject: ...

    def delete(self, path: str) -> None: ...

    def stat(self, path: str) -> Optional[StoredObject]: ...

    def exists(self, path: str) -> bool: ...


class S3ObjectStore:
    """S3 (or S3-compatible) bucket accessed through boto3."""

    def __init__(self, bucket: str, region: str = "us-east-1", endpoint_url: Optional[str] = None, client=None):  # type: ignore[no-untyped-def]
        if not bucket:
            raise ConfigurationError("storage.bucket is required for the s3 provider")
        self.bucket = bucket
        if client is None:
            client_kwargs = {"region_name": region} if region != "us-east-1" else {}
            if endpoint_url:
                client_kwargs["endpoint_url"] = endpoint_url
            client = boto3.client("s3", **client_kwargs)
        self.client = client

    def list(self, prefix: str = "") -> List[StoredObject]:
        paginator = self.client.get_paginator("list_objects_v2")
        objects: List[StoredObject] = []
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            for item in page.get("Contents") or []:
                objects.append(StoredObject(
                    path=item["Key"],
                    size_bytes=int(item.get("Size", 0)),
                    last_modified=item.get("LastModified"),
                ))
        log.debug("Listed %d objects under s3://%s/%s", len(objects), self.bucket, prefix)
        return objects

    def get(self, path: str) -> bytes:
        response = self.client.get_object(Bucket=self.bucket, Key=path)
        return response["Body"].read()

    def put(self, path: str, data: bytes, content_type: Optional[str] = None) -> StoredObject:
        extra = {"ContentType": content_type} if content_type else {}
        log.info("Uploading %d bytes to s3://%s/%s", len(data), self.bucket, path)
        self.client.put_object(Bucket=self.bucket, Key=path, Body=data, **extra)
        return StoredObject(path=path, size_bytes=len(data), last_modified=datetime.now(timezone.utc))

    def delete(self, path: str) -> None:
        self.client.delete_object(Bucket=self.bucket, Key=path)
        log.info("Deleted s3://%s/%s", self.bucket, path)

    def stat(self, path: str) -> Optional[StoredObject]:
        try:
            response = self.client.head_object(Bucket=self.bucket, Key=path)
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            if code in ("404", "NoSuchKey", "NotFound"):
                return None
            raise
        return StoredObject(
            path=path,
            size_bytes=int(response.get("ContentLength", 0)),
            last_modified=response.get("LastModified"),
        )

    def exists(self, path: str) -> bool:
        return self.stat(path) is not None


class LocalObjectStore:
    """Directory tree standing in for a bucket; keys are POSIX relative paths."""

    def __init__(self, root: str | Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        key = PurePosixPath(path)
        if key.is_absolute() or ".." in key.parts or not key.parts:
            raise ValueError(f"Invalid object path: {path!r}")
        return self.root.joinpath(*key.parts)

    def _describe(self, file: Path) -> StoredObject:
        st = file.stat()
        return StoredObject(
            path=file.relative_to(self.root).as_posix(),
            size_bytes=st.st_size,
            last_modified=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
        )

    def list(self, prefix: str = "") -> List[StoredObject]:
        files = sorted(p for p in self.root.rglob("*") if p.is_file())
        objects = [self._describe(p) for p in files]
        return [o for o in objects if o.path.startswith(prefix)]

    def get(self, path: str) -> bytes:
        return self._resolve(path).read_bytes()

    def put(self, path: str, data: bytes, content_type: Optional[str] = None) -> StoredObject:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        log.info("Stored %d bytes at %s", len(data), target)
        return self._describe(target)

    def delete(self, path: str) -> None:
        self._resolve(path).unlink()
        log.info("Deleted %s", path)

    def stat(self, path: str) -> Optional[StoredObject]:
        target = self._resolve(path)
        if not target.is_file():
            return None
        return self._describe(target)

    def exists(self, path: str) -> bool:
        return self.stat(path) is not None


def create_object_store(config: StorageConfig) -> ObjectStore:
    if config.provider == "s3":
        return S3ObjectStore(config.bucket, region=config.region, endpoint_url=config.endpoint_url)
    if config.provider == "local":
        return LocalObjectStore(config.local_root)
    raise ConfigurationError(f"Unknown storage provider: {config.provider}")
