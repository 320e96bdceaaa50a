"""Cold tier: durable object storage for full envelopes.

Two backends share one async interface: ``S3BlobStore`` for S3-compatible
services (R2 included, via ``endpoint_url``) and ``FilesystemBlobStore`` for
local development. Writes are all-or-nothing; a key either holds the whole
envelope or does not exist.
"""
from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from core.config import Settings
from core.errors import DependencyError, NotFoundError

logger = logging.getLogger(__name__)

_MISSING_CODES = {"NoSuchKey", "404", "NotFound"}


class BlobStore(ABC):
    @abstractmethod
    async def put(self, key: str, body: bytes, metadata: dict[str, str] | None = None) -> None:
        """Write an object atomically."""

    @abstractmethod
    async def get(self, key: str) -> bytes:
        """Read an object; raises NotFoundError if absent."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        ...

    @abstractmethod
    async def list_keys(self, prefix: str = "") -> list[str]:
        """Every key under ``prefix``. All pages are read before returning."""


class S3BlobStore(BlobStore):
    def __init__(
        self,
        bucket: str,
        *,
        endpoint_url: str | None = None,
        region: str = "auto",
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        client=None,
    ):
        if not bucket:
            raise ValueError("S3 bucket name is required")
        self.bucket = bucket
        self.client = client or boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            region_name=region,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
        )

    async def put(self, key: str, body: bytes, metadata: dict[str, str] | None = None) -> None:
        def _do() -> None:
            self.client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=body,
                ContentType="application/json",
                Metadata=metadata or {},
            )

        try:
            await asyncio.to_thread(_do)
        except (BotoCoreError, ClientError) as exc:
            logger.error(f"Blob write failed for {key}: {exc}")
            raise DependencyError(f"Blob store write failed for {key}: {exc}") from exc

    async def get(self, key: str) -> bytes:
        def _do() -> bytes:
            resp = self.client.get_object(Bucket=self.bucket, Key=key)
            return resp["Body"].read()

        try:
            return await asyncio.to_thread(_do)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in _MISSING_CODES:
                raise NotFoundError(f"Object not found: {key}") from exc
            raise DependencyError(f"Blob store read failed for {key}: {exc}") from exc
        except BotoCoreError as exc:
            raise DependencyError(f"Blob store read failed for {key}: {exc}") from exc

    async def exists(self, key: str) -> bool:
        def _do() -> None:
            self.client.head_object(Bucket=self.bucket, Key=key)

        try:
            await asyncio.to_thread(_do)
            return True
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in _MISSING_CODES:
                return False
            raise DependencyError(f"Blob store probe failed for {key}: {exc}") from exc
        except BotoCoreError as exc:
            raise DependencyError(f"Blob store probe failed for {key}: {exc}") from exc

    async def list_keys(self, prefix: str = "") -> list[str]:
        def _do() -> list[str]:
            keys: list[str] = []
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for obj in page.get("Contents", []):
                    keys.append(obj["Key"])
            return keys

        try:
            return await asyncio.to_thread(_do)
        except (BotoCoreError, ClientError) as exc:
            raise DependencyError(f"Blob store listing failed for prefix {prefix!r}: {exc}") from exc


class FilesystemBlobStore(BlobStore):
    """Blob store rooted at a local directory. Keys map to relative paths."""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if not path.is_relative_to(self.root.resolve()):
            raise ValueError(f"Key escapes blob root: {key!r}")
        return path

    async def put(self, key: str, body: bytes, metadata: dict[str, str] | None = None) -> None:
        path = self._path(key)

        def _do() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".tmp-", suffix=".json")
            try:
                with os.fdopen(fd, "wb") as fh:
                    fh.write(body)
                os.replace(tmp, path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise

        try:
            await asyncio.to_thread(_do)
        except OSError as exc:
            raise DependencyError(f"Blob store write failed for {key}: {exc}") from exc

    async def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as exc:
            raise NotFoundError(f"Object not found: {key}") from exc
        except OSError as exc:
            raise DependencyError(f"Blob store read failed for {key}: {exc}") from exc

    async def exists(self, key: str) -> bool:
        return await asyncio.to_thread(self._path(key).is_file)

    async def list_keys(self, prefix: str = "") -> list[str]:
        def _do() -> list[str]:
            if not self.root.exists():
                return []
            keys = []
            for path in self.root.rglob("*.json"):
                if path.name.startswith(".tmp-"):
                    continue
                key = path.relative_to(self.root).as_posix()
                if key.startswith(prefix):
                    keys.append(key)
            return sorted(keys)

        try:
            return await asyncio.to_thread(_do)
        except OSError as exc:
            raise DependencyError(f"Blob store listing failed for prefix {prefix!r}: {exc}") from exc


def build_blob_store(settings: Settings) -> BlobStore:
    if settings.blob_backend == "s3":
        return S3BlobStore(
            settings.s3_bucket,
            endpoint_url=settings.s3_endpoint_url,
            region=settings.s3_region,
            access_key_id=settings.s3_access_key_id,
            secret_access_key=settings.s3_secret_access_key,
        )
    if settings.blob_backend == "filesystem":
        return FilesystemBlobStore(settings.blob_root)
    raise ValueError(f"Unknown BLOB_BACKEND {settings.blob_backend!r}; expected 's3' or 'filesystem'")


__all__ = [
    "BlobStore",
    "FilesystemBlobStore",
    "S3BlobStore",
    "build_blob_store",
]
