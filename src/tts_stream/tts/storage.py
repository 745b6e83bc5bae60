"""
Object Storage for Generated Audio.

Every synthesized chunk and every concatenated one-shot result is uploaded
here, and the returned URL is what clients play. Uploads are idempotent:
writing the same key twice overwrites the object, so a retried task never
leaves a half-written or duplicate object behind.

Backends:
    - LocalObjectStorage: files under ``storage.base_dir``, served by the
      app itself under ``storage.public_base_url`` (default /audio)
    - S3ObjectStorage: any S3-compatible bucket (AWS S3, R2, MinIO) via boto3

Object Layout:
    Keys are sharded by the first two hex characters of the SHA-256 of the
    logical key, which keeps directory (and S3 prefix) sizes bounded:

    {folder}/
        3f/
            tts_4c1e..._chunk_0.mp3
        a0/
            9b1d...e2_Idera.mp3

Usage:
    storage = create_storage(config.storage)
    result = storage.upload(audio, folder="tts-chunks", fmt="mp3",
                            key=f"tts_{job_id}_chunk_{index}")
    result.url   # public URL
    result.key   # object key within the backend
"""
from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from tts_stream.core.config import StorageConfig
from tts_stream.core.logging import get_logger, verbose, warn
from tts_stream.services.errors import StorageError
from tts_stream.tts.voices import content_type_for
from tts_stream.utils.timeit import timeit

_LOG = get_logger("tts-stream.storage")


@dataclass(frozen=True)
class UploadResult:
    url: str
    key: str


def hash_bytes(data: bytes) -> str:
    """SHA-256 hex digest of ``data``."""
    return hashlib.sha256(data).hexdigest()


def object_key(folder: str, key: str, fmt: str) -> str:
    """
    Sharded object key for a logical key.

    The shard is ``sha256(key)[:2]``, so the result looks like
    ``tts-chunks/<2 hex chars>/tts_abc_chunk_0.mp3``.
    """
    shard = hash_bytes(key.encode("utf-8"))[:2]
    return f"{folder.strip('/')}/{shard}/{key}.{fmt}"


class ObjectStorage:
    """Interface: ``upload`` returns the public URL and object key."""
    name: str = "base"

    def upload(self, data: bytes, folder: str, fmt: str, key: str) -> UploadResult:
        raise NotImplementedError


class LocalObjectStorage(ObjectStorage):
    """
    Filesystem backend.

    Writes are atomic: data goes to a temp file in the target directory and
    is then renamed over the final path.
    """
    name = "local"

    def __init__(self, base_dir: str, public_base_url: str = "/audio"):
        self.base_dir = Path(base_dir)
        self.public_base_url = public_base_url.rstrip("/")

    def path_for(self, obj_key: str) -> Path:
        return self.base_dir / obj_key

    def upload(self, data: bytes, folder: str, fmt: str, key: str) -> UploadResult:
        obj_key = object_key(folder, key, fmt)
        path = self.path_for(obj_key)
        tmp = path.with_name(f"{path.name}.{os.getpid()}.{hash_bytes(data)[:8]}.tmp")

        with timeit("storage_write") as t:
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                tmp.write_bytes(data)
                tmp.replace(path)
            except OSError as exc:
                if tmp.exists():
                    tmp.unlink()
                warn(_LOG, "storage_write_error", key=obj_key, error=str(exc))
                raise StorageError(f"Failed to store audio {obj_key}: {exc}") from exc

        verbose(_LOG, "stored", key=obj_key, bytes=len(data), seconds=round(t.seconds, 4))
        return UploadResult(url=f"{self.public_base_url}/{obj_key}", key=obj_key)


class S3ObjectStorage(ObjectStorage):
    """
    S3-compatible backend.

    URLs are ``{public_base_url}/{key}`` under a public (CDN / r2.dev) base
    URL. Stores keep these URLs indefinitely, so expiring presigned URLs are
    not an option and an http(s) base is required.
    """
    name = "s3"

    def __init__(
        self,
        bucket: str,
        public_base_url: str,
        client: Any = None,
        endpoint_url: Optional[str] = None,
        region: Optional[str] = None,
    ):
        if not public_base_url.startswith(("http://", "https://")):
            raise ValueError(f"S3 storage needs an http(s) public_base_url, got {public_base_url!r}")
        self.bucket = bucket
        self.public_base_url = public_base_url.rstrip("/")
        self._client = client or boto3.client("s3", endpoint_url=endpoint_url, region_name=region)

    def _url_for(self, obj_key: str) -> str:
        return f"{self.public_base_url}/{obj_key}"

    def upload(self, data: bytes, folder: str, fmt: str, key: str) -> UploadResult:
        obj_key = object_key(folder, key, fmt)
        with timeit("storage_write") as t:
            try:
                self._client.put_object(
                    Bucket=self.bucket,
                    Key=obj_key,
                    Body=data,
                    ContentType=content_type_for(fmt),
                )
            except (BotoCoreError, ClientError) as exc:
                warn(_LOG, "storage_write_error", bucket=self.bucket, key=obj_key, error=str(exc))
                raise StorageError(f"Failed to upload audio {obj_key}: {exc}") from exc

        url = self._url_for(obj_key)
        verbose(_LOG, "uploaded", bucket=self.bucket, key=obj_key, bytes=len(data), seconds=round(t.seconds, 4))
        return UploadResult(url=url, key=obj_key)


def create_storage(config: StorageConfig) -> ObjectStorage:
    """Build the backend named by ``config.backend``."""
    if config.backend == "s3":
        return S3ObjectStorage(
            bucket=str(config.bucket),
            public_base_url=config.public_base_url,
            endpoint_url=config.endpoint_url,
            region=config.region,
        )
    return LocalObjectStorage(config.base_dir, config.public_base_url)
