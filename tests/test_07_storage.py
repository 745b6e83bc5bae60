"""
Tests for object storage backends.

Tests cover:
- Sharded object keys
- LocalObjectStorage: write, overwrite, URL, write failures
- S3ObjectStorage with a mocked boto3 client
"""
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from tts_stream.core.config import StorageConfig
from tts_stream.services.errors import StorageError
from tts_stream.tts.storage import (
    LocalObjectStorage,
    S3ObjectStorage,
    create_storage,
    hash_bytes,
    object_key,
)


class TestObjectKey:
    def test_sharded_layout(self):
        key = object_key("tts-chunks", "tts_abc_chunk_0", "mp3")
        folder, shard, name = key.split("/")
        assert folder == "tts-chunks"
        assert shard == hash_bytes(b"tts_abc_chunk_0")[:2]
        assert name == "tts_abc_chunk_0.mp3"

    def test_folder_slashes_stripped(self):
        assert object_key("/cache/", "k", "wav").startswith("cache/")


class TestLocalStorage:
    """Tests for LocalObjectStorage."""

    def test_upload_writes_file(self, tmp_path):
        storage = LocalObjectStorage(str(tmp_path), "/audio/")
        result = storage.upload(b"abc", "tts-chunks", "mp3", "tts_job_chunk_0")
        assert result.url == f"/audio/{result.key}"
        assert storage.path_for(result.key).read_bytes() == b"abc"

    def test_overwrite_is_idempotent(self, tmp_path):
        """Uploading the same key twice leaves one object with the new bytes."""
        storage = LocalObjectStorage(str(tmp_path))
        first = storage.upload(b"one", "f", "mp3", "same")
        second = storage.upload(b"two", "f", "mp3", "same")
        assert first.key == second.key
        assert storage.path_for(first.key).read_bytes() == b"two"
        leftovers = [p for p in tmp_path.rglob("*.tmp")]
        assert leftovers == []

    def test_write_failure_raises_storage_error(self, tmp_path):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("x")
        storage = LocalObjectStorage(str(blocker))
        with pytest.raises(StorageError):
            storage.upload(b"abc", "f", "mp3", "k")


class TestS3Storage:
    """Tests for S3ObjectStorage with a mock client."""

    def test_public_url(self):
        client = MagicMock()
        storage = S3ObjectStorage("bucket", "https://cdn.example.com/", client=client)
        result = storage.upload(b"abc", "tts-cache", "wav", "hash_Idera")

        client.put_object.assert_called_once_with(
            Bucket="bucket", Key=result.key, Body=b"abc", ContentType="audio/wav",
        )
        assert result.url == f"https://cdn.example.com/{result.key}"
        client.generate_presigned_url.assert_not_called()

    @pytest.mark.parametrize("base", ["/audio", "", "s3://bucket"])
    def test_requires_http_public_base(self, base):
        """URLs are stored indefinitely, so only a permanent public base is accepted."""
        with pytest.raises(ValueError, match="public_base_url"):
            S3ObjectStorage("bucket", base, client=MagicMock())

    def test_url_is_stable_across_uploads(self):
        client = MagicMock()
        storage = S3ObjectStorage("bucket", "https://cdn.example.com", client=client)
        first = storage.upload(b"abc", "f", "mp3", "k")
        second = storage.upload(b"abc", "f", "mp3", "k")
        assert first.url == second.url == f"https://cdn.example.com/{first.key}"
        assert "?" not in first.url

    def test_client_error_raises_storage_error(self):
        client = MagicMock()
        client.put_object.side_effect = ClientError(
            {"Error": {"Code": "AccessDenied", "Message": "denied"}}, "PutObject"
        )
        storage = S3ObjectStorage("bucket", "https://cdn.example.com", client=client)
        with pytest.raises(StorageError):
            storage.upload(b"abc", "f", "mp3", "k")


class TestCreateStorage:
    def test_local_default(self, tmp_path):
        storage = create_storage(StorageConfig(base_dir=str(tmp_path)))
        assert isinstance(storage, LocalObjectStorage)

    def test_s3_backend(self, monkeypatch):
        monkeypatch.setattr("tts_stream.tts.storage.boto3.client", MagicMock())
        storage = create_storage(StorageConfig(backend="s3", bucket="audio",
                                               public_base_url="https://cdn.example.com"))
        assert isinstance(storage, S3ObjectStorage)
        assert storage.public_base_url == "https://cdn.example.com"
