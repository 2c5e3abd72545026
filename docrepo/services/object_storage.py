"""S3-compatible private object storage service."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterator
from dataclasses import dataclass
from functools import lru_cache
from pathlib import PurePosixPath
from typing import Any, BinaryIO, Protocol

from docrepo.config import settings

logger = logging.getLogger(__name__)

STREAM_CHUNK_SIZE = 1024 * 1024


class ObjectStorageError(Exception):
    """Generic object storage failure."""


class ObjectNotFoundError(ObjectStorageError):
    """Raised when object is missing."""


@dataclass
class StreamResult:
    """Streaming metadata for download responses."""

    chunks: Iterator[bytes]
    content_type: str | None
    content_length: int | None


@dataclass(frozen=True)
class ObjectStat:
    content_type: str | None
    size: int


class StorageService(Protocol):
    """Storage provider interface."""

    def put(
        self, stream: BinaryIO, content_type: str | None, size: int, name_hint: str | None
    ) -> str: ...
    def get(self, key: str) -> StreamResult: ...
    def delete(self, key: str) -> None: ...
    def stat(self, key: str) -> ObjectStat: ...


def generate_storage_key(name_hint: str | None) -> str:
    """Random object key that keeps the original file extension."""
    suffix = PurePosixPath(name_hint).suffix.lower() if name_hint else ""
    if len(suffix) > 16 or not suffix[1:].isalnum():
        suffix = ""
    return f"{uuid.uuid4()}{suffix}"


class _CountingReader:
    """Wraps a readable stream and counts the bytes handed out."""

    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream
        self.count = 0

    def read(self, size: int = -1) -> bytes:
        data = self._stream.read(size)
        self.count += len(data)
        return data


class S3StorageService:
    """S3/MinIO/R2-backed storage provider."""

    def __init__(
        self,
        bucket_name: str,
        endpoint_url: str,
        access_key: str | None,
        secret_key: str | None,
        region: str,
        client: Any | None = None,
    ) -> None:
        self.bucket_name = bucket_name
        self.region = region
        if client is not None:
            self.client = client
            return
        try:
            import boto3
        except ImportError as exc:
            raise ObjectStorageError("boto3 is required for S3 storage") from exc
        self.client = boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
        )

    @staticmethod
    def _error_code(exc: Exception) -> str:
        response = getattr(exc, "response", None)
        if isinstance(response, dict):
            err = response.get("Error", {})
            if isinstance(err, dict):
                return str(err.get("Code", ""))
        return ""

    def ensure_bucket(self) -> None:
        """Create bucket if missing (safe to call repeatedly)."""
        try:
            self.client.head_bucket(Bucket=self.bucket_name)
            return
        except Exception as exc:
            code = self._error_code(exc)
            if code not in {"404", "NoSuchBucket"}:
                raise ObjectStorageError("Unable to check storage bucket") from exc

        kwargs: dict = {"Bucket": self.bucket_name}
        if self.region and self.region != "us-east-1":
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": self.region}
        self.client.create_bucket(**kwargs)
        logger.info("Created storage bucket: %s", self.bucket_name)

    def put(
        self,
        stream: BinaryIO,
        content_type: str | None,
        size: int,
        name_hint: str | None = None,
    ) -> str:
        """Stream ``size`` bytes into a new object and return its key.

        The transfer manager reads the stream part by part, so the whole
        object is never held in memory. A stream that yields a different
        number of bytes than declared is rejected and the object removed.
        """
        key = generate_storage_key(name_hint)
        extra_args: dict = {}
        if content_type:
            extra_args["ContentType"] = content_type
        reader = _CountingReader(stream)
        try:
            self.client.upload_fileobj(
                reader, self.bucket_name, key, ExtraArgs=extra_args or None
            )
        except Exception as exc:
            raise ObjectStorageError("Failed to upload object") from exc

        if reader.count != size:
            logger.error(
                "object_storage_size_mismatch key=%s declared=%d streamed=%d",
                key,
                size,
                reader.count,
            )
            try:
                self.delete(key)
            except ObjectStorageError:
                logger.warning("object_storage_cleanup_failed key=%s", key)
            raise ObjectStorageError(
                f"Streamed {reader.count} bytes, declared size was {size}"
            )
        logger.info("object_storage_put key=%s size=%d", key, size)
        return key

    def get(self, key: str) -> StreamResult:
        try:
            obj = self.client.get_object(Bucket=self.bucket_name, Key=key)
        except Exception as exc:
            code = self._error_code(exc)
            if code in {"404", "NoSuchKey"}:
                raise ObjectNotFoundError(key) from exc
            raise ObjectStorageError("Failed to stream object") from exc

        body = obj["Body"]
        return StreamResult(
            chunks=iter(lambda: body.read(STREAM_CHUNK_SIZE), b""),
            content_type=obj.get("ContentType"),
            content_length=obj.get("ContentLength"),
        )

    def stat(self, key: str) -> ObjectStat:
        try:
            head = self.client.head_object(Bucket=self.bucket_name, Key=key)
        except Exception as exc:
            code = self._error_code(exc)
            if code in {"404", "NoSuchKey"}:
                raise ObjectNotFoundError(key) from exc
            raise ObjectStorageError("Failed to stat object") from exc
        return ObjectStat(
            content_type=head.get("ContentType"),
            size=int(head.get("ContentLength") or 0),
        )

    def delete(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket_name, Key=key)
        except Exception as exc:
            raise ObjectStorageError("Failed to delete object") from exc


@lru_cache(maxsize=1)
def get_s3_storage() -> S3StorageService:
    return S3StorageService(
        bucket_name=settings.s3_bucket_name,
        endpoint_url=settings.s3_endpoint_url,
        access_key=settings.s3_access_key,
        secret_key=settings.s3_secret_key,
        region=settings.s3_region,
    )


def ensure_storage_bucket() -> None:
    """Startup hook helper to guarantee bucket availability."""
    settings.validate_s3_config()
    get_s3_storage().ensure_bucket()
