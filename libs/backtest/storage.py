"""
Object storage access for historical market data files.

Architecture:
    - ObjectStorage protocol: the two calls the market data reader needs
      (stat before read, then a chunked byte stream)
    - S3ObjectStorage: boto3 client against AWS S3 or any S3-compatible
      store (MinIO); stat retried on transient errors with tenacity
    - LocalObjectStorage: filesystem root for development and tests

Paths handed to these backends are bucket-relative and already sanitized by
the reader; LocalObjectStorage still refuses to resolve outside its root.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from config.settings import Settings
from libs.backtest.exceptions import InvalidStoragePathError, MarketDataFileNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


@dataclass(frozen=True)
class FileStats:
    size: int


class ObjectStorage(Protocol):
    """Read-only view of the market data bucket."""

    def get_file_stats(self, path: str) -> FileStats | None:
        """Size of the object, or None when it does not exist."""
        ...

    def get_file_stream(self, path: str) -> Iterator[bytes]:
        """Yield the object's bytes in chunks."""
        ...


def _is_transient_s3_error(exception: BaseException) -> bool:
    if isinstance(exception, BotoCoreError):
        return True
    if isinstance(exception, ClientError):
        error_code = exception.response.get("Error", {}).get("Code", "")
        return error_code in {
            "SlowDown",
            "Throttling",
            "ThrottlingException",
            "RequestTimeout",
            "ServiceUnavailable",
            "InternalError",
            "500",
            "503",
        }
    return False


class S3ObjectStorage:
    """S3 / MinIO backend."""

    def __init__(self, client: Any, bucket: str, chunk_size: int = DEFAULT_CHUNK_SIZE):
        self._client = client
        self.bucket = bucket
        self.chunk_size = chunk_size

    @classmethod
    def from_settings(cls, settings: Settings) -> S3ObjectStorage:
        client_kwargs: dict[str, str] = {"region_name": settings.storage_region}
        if settings.storage_endpoint_url:
            client_kwargs["endpoint_url"] = settings.storage_endpoint_url
        access_key = settings.storage_access_key_id.get_secret_value()
        secret_key = settings.storage_secret_access_key.get_secret_value()
        if access_key and secret_key:
            client_kwargs["aws_access_key_id"] = access_key
            client_kwargs["aws_secret_access_key"] = secret_key
        return cls(boto3.client("s3", **client_kwargs), settings.storage_bucket)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        retry=retry_if_exception(_is_transient_s3_error),
        reraise=True,
    )
    def get_file_stats(self, path: str) -> FileStats | None:
        try:
            response = self._client.head_object(Bucket=self.bucket, Key=path)
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "")
            if error_code in _NOT_FOUND_CODES:
                return None
            raise
        return FileStats(size=int(response["ContentLength"]))

    def get_file_stream(self, path: str) -> Iterator[bytes]:
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=path)
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "")
            if error_code in _NOT_FOUND_CODES:
                raise MarketDataFileNotFoundError(path) from e
            raise

        body = response["Body"]
        try:
            yield from body.iter_chunks(chunk_size=self.chunk_size)
        finally:
            body.close()


class LocalObjectStorage:
    """Serves objects from a local directory."""

    def __init__(self, root: Path | str, chunk_size: int = DEFAULT_CHUNK_SIZE):
        self.root = Path(root).resolve()
        self.chunk_size = chunk_size

    def _resolve(self, path: str) -> Path:
        candidate = (self.root / path).resolve()
        if not candidate.is_relative_to(self.root):
            logger.warning(
                "Rejected object path outside storage root",
                extra={"path": path, "root": str(self.root)},
            )
            raise InvalidStoragePathError(path, "resolves outside storage root")
        return candidate

    def get_file_stats(self, path: str) -> FileStats | None:
        target = self._resolve(path)
        if not target.is_file():
            return None
        return FileStats(size=target.stat().st_size)

    def get_file_stream(self, path: str) -> Iterator[bytes]:
        target = self._resolve(path)
        if not target.is_file():
            raise MarketDataFileNotFoundError(path)
        with target.open("rb") as handle:
            while chunk := handle.read(self.chunk_size):
                yield chunk


def create_object_storage(settings: Settings) -> ObjectStorage:
    """Local directory when ``local_storage_root`` is set, otherwise S3."""
    if settings.local_storage_root:
        return LocalObjectStorage(settings.local_storage_root)
    return S3ObjectStorage.from_settings(settings)
