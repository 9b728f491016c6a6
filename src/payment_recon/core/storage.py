from __future__ import annotations

import os
import time
from dataclasses import dataclass
from pathlib import Path

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from payment_recon.core.config import settings
from payment_recon.core.logging import get_logger, log_event, log_exception, monotonic_ms

logger = get_logger(__name__)

_RETRYABLE_S3_CODES = {
    "RequestTimeout",
    "Throttling",
    "ThrottlingException",
    "SlowDown",
    "InternalError",
    "ServiceUnavailable",
}


class StorageError(RuntimeError):
    pass


@dataclass(frozen=True)
class StoredObject:
    key: str
    byte_size: int
    content_type: str | None = None


class ObjectStorage:
    backend = "abstract"

    def put(self, *, key: str, body: bytes, content_type: str | None = None) -> StoredObject:
        raise NotImplementedError  # pragma: no cover

    def get(self, *, key: str) -> bytes:
        raise NotImplementedError  # pragma: no cover


class LocalObjectStorage(ObjectStorage):
    backend = "local"

    def __init__(self, root: Path):
        self._root = root
        self._root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self._root / key).resolve()
        if self._root.resolve() not in path.parents:
            raise StorageError(f"Key escapes storage root: {key}")
        return path

    def put(self, *, key: str, body: bytes, content_type: str | None = None) -> StoredObject:
        start = time.monotonic()
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(body)
        except OSError as e:
            log_exception(logger, "storage.put.failure", backend=self.backend, storage_key=key)
            raise StorageError(f"Could not write {key}") from e
        log_event(
            logger,
            "storage.put.success",
            backend=self.backend,
            storage_key=key,
            byte_size=len(body),
            duration_ms=monotonic_ms(start),
        )
        return StoredObject(key=key, byte_size=len(body), content_type=content_type)

    def get(self, *, key: str) -> bytes:
        path = self._path(key)
        if not path.exists():
            log_event(logger, "storage.get.missing", backend=self.backend, storage_key=key)
            raise StorageError(f"Object not found: {key}")
        try:
            return path.read_bytes()
        except OSError as e:
            log_exception(logger, "storage.get.failure", backend=self.backend, storage_key=key)
            raise StorageError(f"Could not read {key}") from e


class S3ObjectStorage(ObjectStorage):
    backend = "s3"
    max_attempts = 3

    def __init__(self) -> None:
        region = settings.s3_region
        if not region or region.lower() == "auto":
            region = "us-east-1"
        session = boto3.session.Session(
            aws_access_key_id=settings.s3_access_key_id,
            aws_secret_access_key=settings.s3_secret_access_key,
            region_name=region,
        )
        config = Config(
            s3={"addressing_style": "virtual"},
            retries={"max_attempts": 1, "mode": "standard"},
            connect_timeout=10,
            read_timeout=30,
        )
        self._client = session.client(
            "s3", endpoint_url=settings.s3_endpoint_url or None, config=config
        )
        self._bucket = settings.s3_bucket

    @staticmethod
    def _is_retryable(error: Exception) -> bool:
        if isinstance(error, ClientError):
            return (error.response.get("Error") or {}).get("Code") in _RETRYABLE_S3_CODES
        return isinstance(error, BotoCoreError)

    def put(self, *, key: str, body: bytes, content_type: str | None = None) -> StoredObject:
        start = time.monotonic()
        extra = {"ContentType": content_type} if content_type else {}
        for attempt in range(1, self.max_attempts + 1):
            try:
                self._client.put_object(Bucket=self._bucket, Key=key, Body=body, **extra)
                break
            except (BotoCoreError, ClientError) as e:
                if attempt < self.max_attempts and self._is_retryable(e):
                    delay_s = 0.25 * (2 ** (attempt - 1))
                    log_event(
                        logger,
                        "storage.put.retry",
                        backend=self.backend,
                        storage_key=key,
                        attempt=attempt,
                        delay_s=delay_s,
                        error_type=type(e).__name__,
                    )
                    time.sleep(delay_s)
                    continue
                log_exception(
                    logger, "storage.put.failure", backend=self.backend, storage_key=key
                )
                raise StorageError(f"Could not write {key}") from e
        log_event(
            logger,
            "storage.put.success",
            backend=self.backend,
            storage_key=key,
            byte_size=len(body),
            duration_ms=monotonic_ms(start),
        )
        return StoredObject(key=key, byte_size=len(body), content_type=content_type)

    def get(self, *, key: str) -> bytes:
        try:
            resp = self._client.get_object(Bucket=self._bucket, Key=key)
            return resp["Body"].read()
        except (BotoCoreError, ClientError) as e:
            log_exception(logger, "storage.get.failure", backend=self.backend, storage_key=key)
            raise StorageError(f"Object not found: {key}") from e


_storage: ObjectStorage | None = None


def get_storage() -> ObjectStorage:
    global _storage  # noqa: PLW0603
    if _storage is not None:
        return _storage

    if settings.storage_backend == "s3":
        _storage = S3ObjectStorage()
    else:
        root = settings.local_storage_path
        if not root.is_absolute():
            root = Path(os.getcwd()) / root
        _storage = LocalObjectStorage(root)
    return _storage
