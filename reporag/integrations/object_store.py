"""
Scratch object storage.

Buckets are short-lived: one per ingestion run (holding the source archive)
and one per conversation (holding retrieved context and history). Two
backends share one interface:

- S3ObjectStore: S3 or any S3-compatible server (MinIO, LocalStack) via boto3
- LocalObjectStore: one directory per bucket, for development and tests
"""

import logging
import os
import shutil
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from reporag.errors import ObjectNotFoundError, PermanentError, TransientError

logger = logging.getLogger(__name__)


class ObjectStore(ABC):
    """Bucket/key blob storage used for per-run and per-conversation scratch data."""

    @abstractmethod
    def create_bucket(self, bucket: str) -> None:
        """Create a bucket. Creating a bucket that already exists is a no-op."""

    @abstractmethod
    def bucket_exists(self, bucket: str) -> bool:
        ...

    @abstractmethod
    def put(self, bucket: str, key: str, data: bytes) -> None:
        ...

    @abstractmethod
    def get(self, bucket: str, key: str) -> bytes:
        """Read an object. Raises ObjectNotFoundError if it does not exist."""

    @abstractmethod
    def delete_object(self, bucket: str, key: str) -> None:
        """Delete an object. Missing objects and buckets are ignored."""

    @abstractmethod
    def delete_bucket(self, bucket: str) -> None:
        """Delete a bucket and anything left in it. Missing buckets are ignored."""


_TRANSIENT_S3_CODES = {
    "SlowDown",
    "InternalError",
    "ServiceUnavailable",
    "RequestTimeout",
    "RequestTimeTooSkewed",
    "Throttling",
    "ThrottlingException",
}
_MISSING_S3_CODES = {"NoSuchBucket", "NoSuchKey", "404", "NotFound"}


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


def _status_code(error: ClientError) -> int:
    return int(error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0) or 0)


@contextmanager
def _s3_errors(operation: str) -> Iterator[None]:
    """Map botocore exceptions onto the transient/permanent taxonomy."""
    try:
        yield
    except ClientError as e:
        code = _error_code(e)
        if code in _TRANSIENT_S3_CODES or _status_code(e) >= 500:
            raise TransientError(f"S3 {operation} failed: {code}") from e
        if code in _MISSING_S3_CODES:
            raise ObjectNotFoundError(f"S3 {operation} failed: {code}") from e
        raise PermanentError(f"S3 {operation} failed: {code or e}") from e
    except (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError, ConnectionClosedError) as e:
        raise TransientError(f"S3 {operation} failed: {e}") from e
    except BotoCoreError as e:
        raise PermanentError(f"S3 {operation} failed: {e}") from e


class S3ObjectStore(ObjectStore):
    """
    S3-backed scratch storage.

    Retries are left to the saga's step policy, so the client itself makes a
    single attempt per call.
    """

    def __init__(
        self,
        endpoint_url: Optional[str] = None,
        region: str = "us-east-1",
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        client=None,
    ):
        self.region = region
        self.client = client or boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            region_name=region,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            config=BotoConfig(
                s3={"addressing_style": "path"},
                connect_timeout=10,
                read_timeout=60,
                retries={"max_attempts": 1, "mode": "standard"},
            ),
        )

    def create_bucket(self, bucket: str) -> None:
        kwargs = {"Bucket": bucket}
        if self.region and self.region != "us-east-1":
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": self.region}
        with _s3_errors(f"create_bucket({bucket})"):
            try:
                self.client.create_bucket(**kwargs)
            except ClientError as e:
                if _error_code(e) != "BucketAlreadyOwnedByYou":
                    raise
                logger.debug(f"Bucket {bucket} already exists")

    def bucket_exists(self, bucket: str) -> bool:
        try:
            with _s3_errors(f"head_bucket({bucket})"):
                self.client.head_bucket(Bucket=bucket)
        except ObjectNotFoundError:
            return False
        return True

    def put(self, bucket: str, key: str, data: bytes) -> None:
        with _s3_errors(f"put_object({bucket}/{key})"):
            self.client.put_object(Bucket=bucket, Key=key, Body=data)

    def get(self, bucket: str, key: str) -> bytes:
        with _s3_errors(f"get_object({bucket}/{key})"):
            response = self.client.get_object(Bucket=bucket, Key=key)
            return response["Body"].read()

    def delete_object(self, bucket: str, key: str) -> None:
        try:
            with _s3_errors(f"delete_object({bucket}/{key})"):
                self.client.delete_object(Bucket=bucket, Key=key)
        except ObjectNotFoundError:
            logger.debug(f"Object {bucket}/{key} already gone")

    def delete_bucket(self, bucket: str) -> None:
        try:
            with _s3_errors(f"delete_bucket({bucket})"):
                paginator = self.client.get_paginator("list_objects_v2")
                for page in paginator.paginate(Bucket=bucket):
                    contents = page.get("Contents") or []
                    if contents:
                        self.client.delete_objects(
                            Bucket=bucket,
                            Delete={"Objects": [{"Key": obj["Key"]} for obj in contents]},
                        )
                self.client.delete_bucket(Bucket=bucket)
        except ObjectNotFoundError:
            logger.debug(f"Bucket {bucket} already gone")


class LocalObjectStore(ObjectStore):
    """Filesystem-backed scratch storage: one directory per bucket under root."""

    def __init__(self, root: str):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _bucket_path(self, bucket: str) -> Path:
        if not bucket or "/" in bucket or "\\" in bucket or bucket in (".", ".."):
            raise PermanentError(f"Invalid bucket name: {bucket!r}")
        return self.root / bucket

    def _object_path(self, bucket: str, key: str) -> Path:
        parts = key.split("/")
        if not key or key.startswith("/") or ".." in parts:
            raise PermanentError(f"Invalid object key: {key!r}")
        return self._bucket_path(bucket).joinpath(*parts)

    def create_bucket(self, bucket: str) -> None:
        self._bucket_path(bucket).mkdir(parents=True, exist_ok=True)

    def bucket_exists(self, bucket: str) -> bool:
        return self._bucket_path(bucket).is_dir()

    def list_buckets(self) -> List[str]:
        return sorted(p.name for p in self.root.iterdir() if p.is_dir())

    def put(self, bucket: str, key: str, data: bytes) -> None:
        if not self.bucket_exists(bucket):
            raise ObjectNotFoundError(f"Bucket {bucket} does not exist")
        path = self._object_path(bucket, key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(path.name + ".tmp")
        tmp_path.write_bytes(data)
        os.replace(tmp_path, path)

    def get(self, bucket: str, key: str) -> bytes:
        path = self._object_path(bucket, key)
        if not path.is_file():
            raise ObjectNotFoundError(f"Object {bucket}/{key} does not exist")
        return path.read_bytes()

    def delete_object(self, bucket: str, key: str) -> None:
        path = self._object_path(bucket, key)
        try:
            path.unlink()
        except FileNotFoundError:
            logger.debug(f"Object {bucket}/{key} already gone")

    def delete_bucket(self, bucket: str) -> None:
        path = self._bucket_path(bucket)
        if path.is_dir():
            shutil.rmtree(path)


def create_object_store(settings) -> ObjectStore:
    """
    Create the scratch store for the configured backend.

    Supports:
    - local: directories under scratch_directory (default)
    - s3: S3 or an S3-compatible endpoint
    """
    if settings.object_store_backend == "s3":
        return S3ObjectStore(
            endpoint_url=settings.s3_endpoint_url,
            region=settings.s3_region,
            access_key_id=settings.aws_access_key_id,
            secret_access_key=settings.aws_secret_access_key,
        )
    if settings.object_store_backend == "local":
        return LocalObjectStore(os.path.join(settings.scratch_directory, "buckets"))
    raise ValueError(f"Unknown object store backend: {settings.object_store_backend}")
