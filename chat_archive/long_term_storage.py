"""
Archive object storage backend: abstract interface and implementations.

- ObjectStorage: protocol for put/get/exists/delete/list.
- InMemoryLongTermStorage: tests and local dev.
- S3CompatibleStorage: MinIO / AWS S3 / any S3-compatible (boto3).
- OssStorage: Aliyun OSS (oss2). API ref: https://help.aliyun.com/zh/oss/developer-reference/list-of-operations-by-function

Object key convention (one JSON document per batch, date-partitioned by archival day):
  {prefix}/{YYYY}/{MM}/{DD}/{course_id}/batch-{N}-{HHMMSS}.json
A nonzero suffix (batch-{N}-{HHMMSS}-{suffix}.json) disambiguates a batch written in the same
second as an existing object.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

DEFAULT_ARCHIVE_PREFIX = "chat-archive"


def batch_key(
    course_id: str,
    batch_index: int,
    archived_at: datetime,
    prefix: str = DEFAULT_ARCHIVE_PREFIX,
    suffix: int = 0,
) -> str:
    """Return object key for a batch (e.g. chat-archive/2026/01/31/c1/batch-0-101500.json)."""
    day = archived_at.strftime("%Y/%m/%d")
    stamp = archived_at.strftime("%H%M%S")
    if suffix:
        stamp = f"{stamp}-{suffix}"
    return f"{prefix.rstrip('/')}/{day}/{course_id}/batch-{batch_index}-{stamp}.json"


class ObjectStorage(Protocol):
    """Protocol for archive object storage (S3, MinIO, OSS). Failures raise; they are not returned."""

    def put_object(
        self,
        key: str,
        body: bytes | str,
        content_type: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> None:
        """Upload object. key is full path; metadata becomes user-defined object metadata."""
        ...

    def get_object(self, key: str) -> bytes | None:
        """Download object; return None if not found."""
        ...

    def object_exists(self, key: str) -> bool:
        """Return True if an object is stored under key."""
        ...

    def delete_object(self, key: str) -> None:
        """Delete object by key."""
        ...

    def list_prefix(self, prefix: str) -> list[str]:
        """List object keys under prefix."""
        ...


class InMemoryLongTermStorage:
    """
    In-memory backend for tests and local dev without cloud credentials.

    Keeps per-object metadata alongside the body; no external services.
    """

    def __init__(self) -> None:
        self._store: dict[str, bytes] = {}
        self._metadata: dict[str, dict[str, str]] = {}

    def put_object(
        self,
        key: str,
        body: bytes | str,
        content_type: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> None:
        self._store[key] = body.encode("utf-8") if isinstance(body, str) else body
        self._metadata[key] = dict(metadata or {})

    def get_object(self, key: str) -> bytes | None:
        return self._store.get(key)

    def object_exists(self, key: str) -> bool:
        return key in self._store

    def delete_object(self, key: str) -> None:
        self._store.pop(key, None)
        self._metadata.pop(key, None)

    def list_prefix(self, prefix: str) -> list[str]:
        return sorted(k for k in self._store if k.startswith(prefix))

    def get_metadata(self, key: str) -> dict[str, str] | None:
        return self._metadata.get(key)


class S3CompatibleStorage:
    """
    S3-compatible backend (MinIO, AWS S3, etc.).

    Requires: pip install boto3 (or pip install -e ".[s3]").
    """

    def __init__(
        self,
        bucket: str,
        endpoint_url: str | None = None,
        region_name: str = "us-east-1",
        access_key: str | None = None,
        secret_key: str | None = None,
        storage_class: str | None = None,
        connect_timeout: float = 10.0,
        read_timeout: float = 60.0,
    ):
        """
        Args:
            bucket: Bucket name.
            endpoint_url: Optional endpoint (e.g. http://localhost:9000 for MinIO).
            region_name: AWS region when using AWS S3.
            access_key: Access key (optional if using env/instance profile).
            secret_key: Secret key (optional if using env/instance profile).
            storage_class: Optional storage class for archive objects (e.g. STANDARD_IA).
            connect_timeout: Seconds to wait for a connection.
            read_timeout: Seconds to wait for a response; a timed-out write fails the batch attempt.
        """
        self.bucket = bucket
        self._endpoint_url = endpoint_url
        self._region_name = region_name
        self._access_key = access_key
        self._secret_key = secret_key
        self._storage_class = storage_class
        self._connect_timeout = connect_timeout
        self._read_timeout = read_timeout
        self._client = None

    def _get_client(self):
        import boto3
        from botocore.config import Config

        if self._client is None:
            kwargs = {
                "service_name": "s3",
                "region_name": self._region_name,
                "config": Config(
                    signature_version="s3v4",
                    connect_timeout=self._connect_timeout,
                    read_timeout=self._read_timeout,
                ),
            }
            if self._endpoint_url:
                kwargs["endpoint_url"] = self._endpoint_url
            if self._access_key and self._secret_key:
                kwargs["aws_access_key_id"] = self._access_key
                kwargs["aws_secret_access_key"] = self._secret_key
            self._client = boto3.client(**kwargs)
        return self._client

    def put_object(
        self,
        key: str,
        body: bytes | str,
        content_type: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> None:
        client = self._get_client()
        payload = body.encode("utf-8") if isinstance(body, str) else body
        extra = {}
        if content_type:
            extra["ContentType"] = content_type
        if metadata:
            extra["Metadata"] = metadata
        if self._storage_class:
            extra["StorageClass"] = self._storage_class
        client.put_object(Bucket=self.bucket, Key=key, Body=payload, **extra)

    def get_object(self, key: str) -> bytes | None:
        client = self._get_client()
        from botocore.exceptions import ClientError

        try:
            resp = client.get_object(Bucket=self.bucket, Key=key)
            return resp["Body"].read()
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "NoSuchKey":
                return None
            raise

    def object_exists(self, key: str) -> bool:
        client = self._get_client()
        from botocore.exceptions import ClientError

        try:
            client.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise

    def delete_object(self, key: str) -> None:
        client = self._get_client()
        client.delete_object(Bucket=self.bucket, Key=key)

    def list_prefix(self, prefix: str) -> list[str]:
        client = self._get_client()
        paginator = client.get_paginator("list_objects_v2")
        keys = []
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            for obj in page.get("Contents") or []:
                keys.append(obj["Key"])
        return keys


class OssStorage:
    """
    Aliyun OSS (Object Storage Service) backend.

    Uses oss2 SDK. Object ops: PutObject, GetObject, HeadObject, DeleteObject, ListObjects.
    Requires: pip install oss2 (or pip install -e ".[oss]").
    """

    def __init__(
        self,
        bucket: str,
        access_key_id: str,
        access_key_secret: str,
        endpoint: str,
        connect_timeout: float = 30.0,
    ):
        """
        Args:
            bucket: OSS bucket name.
            access_key_id: Aliyun AccessKey ID.
            access_key_secret: Aliyun AccessKey Secret.
            endpoint: OSS endpoint (e.g. https://oss-cn-hangzhou.aliyuncs.com).
            connect_timeout: Seconds before a request is abandoned.
        """
        self.bucket_name = bucket
        self._access_key_id = access_key_id
        self._access_key_secret = access_key_secret
        self._endpoint = endpoint.rstrip("/")
        self._connect_timeout = connect_timeout
        self._bucket = None

    def _get_bucket(self):
        import oss2

        if self._bucket is None:
            auth = oss2.Auth(self._access_key_id, self._access_key_secret)
            self._bucket = oss2.Bucket(
                auth, self._endpoint, self.bucket_name, connect_timeout=self._connect_timeout
            )
        return self._bucket

    def put_object(
        self,
        key: str,
        body: bytes | str,
        content_type: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> None:
        bucket = self._get_bucket()
        payload = body.encode("utf-8") if isinstance(body, str) else body
        headers = {}
        if content_type:
            headers["Content-Type"] = content_type
        for name, value in (metadata or {}).items():
            headers[f"x-oss-meta-{name}"] = value
        bucket.put_object(key, payload, headers=headers)

    def get_object(self, key: str) -> bytes | None:
        import oss2

        bucket = self._get_bucket()
        try:
            result = bucket.get_object(key)
            return result.read()
        except oss2.exceptions.NoSuchKey:
            return None

    def object_exists(self, key: str) -> bool:
        bucket = self._get_bucket()
        return bool(bucket.object_exists(key))

    def delete_object(self, key: str) -> None:
        bucket = self._get_bucket()
        bucket.delete_object(key)

    def list_prefix(self, prefix: str) -> list[str]:
        import oss2

        bucket = self._get_bucket()
        keys = []
        for obj in oss2.ObjectIterator(bucket, prefix=prefix):
            if not obj.is_prefix():
                keys.append(obj.key)
        return keys


def _normalize_endpoint(endpoint: str | None) -> str | None:
    """Ensure endpoint has scheme (https://). Returns None if endpoint is empty."""
    if not endpoint or not endpoint.strip():
        return None
    ep = endpoint.strip().rstrip("/")
    if not ep.startswith("http://") and not ep.startswith("https://"):
        ep = "https://" + ep
    return ep


def create_storage_backend_from_config(config: dict) -> ObjectStorage:
    """
    Create an archive storage backend from a config dict (the `storage:` section of chat_archive.yaml).

    - oss_endpoint, oss_bucket, oss_access_key_id, oss_access_key_secret -> OssStorage.
    - s3_bucket (plus optional s3_endpoint_url, s3_region, s3_access_key, s3_secret_key,
      s3_storage_class) -> S3CompatibleStorage.
    - otherwise InMemoryLongTermStorage for local dev / tests.
    """
    ep = _normalize_endpoint(config.get("oss_endpoint") or "")
    bucket = (config.get("oss_bucket") or "").strip()
    key_id = (config.get("oss_access_key_id") or "").strip()
    key_secret = (config.get("oss_access_key_secret") or "").strip()
    if ep and bucket and key_id and key_secret:
        return OssStorage(
            bucket=bucket,
            access_key_id=key_id,
            access_key_secret=key_secret,
            endpoint=ep,
        )
    s3_bucket = (config.get("s3_bucket") or "").strip()
    if s3_bucket:
        return S3CompatibleStorage(
            bucket=s3_bucket,
            endpoint_url=_normalize_endpoint(config.get("s3_endpoint_url")),
            region_name=config.get("s3_region") or "us-east-1",
            access_key=config.get("s3_access_key"),
            secret_key=config.get("s3_secret_key"),
            storage_class=config.get("s3_storage_class"),
        )
    return InMemoryLongTermStorage()
