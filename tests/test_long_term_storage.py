"""Tests for archive storage backends and key helpers."""

import os
import uuid
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from chat_archive.long_term_storage import (
    InMemoryLongTermStorage,
    OssStorage,
    S3CompatibleStorage,
    batch_key,
    create_storage_backend_from_config,
)

ARCHIVED_AT = datetime(2026, 1, 31, 10, 15, 0, tzinfo=timezone.utc)


def test_batch_key() -> None:
    assert batch_key("c1", 0, ARCHIVED_AT) == "chat-archive/2026/01/31/c1/batch-0-101500.json"
    assert batch_key("course-9", 12, ARCHIVED_AT, prefix="tenant-a/") == "tenant-a/2026/01/31/course-9/batch-12-101500.json"
    assert batch_key("c1", 0, ARCHIVED_AT, suffix=2) == "chat-archive/2026/01/31/c1/batch-0-101500-2.json"


def test_in_memory_put_get() -> None:
    backend = InMemoryLongTermStorage()
    backend.put_object("a/b.json", '{"messages": []}', content_type="application/json", metadata={"checksum": "x"})
    assert backend.get_object("a/b.json") == b'{"messages": []}'
    assert backend.get_metadata("a/b.json") == {"checksum": "x"}


def test_in_memory_get_missing() -> None:
    backend = InMemoryLongTermStorage()
    assert backend.get_object("missing") is None
    assert backend.object_exists("missing") is False


def test_in_memory_delete() -> None:
    backend = InMemoryLongTermStorage()
    backend.put_object("k", "v")
    assert backend.object_exists("k")
    backend.delete_object("k")
    assert backend.get_object("k") is None
    assert backend.get_metadata("k") is None


def test_in_memory_list_prefix() -> None:
    backend = InMemoryLongTermStorage()
    backend.put_object("chat-archive/2026/01/31/c2/batch-0-101500.json", "{}")
    backend.put_object("chat-archive/2026/01/31/c1/batch-0-101500.json", "{}")
    backend.put_object("other/x.json", "{}")
    assert backend.list_prefix("chat-archive/") == [
        "chat-archive/2026/01/31/c1/batch-0-101500.json",
        "chat-archive/2026/01/31/c2/batch-0-101500.json",
    ]


def _make_oss_mock_bucket():
    """Build mock oss2 module and bucket for OssStorage tests (no real Aliyun credentials)."""
    mock_bucket = MagicMock()
    mock_oss2 = MagicMock()
    mock_oss2.Auth.return_value = None
    mock_oss2.Bucket.return_value = mock_bucket
    mock_oss2.exceptions.NoSuchKey = type("NoSuchKey", (Exception,), {})
    return mock_oss2, mock_bucket


def test_oss_storage_put_object_with_metadata() -> None:
    mock_oss2, mock_bucket = _make_oss_mock_bucket()
    with patch.dict("sys.modules", {"oss2": mock_oss2}):
        backend = OssStorage("b", "ak", "sk", "https://oss-cn-hangzhou.aliyuncs.com")
        backend.put_object("k.json", '{"a":1}', content_type="application/json", metadata={"checksum": "abc"})
    mock_bucket.put_object.assert_called_once_with(
        "k.json",
        b'{"a":1}',
        headers={"Content-Type": "application/json", "x-oss-meta-checksum": "abc"},
    )
    assert mock_oss2.Bucket.call_args[1]["connect_timeout"] == 30.0


def test_oss_storage_put_object_bytes() -> None:
    mock_oss2, mock_bucket = _make_oss_mock_bucket()
    with patch.dict("sys.modules", {"oss2": mock_oss2}):
        backend = OssStorage("b", "ak", "sk", "https://oss-cn-hangzhou.aliyuncs.com")
        backend.put_object("k", b"binary")
    mock_bucket.put_object.assert_called_once_with("k", b"binary", headers={})


def test_oss_storage_get_object_found() -> None:
    mock_oss2, mock_bucket = _make_oss_mock_bucket()
    mock_result = MagicMock()
    mock_result.read.return_value = b'{"messages":[]}'
    mock_bucket.get_object.return_value = mock_result
    with patch.dict("sys.modules", {"oss2": mock_oss2}):
        backend = OssStorage("b", "ak", "sk", "https://oss-cn-hangzhou.aliyuncs.com")
        out = backend.get_object("k.json")
    assert out == b'{"messages":[]}'
    mock_bucket.get_object.assert_called_once_with("k.json")


def test_oss_storage_get_object_not_found() -> None:
    mock_oss2, mock_bucket = _make_oss_mock_bucket()
    mock_bucket.get_object.side_effect = mock_oss2.exceptions.NoSuchKey()
    with patch.dict("sys.modules", {"oss2": mock_oss2}):
        backend = OssStorage("b", "ak", "sk", "https://oss-cn-hangzhou.aliyuncs.com")
        assert backend.get_object("missing.json") is None


def test_oss_storage_object_exists_and_delete() -> None:
    mock_oss2, mock_bucket = _make_oss_mock_bucket()
    mock_bucket.object_exists.return_value = True
    with patch.dict("sys.modules", {"oss2": mock_oss2}):
        backend = OssStorage("b", "ak", "sk", "https://oss-cn-hangzhou.aliyuncs.com")
        assert backend.object_exists("k.json") is True
        backend.delete_object("k.json")
    mock_bucket.object_exists.assert_called_once_with("k.json")
    mock_bucket.delete_object.assert_called_once_with("k.json")


def test_oss_storage_list_prefix() -> None:
    """list_prefix returns object keys under prefix (excludes directory placeholders)."""
    mock_oss2, mock_bucket = _make_oss_mock_bucket()
    obj1 = MagicMock()
    obj1.key = "chat-archive/c1/batch-0.json"
    obj1.is_prefix.return_value = False
    placeholder = MagicMock()
    placeholder.key = "chat-archive/c1/"
    placeholder.is_prefix.return_value = True
    mock_oss2.ObjectIterator.return_value = iter([obj1, placeholder])
    with patch.dict("sys.modules", {"oss2": mock_oss2}):
        backend = OssStorage("b", "ak", "sk", "https://oss-cn-hangzhou.aliyuncs.com")
        keys = backend.list_prefix("chat-archive/")
    assert keys == ["chat-archive/c1/batch-0.json"]
    mock_oss2.ObjectIterator.assert_called_once_with(mock_bucket, prefix="chat-archive/")


class _ClientError(Exception):
    def __init__(self, code):
        super().__init__(code)
        self.response = {"Error": {"Code": code}}


def _make_boto_mocks():
    """Mock boto3 / botocore modules for S3CompatibleStorage tests."""
    client = MagicMock()
    boto3 = MagicMock()
    boto3.client.return_value = client
    botocore = MagicMock()
    botocore_config = MagicMock()
    botocore_exceptions = MagicMock()
    botocore_exceptions.ClientError = _ClientError
    modules = {
        "boto3": boto3,
        "botocore": botocore,
        "botocore.config": botocore_config,
        "botocore.exceptions": botocore_exceptions,
    }
    return modules, boto3, botocore_config, client


def test_s3_storage_put_object_passes_metadata_and_storage_class() -> None:
    modules, boto3, botocore_config, client = _make_boto_mocks()
    with patch.dict("sys.modules", modules):
        backend = S3CompatibleStorage("bucket", endpoint_url="http://localhost:9000", storage_class="STANDARD_IA")
        backend.put_object("k.json", "{}", content_type="application/json", metadata={"checksum": "abc"})
    client.put_object.assert_called_once_with(
        Bucket="bucket",
        Key="k.json",
        Body=b"{}",
        ContentType="application/json",
        Metadata={"checksum": "abc"},
        StorageClass="STANDARD_IA",
    )
    assert boto3.client.call_args[1]["endpoint_url"] == "http://localhost:9000"
    config_kwargs = botocore_config.Config.call_args[1]
    assert config_kwargs["connect_timeout"] == 10.0
    assert config_kwargs["read_timeout"] == 60.0


def test_s3_storage_get_object_missing_returns_none() -> None:
    modules, _, _, client = _make_boto_mocks()
    client.get_object.side_effect = _ClientError("NoSuchKey")
    with patch.dict("sys.modules", modules):
        backend = S3CompatibleStorage("bucket")
        assert backend.get_object("missing") is None


def test_s3_storage_get_object_other_errors_raise() -> None:
    modules, _, _, client = _make_boto_mocks()
    client.get_object.side_effect = _ClientError("AccessDenied")
    with patch.dict("sys.modules", modules):
        backend = S3CompatibleStorage("bucket")
        with pytest.raises(_ClientError):
            backend.get_object("k")


def test_s3_storage_object_exists() -> None:
    modules, _, _, client = _make_boto_mocks()
    with patch.dict("sys.modules", modules):
        backend = S3CompatibleStorage("bucket")
        assert backend.object_exists("k") is True
        client.head_object.side_effect = _ClientError("404")
        assert backend.object_exists("k") is False
    client.head_object.assert_called_with(Bucket="bucket", Key="k")


def test_s3_storage_list_prefix_paginates() -> None:
    modules, _, _, client = _make_boto_mocks()
    paginator = MagicMock()
    paginator.paginate.return_value = [{"Contents": [{"Key": "p/a"}, {"Key": "p/b"}]}, {}]
    client.get_paginator.return_value = paginator
    with patch.dict("sys.modules", modules):
        backend = S3CompatibleStorage("bucket")
        assert backend.list_prefix("p/") == ["p/a", "p/b"]
    paginator.paginate.assert_called_once_with(Bucket="bucket", Prefix="p/")


def test_create_backend_from_config() -> None:
    oss = create_storage_backend_from_config(
        {
            "oss_endpoint": "oss-cn-hangzhou.aliyuncs.com",
            "oss_bucket": "b",
            "oss_access_key_id": "ak",
            "oss_access_key_secret": "sk",
        }
    )
    assert isinstance(oss, OssStorage)
    assert oss._endpoint == "https://oss-cn-hangzhou.aliyuncs.com"

    s3 = create_storage_backend_from_config({"s3_bucket": "archive", "s3_endpoint_url": "localhost:9000"})
    assert isinstance(s3, S3CompatibleStorage)
    assert s3.bucket == "archive"

    assert isinstance(create_storage_backend_from_config({}), InMemoryLongTermStorage)
    assert isinstance(create_storage_backend_from_config({"oss_bucket": "b"}), InMemoryLongTermStorage)


def _get_real_oss_config():
    """Read OSS config from env; return (endpoint, access_key_id, access_key_secret, bucket) or None if missing."""
    endpoint = os.environ.get("ALIYUN_OSS_ENDPOINT") or os.environ.get("OSS_ENDPOINT")
    access_key_id = os.environ.get("ALIYUN_OSS_ACCESS_KEY_ID") or os.environ.get("OSS_ACCESS_KEY_ID")
    access_key_secret = os.environ.get("ALIYUN_OSS_ACCESS_KEY_SECRET") or os.environ.get("OSS_ACCESS_KEY_SECRET")
    bucket = os.environ.get("ALIYUN_OSS_BUCKET") or os.environ.get("OSS_BUCKET")
    if not all([endpoint, access_key_id, access_key_secret, bucket]):
        return None
    return (endpoint.strip("/"), access_key_id, access_key_secret, bucket)


@pytest.mark.real_oss
def test_oss_storage_real_api_batch_round_trip() -> None:
    """Real Aliyun OSS API: put -> exists -> get -> list -> delete (requires oss2 + env credentials)."""
    pytest.importorskip("oss2", reason="oss2 not installed; pip install -e '.[oss]'")
    cfg = _get_real_oss_config()
    if cfg is None:
        pytest.skip(
            "Real OSS credentials not set. Set ALIYUN_OSS_ACCESS_KEY_ID, ALIYUN_OSS_ACCESS_KEY_SECRET, "
            "ALIYUN_OSS_ENDPOINT (e.g. https://oss-cn-hangzhou.aliyuncs.com), ALIYUN_OSS_BUCKET"
        )

    endpoint, access_key_id, access_key_secret, bucket = cfg
    backend = OssStorage(bucket, access_key_id, access_key_secret, endpoint)

    prefix = f"chat_archive_test/{uuid.uuid4().hex}"
    key = batch_key("c1", 0, ARCHIVED_AT, prefix=prefix)
    body = '{"messages": []}'

    backend.put_object(key, body, content_type="application/json", metadata={"checksum": "0" * 64})
    assert backend.object_exists(key)
    assert backend.get_object(key).decode("utf-8") == body
    assert backend.list_prefix(prefix) == [key]

    backend.delete_object(key)
    assert backend.get_object(key) is None
    assert backend.list_prefix(prefix) == []
