"""Tests for chat_archive.batch_format (document layout and checksum verification)."""

import json

import pytest

from chat_archive.batch_format import (
    compute_checksum,
    parse_batch,
    serialize_batch,
    verify_batch,
)
from chat_archive.errors import ArchiveFormatError, ChecksumMismatchError

from tests.conftest import NOW, make_messages


def test_serialized_document_fields():
    messages = make_messages(3)
    payload, checksum = serialize_batch("t1", "c1", 4, messages, NOW)

    document = json.loads(payload)
    assert document["course_id"] == "c1"
    assert document["tenant_id"] == "t1"
    assert document["batch_index"] == 4
    assert document["archived_at"] == "2026-10-19T12:00:00Z"
    assert document["message_count"] == 3
    assert document["archival_version"] == "1.0"
    assert document["checksum"] == checksum
    assert [m["id"] for m in document["messages"]] == ["m00001", "m00002", "m00003"]
    assert document["messages"][0]["created_at"].endswith("Z")


def test_checksum_ignores_key_order():
    a = [{"id": "1", "content": "hi"}]
    b = [{"content": "hi", "id": "1"}]
    assert compute_checksum(a) == compute_checksum(b)
    assert len(compute_checksum(a)) == 64


def test_checksum_covers_non_ascii_content():
    assert compute_checksum([{"content": "über"}]) != compute_checksum([{"content": "uber"}])


def test_verify_batch_accepts_untouched_payload():
    messages = make_messages(5)
    payload, checksum = serialize_batch("t1", "c1", 0, messages, NOW)

    document = verify_batch(payload, checksum, "p")

    assert document.to_messages() == messages
    assert document.find("m00003") == messages[2]
    assert document.find("nope") is None


def test_verify_batch_detects_tampering():
    payload, checksum = serialize_batch("t1", "c1", 0, make_messages(5), NOW)
    tampered = payload.replace(b"number 3", b"number 9")

    with pytest.raises(ChecksumMismatchError) as excinfo:
        verify_batch(tampered, checksum, "chat-archive/x.json")
    assert excinfo.value.path == "chat-archive/x.json"
    assert excinfo.value.expected == checksum


@pytest.mark.parametrize("raw", [b"not json", b"[]", b'{"messages": "x"}', b"\xff\xfe"])
def test_parse_batch_rejects_non_documents(raw):
    with pytest.raises(ArchiveFormatError):
        parse_batch(raw, "p")


@pytest.mark.parametrize("batch_index", ["x", [1], {"n": 1}])
def test_corrupted_header_is_a_format_error(batch_index):
    payload, checksum = serialize_batch("t1", "c1", 0, make_messages(2), NOW)
    document = json.loads(payload)
    document["batch_index"] = batch_index

    with pytest.raises(ArchiveFormatError, match="batch_index"):
        verify_batch(json.dumps(document).encode(), checksum, "p")
