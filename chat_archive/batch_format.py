"""
Batch document format and integrity checks.

A batch file is one JSON document:
  {"course_id", "tenant_id", "batch_index", "archived_at", "message_count",
   "archival_version", "checksum", "messages": [...]}

checksum is sha256 over the canonical JSON of the messages array (sorted keys, compact
separators, UTF-8). It is computed before writing and recomputed identically on every read.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from chat_archive.errors import ArchiveFormatError, ChecksumMismatchError
from chat_archive.messages import Message, format_timestamp

ARCHIVAL_VERSION = "1.0"
CONTENT_TYPE = "application/json"


def canonical_messages(messages: list[dict[str, Any]]) -> bytes:
    """Encode the messages array exactly as it is hashed."""
    return json.dumps(messages, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def compute_checksum(messages: list[dict[str, Any]]) -> str:
    return hashlib.sha256(canonical_messages(messages)).hexdigest()


@dataclass(frozen=True)
class BatchDocument:
    """Decoded batch file."""

    course_id: str
    tenant_id: str
    batch_index: int
    archived_at: str
    checksum: str
    messages: list[dict[str, Any]]

    def to_messages(self) -> list[Message]:
        return [Message.from_dict(m) for m in self.messages]

    def find(self, message_id: str) -> Message | None:
        for raw in self.messages:
            if str(raw.get("id")) == message_id:
                return Message.from_dict(raw)
        return None


def serialize_batch(
    tenant_id: str,
    course_id: str,
    batch_index: int,
    messages: list[Message],
    archived_at: datetime,
) -> tuple[bytes, str]:
    """
    Encode a batch into its stored payload.

    Returns:
        (payload bytes, checksum of the messages array).
    """
    items = [m.to_dict() for m in messages]
    checksum = compute_checksum(items)
    document = {
        "course_id": course_id,
        "tenant_id": tenant_id,
        "batch_index": batch_index,
        "archived_at": format_timestamp(archived_at),
        "message_count": len(items),
        "archival_version": ARCHIVAL_VERSION,
        "checksum": checksum,
        "messages": items,
    }
    return json.dumps(document, ensure_ascii=False).encode("utf-8"), checksum


def parse_batch(raw: bytes, path: str = "<batch>") -> BatchDocument:
    """Decode payload bytes. Raises ArchiveFormatError if it is not a batch document."""
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ArchiveFormatError(f"{path}: not a JSON batch document: {e}") from e
    if not isinstance(data, dict) or not isinstance(data.get("messages"), list):
        raise ArchiveFormatError(f"{path}: missing messages array")
    try:
        batch_index = int(data.get("batch_index") or 0)
    except (TypeError, ValueError) as e:
        raise ArchiveFormatError(f"{path}: invalid batch_index: {e}") from e
    return BatchDocument(
        course_id=str(data.get("course_id") or ""),
        tenant_id=str(data.get("tenant_id") or ""),
        batch_index=batch_index,
        archived_at=str(data.get("archived_at") or ""),
        checksum=str(data.get("checksum") or ""),
        messages=data["messages"],
    )


def verify_batch(raw: bytes, expected_checksum: str, path: str = "<batch>") -> BatchDocument:
    """
    Decode payload and check its messages against the recorded checksum.

    Raises:
        ArchiveFormatError: payload is not a batch document.
        ChecksumMismatchError: recomputed checksum differs from expected_checksum.
    """
    document = parse_batch(raw, path)
    computed = compute_checksum(document.messages)
    if computed != expected_checksum:
        raise ChecksumMismatchError(path, expected_checksum, computed)
    return document
