"""
Chat message record exchanged with the live store and written into batch files,
plus the search filters passed to both search branches.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 string (trailing Z allowed) or datetime into an aware UTC datetime."""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value:
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    else:
        raise ValueError(f"invalid timestamp: {value!r}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """UTC ISO-8601 with trailing Z, as written into batch documents."""
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class Message:
    """A single chat message. created_at is always timezone-aware UTC."""

    id: str
    course_id: str
    tenant_id: str
    author_id: str | None
    content: str
    created_at: datetime

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        """
        Build from a live-API or batch-document dict.

        Accepts the chat API's field names too (user_id for author_id, environment_id for tenant_id).
        Raises KeyError/ValueError on missing id or created_at.
        """
        author = data.get("author_id", data.get("user_id"))
        tenant = data.get("tenant_id", data.get("environment_id"))
        return cls(
            id=str(data["id"]),
            course_id=str(data.get("course_id") or ""),
            tenant_id=str(tenant) if tenant is not None else "",
            author_id=str(author) if author is not None else None,
            content=str(data.get("content") or ""),
            created_at=parse_timestamp(data["created_at"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "course_id": self.course_id,
            "tenant_id": self.tenant_id,
            "author_id": self.author_id,
            "content": self.content,
            "created_at": format_timestamp(self.created_at),
        }


@dataclass(frozen=True)
class CourseCandidate:
    """A course with enough messages older than the cutoff to be worth archiving."""

    course_id: str
    eligible_messages: int = 0


@dataclass(frozen=True)
class SearchFilters:
    """Optional narrowing applied to both live and archived search."""

    start_date: datetime | None = None
    end_date: datetime | None = None
    author_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.start_date is not None:
            out["start_date"] = format_timestamp(self.start_date)
        if self.end_date is not None:
            out["end_date"] = format_timestamp(self.end_date)
        if self.author_id is not None:
            out["author_id"] = self.author_id
        return out

    def matches(self, message: Message) -> bool:
        if self.start_date is not None and message.created_at < self.start_date:
            return False
        if self.end_date is not None and message.created_at > self.end_date:
            return False
        if self.author_id is not None and message.author_id != self.author_id:
            return False
        return True
