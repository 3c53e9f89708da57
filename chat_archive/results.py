"""Typed outcomes of archival, indexing, and search operations."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from chat_archive.messages import Message


@dataclass
class BatchResult:
    """Outcome of one batch's write-verify-record sequence."""

    success: bool
    batch_index: int
    messages_processed: int
    size_bytes: int = 0
    storage_path: str | None = None
    attempts: int = 0
    error: str | None = None


@dataclass
class CourseArchivalResult:
    """Outcome of archiving one course."""

    tenant_id: str
    course_id: str
    status: str
    job_id: str | None = None
    processed: int = 0
    archived: int = 0
    failed: int = 0
    size_bytes: int = 0
    deleted_from_live: int = 0
    batches: list[BatchResult] = field(default_factory=list)
    error: str | None = None

    @property
    def failed_batches(self) -> list[BatchResult]:
        return [b for b in self.batches if not b.success]


@dataclass
class ArchivalRunStats:
    """Totals for one archival run over all eligible courses of a tenant."""

    tenant_id: str
    cutoff: datetime
    started_at: datetime
    finished_at: datetime | None = None
    dry_run: bool = False
    courses: list[CourseArchivalResult] = field(default_factory=list)
    skipped_courses: list[str] = field(default_factory=list)
    planned: dict[str, int] = field(default_factory=dict)  # dry run: course_id -> eligible messages
    error: str | None = None

    @property
    def courses_processed(self) -> int:
        return len(self.courses)

    @property
    def total_processed(self) -> int:
        return sum(c.processed for c in self.courses)

    @property
    def archived_messages(self) -> int:
        return sum(c.archived for c in self.courses)

    @property
    def failed_messages(self) -> int:
        return sum(c.failed for c in self.courses)

    @property
    def size_bytes(self) -> int:
        return sum(c.size_bytes for c in self.courses)


@dataclass
class IndexBuildStats:
    """Counts from a full per-course index rebuild."""

    tenant_id: str
    course_id: str
    live_indexed: int = 0
    archived_indexed: int = 0
    content_size_bytes: int = 0
    skipped_batches: int = 0
    duration_seconds: float = 0.0

    @property
    def total_indexed(self) -> int:
        return self.live_indexed + self.archived_indexed


@dataclass(frozen=True)
class SearchHit:
    """A message in a search result, with where it came from and its score."""

    message: Message
    archived: bool
    score: float
    source: str  # "live" | "index" | "archive"
    archive_path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out = self.message.to_dict()
        out.update(
            {
                "archived": self.archived,
                "search_relevance": self.score,
                "source": self.source,
                "archive_path": self.archive_path,
            }
        )
        return out


@dataclass(frozen=True)
class SearchMetadata:
    query: str
    tenant_id: str
    course_id: str | None
    filters: dict[str, Any]
    searched_at: str
    took_ms: float
    live_count: int
    archived_count: int
    total_results: int
    cache_hit: bool = False
    live_failed: bool = False
    archived_failed: bool = False
    error: bool = False
    integrity_failures: int = 0


@dataclass(frozen=True)
class SearchResponse:
    results: list[SearchHit]
    metadata: SearchMetadata

    def to_dict(self) -> dict[str, Any]:
        return {
            "results": [hit.to_dict() for hit in self.results],
            "metadata": asdict(self.metadata),
        }
