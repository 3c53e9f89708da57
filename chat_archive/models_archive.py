"""
Archive tables: batches written to object storage and the jobs that write them.

- archive_batches: one row per durable batch file (path, checksum, covered time range).
- archival_jobs: one row per archival run for a course; status 'processing' doubles as the
  per-course claim, enforced by a partial unique index.
"""

import uuid
from datetime import datetime

from sqlalchemy import BigInteger, Index, Integer, String, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from chat_archive.base import Base, UTCDateTime, utc_now

# Job status values (archival_jobs.status)
JobStatus = type(
    "JobStatus",
    (),
    {"PROCESSING": "processing", "COMPLETED": "completed", "FAILED": "failed"},
)()

TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


class ArchiveBatch(Base):
    """
    One archived batch file in object storage.

    Immutable once written: the row is committed only after the object exists and its
    checksum verified, and it is removed only by an explicit cleanup.
    """

    __tablename__ = "archive_batches"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    course_id: Mapped[str] = mapped_column(String(64), nullable=False)
    storage_path: Mapped[str] = mapped_column(String(500), nullable=False, unique=True)
    message_count: Mapped[int] = mapped_column(Integer, nullable=False)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    batch_index: Mapped[int] = mapped_column(Integer, nullable=False)
    checksum: Mapped[str] = mapped_column(String(64), nullable=False)  # sha256 hex of message array
    start_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)  # oldest message
    end_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)  # newest message
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)

    __table_args__ = (
        Index("ix_archive_batches_course_range", "tenant_id", "course_id", "start_at", "end_at"),
        Index("ix_archive_batches_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<ArchiveBatch course={self.course_id} index={self.batch_index} path={self.storage_path}>"


class ArchivalJob(Base):
    """Single archival run for one course; progress is 0-100 and never decreases."""

    __tablename__ = "archival_jobs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    course_id: Mapped[str] = mapped_column(String(64), nullable=False)
    cutoff: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=JobStatus.PROCESSING)
    progress: Mapped[float] = mapped_column(default=0.0, nullable=False)
    messages_archived: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    messages_failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    batches_failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    size_bytes: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    error_detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index("ix_archival_jobs_course_status", "tenant_id", "course_id", "status"),
        Index("ix_archival_jobs_status_started", "status", "started_at"),
        # At most one running job per course: inserting a second 'processing' row fails.
        Index(
            "uq_archival_jobs_course_processing",
            "tenant_id",
            "course_id",
            unique=True,
            postgresql_where=text("status = 'processing'"),
            sqlite_where=text("status = 'processing'"),
        ),
    )

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None:
            return None
        end = self.completed_at or utc_now()
        return (end - self.started_at).total_seconds()

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "tenant_id": self.tenant_id,
            "course_id": self.course_id,
            "cutoff": self.cutoff.isoformat() if self.cutoff else None,
            "status": self.status,
            "progress": self.progress,
            "messages_archived": self.messages_archived,
            "messages_failed": self.messages_failed,
            "batches_failed": self.batches_failed,
            "size_bytes": self.size_bytes,
            "error_detail": self.error_detail,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
        }

    def __repr__(self) -> str:
        return f"<ArchivalJob id={self.id} course={self.course_id} status={self.status}>"
