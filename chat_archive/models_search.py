"""Search tables: per-message index rows (live or archived) and the search log used for analytics."""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, Float, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from chat_archive.base import Base, UTCDateTime, utc_now


class SearchIndexEntry(Base):
    """
    One indexed message. archived=True means the full message lives in an ArchiveBatch;
    otherwise content here is the (normalized) live message text.
    """

    __tablename__ = "chat_search_index"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    message_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    course_id: Mapped[str] = mapped_column(String(64), nullable=False)
    author_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    message_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    indexed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)

    __table_args__ = (
        Index("ix_search_course_date", "tenant_id", "course_id", "message_at"),
        Index("ix_search_author_date", "author_id", "message_at"),
        Index("ix_search_archived_indexed", "archived", "indexed_at"),
    )

    def __repr__(self) -> str:
        return f"<SearchIndexEntry message={self.message_id} archived={self.archived}>"


class SearchLog(Base):
    """A single executed search; feeds analytics and popular-term suggestions."""

    __tablename__ = "search_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    course_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    query: Mapped[str] = mapped_column(String(255), nullable=False)
    result_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    response_time_ms: Mapped[float | None] = mapped_column(Float, nullable=True)
    searched_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)

    __table_args__ = (
        Index("ix_search_logs_course_date", "tenant_id", "course_id", "searched_at"),
        Index("ix_search_logs_query_date", "query", "searched_at"),
    )
