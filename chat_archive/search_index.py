"""
Search index maintenance shared by the archival and search engines.

All mutations of a course's index rows (full rebuild, incremental indexing, flipping rows to
archived when their batch is recorded) run under that course's lock, so a rebuild's delete-all
never interleaves with concurrent upserts. The lock is per process; engines that must
coordinate share one SearchIndex instance.
"""

from __future__ import annotations

import logging
import re
import threading
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime
from typing import Iterable, Iterator

from sqlalchemy import case, delete, func, or_, select
from sqlalchemy.orm import Session

from chat_archive.base import utc_now
from chat_archive.messages import Message, SearchFilters
from chat_archive.models_search import SearchIndexEntry

logger = logging.getLogger(__name__)

_TAG_RE = re.compile(r"<[^>]+>")
_SPACE_RE = re.compile(r"\s+")

# keeps IN (...) lists under SQLite's bound-parameter limit
_IN_CHUNK = 500


def normalize_content(content: str) -> str:
    """Strip HTML tags and collapse whitespace."""
    return _SPACE_RE.sub(" ", _TAG_RE.sub(" ", content or "")).strip()


class SearchIndex:
    """Per-course locking plus the index row operations."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[tuple[str, str], threading.RLock] = defaultdict(threading.RLock)

    @contextmanager
    def course_lock(self, tenant_id: str, course_id: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks[(tenant_id, course_id)]
        with lock:
            yield

    def upsert_messages(
        self,
        session: Session,
        tenant_id: str,
        messages: Iterable[Message],
        archived: bool,
        now: datetime | None = None,
    ) -> int:
        """
        Insert or update one row per message (keyed by message id).

        Messages without an id or with empty normalized content are skipped.
        Caller takes the course lock and commits.
        """
        now = now or utc_now()
        pending: dict[str, Message] = {}
        for message in messages:
            if not message.id or not normalize_content(message.content):
                continue
            pending[message.id] = message
        if not pending:
            return 0
        existing: dict[str, SearchIndexEntry] = {}
        ids = list(pending)
        for start in range(0, len(ids), _IN_CHUNK):
            chunk = ids[start : start + _IN_CHUNK]
            for row in session.scalars(select(SearchIndexEntry).where(SearchIndexEntry.message_id.in_(chunk))):
                existing[row.message_id] = row
        for message_id, message in pending.items():
            row = existing.get(message_id)
            if row is None:
                row = SearchIndexEntry(message_id=message_id)
                session.add(row)
            row.tenant_id = tenant_id
            row.course_id = message.course_id
            row.author_id = message.author_id
            row.content = normalize_content(message.content)
            row.message_at = message.created_at
            row.archived = archived
            row.indexed_at = now
        session.flush()
        return len(pending)

    def index_messages(
        self,
        session: Session,
        tenant_id: str,
        messages: list[Message],
        archived: bool = False,
        now: datetime | None = None,
    ) -> int:
        """Incremental indexing: group by course and upsert each group under its lock."""
        by_course: dict[str, list[Message]] = defaultdict(list)
        for message in messages:
            if message.tenant_id and message.tenant_id != tenant_id:
                logger.warning(
                    "Skipping message from another tenant",
                    extra={"message_id": message.id, "tenant_id": tenant_id},
                )
                continue
            by_course[message.course_id].append(message)
        indexed = 0
        for course_id, group in sorted(by_course.items()):
            with self.course_lock(tenant_id, course_id):
                indexed += self.upsert_messages(session, tenant_id, group, archived, now)
        return indexed

    def delete_course(self, session: Session, tenant_id: str, course_id: str) -> int:
        result = session.execute(
            delete(SearchIndexEntry).where(
                SearchIndexEntry.tenant_id == tenant_id, SearchIndexEntry.course_id == course_id
            )
        )
        return result.rowcount or 0

    def delete_messages(self, session: Session, message_ids: list[str], archived_only: bool = False) -> int:
        removed = 0
        for start in range(0, len(message_ids), _IN_CHUNK):
            chunk = message_ids[start : start + _IN_CHUNK]
            stmt = delete(SearchIndexEntry).where(SearchIndexEntry.message_id.in_(chunk))
            if archived_only:
                stmt = stmt.where(SearchIndexEntry.archived.is_(True))
            result = session.execute(stmt)
            removed += result.rowcount or 0
        return removed

    def match(
        self,
        session: Session,
        tenant_id: str,
        query: str,
        course_id: str | None,
        filters: SearchFilters,
        limit: int,
    ) -> list[SearchIndexEntry]:
        """
        Rows containing any query word (case-insensitive), strongest match first.

        Strength ranks the whole phrase above any partial match, then counts matched words;
        ties go to the newest message, then message id.
        """
        words = [w for w in query.lower().split() if w]
        if not words:
            return []
        content = func.lower(SearchIndexEntry.content)
        phrase = " ".join(words)
        strength = sum(
            (case((content.contains(w, autoescape=True), 1), else_=0) for w in words),
            case((content.contains(phrase, autoescape=True), len(words)), else_=0),
        )
        stmt = select(SearchIndexEntry).where(
            SearchIndexEntry.tenant_id == tenant_id,
            or_(*[content.contains(w, autoescape=True) for w in words]),
        )
        if course_id is not None:
            stmt = stmt.where(SearchIndexEntry.course_id == course_id)
        if filters.start_date is not None:
            stmt = stmt.where(SearchIndexEntry.message_at >= filters.start_date)
        if filters.end_date is not None:
            stmt = stmt.where(SearchIndexEntry.message_at <= filters.end_date)
        if filters.author_id is not None:
            stmt = stmt.where(SearchIndexEntry.author_id == filters.author_id)
        stmt = stmt.order_by(strength.desc(), SearchIndexEntry.message_at.desc(), SearchIndexEntry.message_id).limit(
            limit
        )
        return list(session.scalars(stmt))

    def content_size(self, session: Session, tenant_id: str, course_id: str) -> int:
        total = session.scalar(
            select(func.coalesce(func.sum(func.length(SearchIndexEntry.content)), 0)).where(
                SearchIndexEntry.tenant_id == tenant_id, SearchIndexEntry.course_id == course_id
            )
        )
        return int(total or 0)

    def cleanup_stale(self, session: Session, older_than: datetime) -> int:
        """Delete non-archived rows not re-indexed since older_than."""
        result = session.execute(
            delete(SearchIndexEntry).where(
                SearchIndexEntry.archived.is_(False), SearchIndexEntry.indexed_at < older_than
            )
        )
        return result.rowcount or 0
