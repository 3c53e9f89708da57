"""
Hybrid search over the live store and the archive.

Query path:
  1. Validate the query (before any I/O).
  2. Return a cached response when one exists for (tenant, query, course, filters).
  3. Live branch on a worker thread (bounded by query_timeout_seconds); archived branch on
     the caller's thread through the search index.
  4. Archived index rows are resolved through their covering ArchiveBatch, whose payload is
     checksum-verified before any message from it is returned.
  5. Merge (live copy wins), rank, truncate, cache, log.

Only QueryValidationError reaches the caller; branch failures are reported in metadata.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy import distinct, func, select
from sqlalchemy.orm import Session, sessionmaker

from chat_archive.base import utc_now
from chat_archive.batch_format import BatchDocument, verify_batch
from chat_archive.cache import InMemoryResultCache, ResultCache, cache_key
from chat_archive.config import SearchSettings
from chat_archive.db import session_scope
from chat_archive.errors import ArchiveFormatError, ChecksumMismatchError, QueryValidationError
from chat_archive.live_source import LiveMessageSource
from chat_archive.long_term_storage import ObjectStorage
from chat_archive.messages import Message, SearchFilters
from chat_archive.models_archive import ArchiveBatch
from chat_archive.models_search import SearchIndexEntry, SearchLog
from chat_archive.ranking import Scorer, lexical_relevance, merge_and_rank
from chat_archive.results import IndexBuildStats, SearchHit, SearchMetadata, SearchResponse
from chat_archive.search_index import SearchIndex, normalize_content

logger = logging.getLogger(__name__)

_SEARCH_CACHE_PREFIX = "chat_search"
_SUGGEST_CACHE_PREFIX = "search_suggestions"


class _BatchResolver:
    """Per-query memo of verified batch payloads (None marks a batch that failed verification)."""

    def __init__(self, session: Session, storage: ObjectStorage, tenant_id: str) -> None:
        self.session = session
        self.storage = storage
        self.tenant_id = tenant_id
        self.documents: dict[str, BatchDocument | None] = {}
        self.integrity_failures = 0

    def resolve(self, entry: SearchIndexEntry) -> tuple[Message, str] | None:
        covering = self.session.scalars(
            select(ArchiveBatch)
            .where(
                ArchiveBatch.tenant_id == self.tenant_id,
                ArchiveBatch.course_id == entry.course_id,
                ArchiveBatch.start_at <= entry.message_at,
                ArchiveBatch.end_at >= entry.message_at,
            )
            .order_by(ArchiveBatch.created_at.desc(), ArchiveBatch.batch_index)
        )
        for batch in covering:
            document = self._load(batch.storage_path, batch.checksum)
            if document is None:
                continue
            message = document.find(entry.message_id)
            if message is not None:
                return message, batch.storage_path
        return None

    def _load(self, path: str, checksum: str) -> BatchDocument | None:
        if path in self.documents:
            return self.documents[path]
        document = None
        raw = self.storage.get_object(path)
        if raw is None:
            logger.warning("Archive file not found in storage", extra={"storage_path": path})
            self.integrity_failures += 1
        else:
            try:
                document = verify_batch(raw, checksum, path)
            except (ChecksumMismatchError, ArchiveFormatError) as e:
                logger.error("Excluding archive batch that failed verification", extra={"storage_path": path, "error": str(e)})
                self.integrity_failures += 1
        self.documents[path] = document
        return document


class ChatSearchEngine:
    """
    Searches live and archived chat messages and maintains the search index.

    Share one SearchIndex with MessageArchiver so index rebuilds and archive flips
    for the same course never interleave.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        storage: ObjectStorage,
        live_source: LiveMessageSource,
        settings: SearchSettings | None = None,
        search_index: SearchIndex | None = None,
        cache: ResultCache | None = None,
        scorer: Scorer = lexical_relevance,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self.storage = storage
        self.live_source = live_source
        self.settings = settings or SearchSettings()
        self.search_index = search_index or SearchIndex()
        self.cache = cache if cache is not None else InMemoryResultCache()
        self.scorer = scorer
        self._clock = clock
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="chat-search-live")

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    # ------------------------------------------------------------------
    # Indexing
    # ------------------------------------------------------------------

    def build_index(self, tenant_id: str, course_id: str) -> IndexBuildStats:
        """
        Rebuild a course's index from the live store and its archive batches.

        Runs under the course lock in a single transaction; a failure (e.g. LiveSourceError)
        propagates and leaves the previous index untouched.
        """
        started = time.perf_counter()
        now = self._clock()
        stats = IndexBuildStats(tenant_id=tenant_id, course_id=course_id)
        with self.search_index.course_lock(tenant_id, course_id):
            with session_scope(self._session_factory) as session:
                self.search_index.delete_course(session, tenant_id, course_id)

                live = [m for m in self.live_source.fetch_messages(tenant_id, course_id) if m.course_id == course_id]
                live_ids = {m.id for m in live}

                archived: dict[str, Message] = {}
                batches = list(
                    session.scalars(
                        select(ArchiveBatch)
                        .where(ArchiveBatch.tenant_id == tenant_id, ArchiveBatch.course_id == course_id)
                        .order_by(ArchiveBatch.start_at, ArchiveBatch.batch_index)
                    )
                )
                for batch in batches:
                    raw = self.storage.get_object(batch.storage_path)
                    if raw is None:
                        logger.warning("Archive file not found in storage", extra={"storage_path": batch.storage_path})
                        stats.skipped_batches += 1
                        continue
                    try:
                        document = verify_batch(raw, batch.checksum, batch.storage_path)
                    except (ChecksumMismatchError, ArchiveFormatError) as e:
                        logger.error(
                            "Skipping archive batch during index build",
                            extra={"storage_path": batch.storage_path, "error": str(e)},
                        )
                        stats.skipped_batches += 1
                        continue
                    for message in document.to_messages():
                        # still live (purge pending): the live copy is indexed instead
                        if message.id not in live_ids:
                            archived.setdefault(message.id, message)

                stats.live_indexed = self.search_index.upsert_messages(session, tenant_id, live, archived=False, now=now)
                stats.archived_indexed = self.search_index.upsert_messages(
                    session, tenant_id, list(archived.values()), archived=True, now=now
                )
                stats.content_size_bytes = self.search_index.content_size(session, tenant_id, course_id)
        stats.duration_seconds = round(time.perf_counter() - started, 3)
        logger.info(
            "Search index built",
            extra={
                "tenant_id": tenant_id,
                "course_id": course_id,
                "live_indexed": stats.live_indexed,
                "archived_indexed": stats.archived_indexed,
                "skipped_batches": stats.skipped_batches,
                "duration_seconds": stats.duration_seconds,
            },
        )
        return stats

    def index_messages(self, tenant_id: str, messages: list[Message], archived: bool = False) -> int:
        """Incrementally index messages (e.g. newly posted ones). Returns rows written."""
        with session_scope(self._session_factory) as session:
            indexed = self.search_index.index_messages(session, tenant_id, messages, archived, now=self._clock())
        logger.debug("Indexed messages", extra={"tenant_id": tenant_id, "indexed": indexed})
        return indexed

    def cleanup_index(self, now: datetime | None = None) -> int:
        """Drop live entries that have not been re-indexed within cleanup_days."""
        now = now or self._clock()
        with session_scope(self._session_factory) as session:
            removed = self.search_index.cleanup_stale(session, now - timedelta(days=self.settings.cleanup_days))
        logger.info("Cleaned up stale search index entries", extra={"removed": removed})
        return removed

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    def validate_query(self, query: str) -> str:
        q = (query or "").strip()
        if len(q) < self.settings.min_query_length:
            raise QueryValidationError(f"query must be at least {self.settings.min_query_length} characters")
        if len(q) > self.settings.max_query_length:
            raise QueryValidationError(f"query must be at most {self.settings.max_query_length} characters")
        return q

    def search(
        self,
        tenant_id: str,
        query: str,
        course_id: str | None = None,
        filters: SearchFilters | None = None,
        user_id: str | None = None,
    ) -> SearchResponse:
        """
        Search live and archived messages.

        Raises:
            QueryValidationError: query is empty, too short, or too long.
        """
        q = self.validate_query(query)
        filters = filters or SearchFilters()
        started = time.perf_counter()
        key = cache_key(_SEARCH_CACHE_PREFIX, tenant_id, q, course_id, filters.to_dict())

        cached = self.cache.get(key)
        if cached is not None:
            response = replace(cached, metadata=replace(cached.metadata, cache_hit=True))
            self._log_search(tenant_id, course_id, user_id, q, len(response.results), self._elapsed_ms(started))
            return response

        live_future = self._executor.submit(self.live_source.search_messages, tenant_id, q, course_id, filters)

        archived_hits: list[SearchHit] = []
        archived_failed = False
        integrity_failures = 0
        try:
            archived_hits, integrity_failures = self._search_index(tenant_id, q, course_id, filters)
        except Exception as e:
            archived_failed = True
            logger.error("Archived search failed", extra={"tenant_id": tenant_id, "query": q, "error": str(e)})

        live_hits: list[SearchHit] = []
        live_failed = False
        try:
            live_messages = live_future.result(timeout=self.settings.query_timeout_seconds)
            live_hits = [
                SearchHit(message=m, archived=False, score=self.scorer(q, m.content), source="live")
                for m in live_messages[: self.settings.max_live_results]
                if (course_id is None or m.course_id == course_id) and filters.matches(m)
            ]
        except FutureTimeoutError:
            live_future.cancel()
            live_failed = True
            logger.warning(
                "Live search timed out",
                extra={"tenant_id": tenant_id, "query": q, "timeout_seconds": self.settings.query_timeout_seconds},
            )
        except Exception as e:
            live_failed = True
            logger.warning("Live search failed", extra={"tenant_id": tenant_id, "query": q, "error": str(e)})

        both_failed = live_failed and archived_failed
        results = [] if both_failed else merge_and_rank(live_hits, archived_hits, self.settings.max_combined_results)
        took_ms = self._elapsed_ms(started)
        response = SearchResponse(
            results=results,
            metadata=SearchMetadata(
                query=q,
                tenant_id=tenant_id,
                course_id=course_id,
                filters=filters.to_dict(),
                searched_at=self._clock().isoformat(),
                took_ms=took_ms,
                live_count=len(live_hits),
                archived_count=len(archived_hits),
                total_results=len(results),
                live_failed=live_failed,
                archived_failed=archived_failed,
                error=both_failed,
                integrity_failures=integrity_failures,
            ),
        )
        if both_failed:
            logger.error("Search failed on both live and archived branches", extra={"tenant_id": tenant_id, "query": q})
            return response

        if not (live_failed or archived_failed or integrity_failures):
            self.cache.put(key, response, self.settings.cache_ttl_seconds)
        self._log_search(tenant_id, course_id, user_id, q, len(results), took_ms)
        return response

    def _search_index(
        self, tenant_id: str, query: str, course_id: str | None, filters: SearchFilters
    ) -> tuple[list[SearchHit], int]:
        hits: list[SearchHit] = []
        with session_scope(self._session_factory) as session:
            entries = self.search_index.match(
                session, tenant_id, query, course_id, filters, self.settings.max_archived_results
            )
            resolver = _BatchResolver(session, self.storage, tenant_id)
            for entry in entries:
                if not entry.archived:
                    message = Message(
                        id=entry.message_id,
                        course_id=entry.course_id,
                        tenant_id=entry.tenant_id,
                        author_id=entry.author_id,
                        content=entry.content,
                        created_at=entry.message_at,
                    )
                    hits.append(SearchHit(message=message, archived=False, score=self.scorer(query, message.content), source="index"))
                    continue
                resolved = resolver.resolve(entry)
                if resolved is None:
                    continue
                message, path = resolved
                hits.append(
                    SearchHit(
                        message=message,
                        archived=True,
                        score=self.scorer(query, message.content),
                        source="archive",
                        archive_path=path,
                    )
                )
        return hits, resolver.integrity_failures

    def _log_search(
        self,
        tenant_id: str,
        course_id: str | None,
        user_id: str | None,
        query: str,
        result_count: int,
        response_time_ms: float,
    ) -> None:
        if not self.settings.enable_analytics:
            return
        try:
            with session_scope(self._session_factory) as session:
                session.add(
                    SearchLog(
                        tenant_id=tenant_id,
                        course_id=course_id,
                        user_id=user_id,
                        query=query[:255],
                        result_count=result_count,
                        response_time_ms=response_time_ms,
                        searched_at=self._clock(),
                    )
                )
        except Exception as e:
            logger.warning("Failed to record search log", extra={"tenant_id": tenant_id, "error": str(e)})

    @staticmethod
    def _elapsed_ms(started: float) -> float:
        return round((time.perf_counter() - started) * 1000, 2)

    # ------------------------------------------------------------------
    # Suggestions, analytics, stats
    # ------------------------------------------------------------------

    def get_suggestions(
        self, tenant_id: str, partial: str, course_id: str | None = None, limit: int = 10
    ) -> list[str]:
        """Phrases around indexed matches of partial, followed by popular past queries."""
        term = (partial or "").strip().lower()
        if len(term) < self.settings.min_query_length:
            return []
        key = cache_key(_SUGGEST_CACHE_PREFIX, tenant_id, term, course_id, limit)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        suggestions: list[str] = []
        with session_scope(self._session_factory) as session:
            entries = self.search_index.match(session, tenant_id, term, course_id, SearchFilters(), limit * 5)
            for entry in entries:
                words = normalize_content(entry.content).split()
                for i, word in enumerate(words):
                    if term in word.lower():
                        phrase = " ".join(words[max(0, i - 2) : i + 3]).lower()
                        if phrase not in suggestions:
                            suggestions.append(phrase)
                        break

            stmt = (
                select(SearchLog.query, func.count(SearchLog.id).label("uses"))
                .where(SearchLog.tenant_id == tenant_id, func.lower(SearchLog.query).contains(term, autoescape=True))
                .group_by(SearchLog.query)
                .order_by(func.count(SearchLog.id).desc(), SearchLog.query)
                .limit(limit)
            )
            if course_id is not None:
                stmt = stmt.where(SearchLog.course_id == course_id)
            for popular, _uses in session.execute(stmt):
                popular = popular.lower()
                if popular not in suggestions:
                    suggestions.append(popular)

        suggestions = suggestions[:limit]
        self.cache.put(key, suggestions, self.settings.suggestion_cache_ttl_seconds)
        return suggestions

    def get_search_analytics(self, tenant_id: str, course_id: str | None = None, days: int = 30) -> dict[str, Any]:
        since = self._clock() - timedelta(days=days)
        scope = [SearchLog.tenant_id == tenant_id, SearchLog.searched_at >= since]
        if course_id is not None:
            scope.append(SearchLog.course_id == course_id)
        with session_scope(self._session_factory) as session:
            total, avg_results, avg_ms = session.execute(
                select(
                    func.count(SearchLog.id),
                    func.avg(SearchLog.result_count),
                    func.avg(SearchLog.response_time_ms),
                ).where(*scope)
            ).one()
            searched = session.scalars(select(SearchLog.searched_at).where(*scope))
            active_days = len({s.date() for s in searched})
            top = session.execute(
                select(SearchLog.query, func.count(SearchLog.id))
                .where(*scope)
                .group_by(SearchLog.query)
                .order_by(func.count(SearchLog.id).desc(), SearchLog.query)
                .limit(10)
            ).all()
        return {
            "tenant_id": tenant_id,
            "course_id": course_id,
            "period_days": days,
            "total_searches": int(total or 0),
            "avg_results": round(float(avg_results or 0), 2),
            "avg_response_time_ms": round(float(avg_ms or 0), 2),
            "active_days": active_days,
            "top_queries": [{"query": q, "count": int(c)} for q, c in top],
        }

    def get_index_stats(self, tenant_id: str, course_id: str | None = None) -> dict[str, Any]:
        scope = [SearchIndexEntry.tenant_id == tenant_id]
        if course_id is not None:
            scope.append(SearchIndexEntry.course_id == course_id)
        with session_scope(self._session_factory) as session:
            total, archived, courses, authors, size = session.execute(
                select(
                    func.count(SearchIndexEntry.id),
                    func.count(SearchIndexEntry.id).filter(SearchIndexEntry.archived.is_(True)),
                    func.count(distinct(SearchIndexEntry.course_id)),
                    func.count(distinct(SearchIndexEntry.author_id)),
                    func.coalesce(func.sum(func.length(SearchIndexEntry.content)), 0),
                ).where(*scope)
            ).one()
            earliest = session.scalars(
                select(SearchIndexEntry.message_at).where(*scope).order_by(SearchIndexEntry.message_at).limit(1)
            ).first()
            latest = session.scalars(
                select(SearchIndexEntry.message_at).where(*scope).order_by(SearchIndexEntry.message_at.desc()).limit(1)
            ).first()
        return {
            "tenant_id": tenant_id,
            "course_id": course_id,
            "total_entries": int(total or 0),
            "archived_entries": int(archived or 0),
            "live_entries": int(total or 0) - int(archived or 0),
            "unique_courses": int(courses or 0),
            "unique_authors": int(authors or 0),
            "earliest_message": earliest.isoformat() if earliest else None,
            "latest_message": latest.isoformat() if latest else None,
            "content_size_bytes": int(size or 0),
        }

