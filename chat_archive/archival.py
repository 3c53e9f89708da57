"""
Archival engine: moves messages older than a cutoff from the live store into checksummed,
date-partitioned batch files in object storage.

Per course:
  1. Claim the course by inserting a 'processing' ArchivalJob (atomic; partial unique index).
  2. Fetch eligible messages, sort by (created_at, id), split into fixed-size batches.
  3. Per batch: serialize -> put -> verify (exists + checksum) -> record ArchiveBatch and flip
     index rows to archived in one transaction. Failed attempts remove the object they wrote
     and are retried as a whole; checksum mismatches are not retried.
  4. If any batch was recorded, ask the live store to delete what was archived (best effort).
  5. Close the job as completed or failed.

Invariant: at least one durable copy of every message exists. A crash between recording a batch
and purging the live store leaves messages in both places; the next run archives them again
into a new batch.
"""

from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from chat_archive.base import utc_now
from chat_archive.batch_format import CONTENT_TYPE, parse_batch, serialize_batch, verify_batch
from chat_archive.config import ArchivalSettings
from chat_archive.db import session_scope
from chat_archive.errors import (
    ArchivalInProgressError,
    ArchiveFormatError,
    ChecksumMismatchError,
    LiveSourceError,
    StorageError,
)
from chat_archive.live_source import LiveMessageSource
from chat_archive.long_term_storage import ObjectStorage, batch_key
from chat_archive.messages import Message
from chat_archive.models_archive import TERMINAL_STATUSES, ArchivalJob, ArchiveBatch, JobStatus
from chat_archive.results import ArchivalRunStats, BatchResult, CourseArchivalResult
from chat_archive.search_index import SearchIndex

logger = logging.getLogger(__name__)

SERVICE_VERSION = "chat-archival-v1.0"

_MAX_PATH_SUFFIX = 100


class MessageArchiver:
    """
    Archives aging chat messages for one tenant at a time.

    Example:
        >>> archiver = MessageArchiver(get_session_factory(), storage, live_source)
        >>> stats = archiver.run("tenant-1")
        >>> stats.archived_messages
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        storage: ObjectStorage,
        live_source: LiveMessageSource,
        settings: ArchivalSettings | None = None,
        search_index: SearchIndex | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """
        Args:
            session_factory: Factory for DB sessions (see chat_archive.db.get_session_factory).
            storage: Archive object storage backend.
            live_source: The live chat message store.
            settings: Archival settings; defaults when omitted.
            search_index: Shared index (and its per-course locks); pass the search engine's instance.
            clock: Returns aware UTC now; injectable for tests.
            sleep: Delay between batch retry attempts; injectable for tests.
        """
        self._session_factory = session_factory
        self.storage = storage
        self.live_source = live_source
        self.settings = settings or ArchivalSettings()
        self.search_index = search_index or SearchIndex()
        self._clock = clock
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def cutoff_for(self, now: datetime) -> datetime:
        return now - timedelta(days=self.settings.threshold_days)

    def run(
        self,
        tenant_id: str,
        now: datetime | None = None,
        dry_run: bool = False,
        force: bool = False,
    ) -> ArchivalRunStats:
        """
        Archive every eligible course of a tenant.

        Args:
            tenant_id: Tenant whose courses are archived.
            now: Reference time for the cutoff (defaults to clock()).
            dry_run: Only list eligible courses; no jobs, writes, or deletes.
            force: Take over courses whose previous job is still marked processing.

        Returns:
            ArchivalRunStats. A failure to list courses is reported in stats.error, not raised;
            an unexpected error on one course becomes a failed entry in stats.courses.
        """
        now = now or self._clock()
        cutoff = self.cutoff_for(now)
        stats = ArchivalRunStats(tenant_id=tenant_id, cutoff=cutoff, started_at=self._clock(), dry_run=dry_run)
        logger.info(
            "Starting chat message archival",
            extra={"tenant_id": tenant_id, "cutoff": cutoff.isoformat(), "dry_run": dry_run},
        )

        try:
            candidates = self.live_source.list_courses_needing_archival(
                tenant_id, cutoff, self.settings.min_messages
            )
        except LiveSourceError as e:
            logger.error("Failed to list courses needing archival", extra={"tenant_id": tenant_id, "error": str(e)})
            stats.error = str(e)
            stats.finished_at = self._clock()
            return stats

        if dry_run:
            stats.planned = {c.course_id: c.eligible_messages for c in candidates}
            stats.finished_at = self._clock()
            logger.info("Archival dry run", extra={"tenant_id": tenant_id, "courses": len(candidates)})
            return stats

        for candidate in candidates:
            try:
                result = self.archive_course(tenant_id, candidate.course_id, cutoff, force=force)
            except ArchivalInProgressError as e:
                logger.warning(str(e), extra={"tenant_id": tenant_id, "course_id": candidate.course_id})
                stats.skipped_courses.append(candidate.course_id)
                continue
            except Exception as e:
                logger.exception(
                    "Failed to archive course", extra={"tenant_id": tenant_id, "course_id": candidate.course_id}
                )
                result = CourseArchivalResult(
                    tenant_id=tenant_id,
                    course_id=candidate.course_id,
                    status=JobStatus.FAILED,
                    error=f"{type(e).__name__}: {e}",
                )
            stats.courses.append(result)

        stats.finished_at = self._clock()
        logger.info(
            "Chat message archival completed",
            extra={
                "tenant_id": tenant_id,
                "courses_processed": stats.courses_processed,
                "courses_skipped": len(stats.skipped_courses),
                "total_processed": stats.total_processed,
                "archived_messages": stats.archived_messages,
                "failed_messages": stats.failed_messages,
                "size_bytes": stats.size_bytes,
            },
        )
        return stats

    def archive_course(
        self,
        tenant_id: str,
        course_id: str,
        cutoff: datetime,
        force: bool = False,
    ) -> CourseArchivalResult:
        """
        Archive one course's messages older than cutoff.

        Raises:
            ArchivalInProgressError: another job holds the course and force is False.
        """
        job_id = self._claim(tenant_id, course_id, cutoff, force)
        result = CourseArchivalResult(
            tenant_id=tenant_id, course_id=course_id, status=JobStatus.PROCESSING, job_id=str(job_id)
        )
        try:
            try:
                fetched = self.live_source.fetch_messages(tenant_id, course_id, cutoff)
            except LiveSourceError as e:
                logger.error(
                    "Failed to fetch messages for archival",
                    extra={"tenant_id": tenant_id, "course_id": course_id, "error": str(e)},
                )
                return self._close(job_id, result, JobStatus.FAILED, f"fetch failed: {e}")

            messages = self._eligible(fetched, course_id, cutoff)
            result.processed = len(messages)
            if not messages:
                return self._close(job_id, result, JobStatus.COMPLETED)

            size = self.settings.batch_size
            batches = [messages[i : i + size] for i in range(0, len(messages), size)]
            archived_ids: list[str] = []
            for batch_index, batch in enumerate(batches):
                batch_result = self._archive_batch(tenant_id, course_id, batch_index, batch)
                result.batches.append(batch_result)
                if batch_result.success:
                    result.archived += len(batch)
                    result.size_bytes += batch_result.size_bytes
                    archived_ids.extend(m.id for m in batch)
                else:
                    result.failed += len(batch)
                self._record_progress(job_id, (batch_index + 1) / len(batches) * 100.0, result)

            if result.archived:
                # Only ids that made it into a recorded batch; anything else stays live.
                result.deleted_from_live = self._purge_live(tenant_id, course_id, cutoff, archived_ids)

            error = None
            if result.failed_batches:
                error = f"{len(result.failed_batches)} of {len(batches)} batches failed"
            return self._close(job_id, result, JobStatus.COMPLETED, error)
        except Exception as e:
            logger.exception(
                "Archival job failed", extra={"tenant_id": tenant_id, "course_id": course_id, "job_id": str(job_id)}
            )
            error = f"{type(e).__name__}: {e}"
            try:
                return self._close(job_id, result, JobStatus.FAILED, error)
            except Exception:
                logger.exception(
                    "Failed to record archival job failure",
                    extra={"tenant_id": tenant_id, "course_id": course_id, "job_id": str(job_id)},
                )
                result.status = JobStatus.FAILED
                result.error = error
                return result

    # ------------------------------------------------------------------
    # Job bookkeeping
    # ------------------------------------------------------------------

    def _claim(self, tenant_id: str, course_id: str, cutoff: datetime, force: bool) -> uuid.UUID:
        now = self._clock()
        if force:
            with session_scope(self._session_factory) as session:
                session.execute(
                    update(ArchivalJob)
                    .where(
                        ArchivalJob.tenant_id == tenant_id,
                        ArchivalJob.course_id == course_id,
                        ArchivalJob.status == JobStatus.PROCESSING,
                    )
                    .values(status=JobStatus.FAILED, error_detail="superseded by forced run", completed_at=now)
                )
        job_id = uuid.uuid4()
        try:
            with session_scope(self._session_factory) as session:
                session.add(
                    ArchivalJob(
                        id=job_id,
                        tenant_id=tenant_id,
                        course_id=course_id,
                        cutoff=cutoff,
                        status=JobStatus.PROCESSING,
                        progress=0.0,
                        started_at=now,
                    )
                )
        except IntegrityError as e:
            raise ArchivalInProgressError(tenant_id, course_id) from e
        logger.info(
            "Archival job started",
            extra={"tenant_id": tenant_id, "course_id": course_id, "job_id": str(job_id), "cutoff": cutoff.isoformat()},
        )
        return job_id

    def _record_progress(self, job_id: uuid.UUID, progress: float, result: CourseArchivalResult) -> None:
        with session_scope(self._session_factory) as session:
            job = session.get(ArchivalJob, job_id)
            job.progress = max(job.progress, round(progress, 2))
            job.messages_archived = result.archived
            job.messages_failed = result.failed
            job.batches_failed = len(result.failed_batches)
            job.size_bytes = result.size_bytes

    def _close(
        self,
        job_id: uuid.UUID,
        result: CourseArchivalResult,
        status: str,
        error: str | None = None,
    ) -> CourseArchivalResult:
        with session_scope(self._session_factory) as session:
            job = session.get(ArchivalJob, job_id)
            job.status = status
            job.completed_at = self._clock()
            job.messages_archived = result.archived
            job.messages_failed = result.failed
            job.batches_failed = len(result.failed_batches)
            job.size_bytes = result.size_bytes
            job.error_detail = error
            if status == JobStatus.COMPLETED:
                job.progress = 100.0
        result.status = status
        result.error = error
        log = logger.info if status == JobStatus.COMPLETED and error is None else logger.warning
        log(
            "Archival job finished",
            extra={
                "tenant_id": result.tenant_id,
                "course_id": result.course_id,
                "job_id": str(job_id),
                "status": status,
                "processed": result.processed,
                "archived": result.archived,
                "failed": result.failed,
                "size_bytes": result.size_bytes,
                "deleted_from_live": result.deleted_from_live,
                "error": error,
            },
        )
        return result

    @staticmethod
    def _eligible(fetched: list[Message], course_id: str, cutoff: datetime) -> list[Message]:
        unique: dict[str, Message] = {}
        for m in fetched:
            if m.course_id == course_id and m.created_at < cutoff:
                unique[m.id] = m
        return sorted(unique.values(), key=lambda m: (m.created_at, m.id))

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    def _archive_batch(
        self, tenant_id: str, course_id: str, batch_index: int, messages: list[Message]
    ) -> BatchResult:
        result = BatchResult(success=False, batch_index=batch_index, messages_processed=len(messages))
        context: dict[str, Any] = {
            "tenant_id": tenant_id,
            "course_id": course_id,
            "batch_index": batch_index,
            "message_count": len(messages),
        }
        attempts = self.settings.retry_attempts
        for attempt in range(1, attempts + 1):
            result.attempts = attempt
            try:
                path, size = self._write_batch(tenant_id, course_id, batch_index, messages)
            except ChecksumMismatchError as e:
                result.error = str(e)
                logger.error("Archive batch failed integrity verification", extra={**context, "error": str(e)})
                break
            except Exception as e:
                result.error = f"{type(e).__name__}: {e}"
                logger.warning(
                    "Archive batch attempt failed",
                    extra={**context, "attempt": attempt, "max_attempts": attempts, "error": result.error},
                )
                if attempt < attempts and self.settings.retry_delay_seconds > 0:
                    self._sleep(self.settings.retry_delay_seconds)
                continue
            result.success = True
            result.error = None
            result.storage_path = path
            result.size_bytes = size
            logger.info(
                "Archived message batch",
                extra={**context, "size_bytes": size, "storage_path": path, "attempts": attempt},
            )
            return result

        logger.error("Failed to archive message batch", extra={**context, "attempts": result.attempts, "error": result.error})
        return result

    def _write_batch(
        self, tenant_id: str, course_id: str, batch_index: int, messages: list[Message]
    ) -> tuple[str, int]:
        """One write-verify-record attempt. Returns (storage path, stored size)."""
        archived_at = self._clock()
        payload, checksum = serialize_batch(tenant_id, course_id, batch_index, messages, archived_at)
        path = self._free_batch_path(course_id, batch_index, archived_at)

        try:
            self.storage.put_object(
                path,
                payload,
                content_type=CONTENT_TYPE,
                metadata={
                    "tenant_id": tenant_id,
                    "course_id": course_id,
                    "batch_index": str(batch_index),
                    "message_count": str(len(messages)),
                    "checksum": checksum,
                    "archived_date": archived_at.date().isoformat(),
                    "service_version": SERVICE_VERSION,
                },
            )
            if not self.storage.object_exists(path):
                raise StorageError(f"archive verification failed: {path} not found after upload")
            if self.settings.verify_integrity:
                stored = self.storage.get_object(path)
                if stored is None:
                    raise StorageError(f"archive verification failed: {path} unreadable after upload")
                verify_batch(stored, checksum, path)

            with self.search_index.course_lock(tenant_id, course_id):
                with session_scope(self._session_factory) as session:
                    session.add(
                        ArchiveBatch(
                            tenant_id=tenant_id,
                            course_id=course_id,
                            storage_path=path,
                            message_count=len(messages),
                            size_bytes=len(payload),
                            batch_index=batch_index,
                            checksum=checksum,
                            start_at=messages[0].created_at,
                            end_at=messages[-1].created_at,
                            created_at=archived_at,
                        )
                    )
                    self.search_index.upsert_messages(session, tenant_id, messages, archived=True, now=archived_at)
        except Exception:
            self._discard(path)
            raise
        return path, len(payload)

    def _free_batch_path(self, course_id: str, batch_index: int, archived_at: datetime) -> str:
        # Never overwrite an object this attempt did not write.
        for suffix in range(_MAX_PATH_SUFFIX):
            path = batch_key(course_id, batch_index, archived_at, self.settings.path_prefix, suffix)
            if not self.storage.object_exists(path):
                return path
        raise StorageError(f"archive object already exists at {path} and {_MAX_PATH_SUFFIX - 1} alternatives")

    def _discard(self, path: str) -> None:
        try:
            if self.storage.object_exists(path):
                self.storage.delete_object(path)
        except Exception as e:
            logger.warning("Failed to clean up partial archive object", extra={"storage_path": path, "error": str(e)})

    def _purge_live(
        self, tenant_id: str, course_id: str, cutoff: datetime, message_ids: list[str] | None
    ) -> int:
        context = {"tenant_id": tenant_id, "course_id": course_id, "cutoff": cutoff.isoformat()}
        try:
            deleted = self.live_source.delete_messages(tenant_id, course_id, cutoff, message_ids)
        except Exception as e:
            # Archive stays authoritative; the next run re-archives anything still live.
            logger.error("Failed to clean up archived messages from live store", extra={**context, "error": str(e)})
            return 0
        logger.info("Cleaned up archived messages from live store", extra={**context, "deleted_count": deleted})
        return deleted

    # ------------------------------------------------------------------
    # Restore, status, cleanup
    # ------------------------------------------------------------------

    def restore_archived_messages(
        self, tenant_id: str, course_id: str, start: datetime, end: datetime
    ) -> list[Message]:
        """
        Read back archived messages created within [start, end], oldest first.

        Batches that are missing or fail checksum verification are skipped and logged.
        """
        with session_scope(self._session_factory) as session:
            batches = list(
                session.scalars(
                    select(ArchiveBatch)
                    .where(
                        ArchiveBatch.tenant_id == tenant_id,
                        ArchiveBatch.course_id == course_id,
                        ArchiveBatch.start_at <= end,
                        ArchiveBatch.end_at >= start,
                    )
                    .order_by(ArchiveBatch.start_at, ArchiveBatch.created_at, ArchiveBatch.batch_index)
                )
            )
            refs = [(b.storage_path, b.checksum) for b in batches]

        restored: dict[str, Message] = {}
        for path, checksum in refs:
            raw = self.storage.get_object(path)
            if raw is None:
                logger.warning("Archive file not found in storage", extra={"storage_path": path})
                continue
            try:
                document = verify_batch(raw, checksum, path)
            except (ChecksumMismatchError, ArchiveFormatError) as e:
                logger.error("Skipping unverifiable archive file", extra={"storage_path": path, "error": str(e)})
                continue
            for message in document.to_messages():
                if start <= message.created_at <= end:
                    restored.setdefault(message.id, message)
        return sorted(restored.values(), key=lambda m: (m.created_at, m.id))

    def get_archival_status(self, tenant_id: str, course_id: str) -> dict[str, Any]:
        """Latest job for the course plus a summary of its archived batches."""
        with session_scope(self._session_factory) as session:
            latest = session.scalars(
                select(ArchivalJob)
                .where(ArchivalJob.tenant_id == tenant_id, ArchivalJob.course_id == course_id)
                .order_by(ArchivalJob.started_at.desc())
                .limit(1)
            ).first()
            row = session.execute(
                select(
                    func.count(ArchiveBatch.id),
                    func.coalesce(func.sum(ArchiveBatch.message_count), 0),
                    func.coalesce(func.sum(ArchiveBatch.size_bytes), 0),
                ).where(ArchiveBatch.tenant_id == tenant_id, ArchiveBatch.course_id == course_id)
            ).one()
            earliest, latest_end = self._bounds(session, tenant_id, course_id)
            return {
                "tenant_id": tenant_id,
                "course_id": course_id,
                "latest_job": latest.to_dict() if latest else None,
                "archive_summary": {
                    "total_archives": int(row[0]),
                    "total_archived_messages": int(row[1]),
                    "total_size_bytes": int(row[2]),
                    "earliest_archive": earliest.isoformat() if earliest else None,
                    "latest_archive": latest_end.isoformat() if latest_end else None,
                },
            }

    @staticmethod
    def _bounds(session: Session, tenant_id: str, course_id: str) -> tuple[datetime | None, datetime | None]:
        # min/max through the ORM column type so the values come back timezone-aware
        scope = (ArchiveBatch.tenant_id == tenant_id, ArchiveBatch.course_id == course_id)
        earliest = session.scalars(select(ArchiveBatch.start_at).where(*scope).order_by(ArchiveBatch.start_at).limit(1)).first()
        latest = session.scalars(select(ArchiveBatch.end_at).where(*scope).order_by(ArchiveBatch.end_at.desc()).limit(1)).first()
        return earliest, latest

    def delete_batch(self, tenant_id: str, batch_id: uuid.UUID) -> bool:
        """
        Explicit cleanup: remove a batch row, its archived index rows, then its stored object.

        Returns False if no such batch exists for the tenant. A message also held by another
        batch becomes searchable again after the next index rebuild.
        """
        with session_scope(self._session_factory) as session:
            batch = session.get(ArchiveBatch, batch_id)
            if batch is None or batch.tenant_id != tenant_id:
                return False
            course_id, path = batch.course_id, batch.storage_path

        raw = self.storage.get_object(path)
        message_ids: list[str] = []
        if raw is not None:
            try:
                message_ids = [str(m.get("id")) for m in parse_batch(raw, path).messages]
            except ArchiveFormatError as e:
                logger.warning("Archive file unreadable during delete", extra={"storage_path": path, "error": str(e)})

        with self.search_index.course_lock(tenant_id, course_id):
            with session_scope(self._session_factory) as session:
                batch = session.get(ArchiveBatch, batch_id)
                if batch is None:
                    return False
                self.search_index.delete_messages(session, message_ids, archived_only=True)
                session.delete(batch)
        self.storage.delete_object(path)
        logger.info(
            "Deleted archive batch",
            extra={"tenant_id": tenant_id, "course_id": course_id, "storage_path": path, "messages": len(message_ids)},
        )
        return True

    def purge_job_records(self, now: datetime | None = None) -> int:
        """Delete finished jobs past keep_job_records_days and failed jobs past failed_job_retention_days."""
        now = now or self._clock()
        keep_before = now - timedelta(days=self.settings.keep_job_records_days)
        failed_before = now - timedelta(days=self.settings.failed_job_retention_days)
        with session_scope(self._session_factory) as session:
            removed = session.execute(
                delete(ArchivalJob).where(
                    ArchivalJob.status.in_(TERMINAL_STATUSES), ArchivalJob.started_at < keep_before
                )
            ).rowcount or 0
            removed += session.execute(
                delete(ArchivalJob).where(
                    ArchivalJob.status == JobStatus.FAILED, ArchivalJob.started_at < failed_before
                )
            ).rowcount or 0
        logger.info("Purged archival job records", extra={"removed": removed})
        return removed
