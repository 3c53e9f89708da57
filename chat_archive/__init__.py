"""
Chat-Archive: chat message archival to object storage and hybrid live/archive search.

Database (PostgreSQL via SQLAlchemy; SQLite in tests):
  Base, ArchiveBatch, ArchivalJob, JobStatus, SearchIndexEntry, SearchLog
  set_database_url, get_engine, get_session_factory, init_db, session_scope

Archive storage (S3 / OSS / in-memory):
  ObjectStorage, InMemoryLongTermStorage, S3CompatibleStorage, OssStorage
  create_storage_backend_from_config, batch_key

Archival:
  MessageArchiver (run, archive_course, restore_archived_messages, get_archival_status,
  delete_batch, purge_job_records)

Search:
  ChatSearchEngine (search, build_index, index_messages, get_suggestions,
  get_search_analytics, get_index_stats, cleanup_index), lexical_relevance

Configuration:
  ChatArchiveConfig, load_config, build_services
"""

from chat_archive.archival import MessageArchiver
from chat_archive.base import Base
from chat_archive.config import (
    ArchivalSettings,
    ChatArchiveConfig,
    LiveSourceSettings,
    SearchSettings,
    load_config,
)
from chat_archive.db import get_engine, get_session_factory, init_db, session_scope, set_database_url
from chat_archive.errors import (
    ArchivalInProgressError,
    ArchiveFormatError,
    ChatArchiveError,
    ChecksumMismatchError,
    ConfigError,
    LiveSourceError,
    QueryValidationError,
    StorageError,
)
from chat_archive.live_source import HttpLiveMessageSource, InMemoryLiveMessageSource, LiveMessageSource
from chat_archive.long_term_storage import (
    InMemoryLongTermStorage,
    ObjectStorage,
    OssStorage,
    S3CompatibleStorage,
    batch_key,
    create_storage_backend_from_config,
)
from chat_archive.messages import CourseCandidate, Message, SearchFilters
from chat_archive.models_archive import ArchivalJob, ArchiveBatch, JobStatus
from chat_archive.models_search import SearchIndexEntry, SearchLog
from chat_archive.ranking import lexical_relevance
from chat_archive.results import (
    ArchivalRunStats,
    BatchResult,
    CourseArchivalResult,
    IndexBuildStats,
    SearchHit,
    SearchResponse,
)
from chat_archive.search import ChatSearchEngine
from chat_archive.services import build_services

__all__ = [
    "Base",
    "ArchiveBatch",
    "ArchivalJob",
    "JobStatus",
    "SearchIndexEntry",
    "SearchLog",
    "ArchivalInProgressError",
    "ArchiveFormatError",
    "ChatArchiveError",
    "ChecksumMismatchError",
    "ConfigError",
    "LiveSourceError",
    "QueryValidationError",
    "StorageError",
    "ArchivalRunStats",
    "ArchivalSettings",
    "BatchResult",
    "ChatArchiveConfig",
    "ChatSearchEngine",
    "CourseArchivalResult",
    "CourseCandidate",
    "HttpLiveMessageSource",
    "InMemoryLiveMessageSource",
    "InMemoryLongTermStorage",
    "IndexBuildStats",
    "LiveMessageSource",
    "LiveSourceSettings",
    "Message",
    "MessageArchiver",
    "ObjectStorage",
    "OssStorage",
    "S3CompatibleStorage",
    "SearchFilters",
    "SearchHit",
    "SearchResponse",
    "SearchSettings",
    "batch_key",
    "build_services",
    "create_storage_backend_from_config",
    "get_engine",
    "get_session_factory",
    "init_db",
    "lexical_relevance",
    "load_config",
    "session_scope",
    "set_database_url",
]
