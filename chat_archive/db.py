"""
Database engine, session factory, and transactional scope for the archival/search jobs.

- Both engines run as background jobs, so this is the synchronous (psycopg2) path.
- Optional default database_url via set_database_url() so callers can use get_engine()/get_session_factory()
  without passing URL.
- session_scope() commits on success and rolls back on error.
"""

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from chat_archive.base import Base
from chat_archive import models_archive  # noqa: F401 - register ArchiveBatch, ArchivalJob with Base.metadata
from chat_archive import models_search  # noqa: F401 - register SearchIndexEntry, SearchLog with Base.metadata

# Lazy init; default URL can be set by application at startup
_default_url: str | None = None
_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def set_database_url(database_url: str) -> None:
    """Set the default database URL and drop any engine built for a previous URL."""
    global _default_url, _engine, _session_factory
    if database_url != _default_url:
        _engine = None
        _session_factory = None
    _default_url = database_url


def _sync_url(url: str) -> str:
    """Async driver URLs (postgresql+asyncpg://) map onto the sync psycopg2 driver."""
    return url.replace("postgresql+asyncpg", "postgresql")


def get_engine(database_url: str | None = None) -> Engine:
    """
    Create or return the sync engine.
    Uses default URL from set_database_url() if database_url is not provided.
    """
    global _engine
    url = database_url or _default_url
    if url is None:
        raise RuntimeError("database_url not set: call set_database_url() or pass database_url= to get_engine()")
    if _engine is None:
        _engine = create_engine(_sync_url(url), pool_pre_ping=True)
    return _engine


def init_db(engine: Engine | None = None, database_url: str | None = None) -> None:
    """
    Create archive/search tables (for init / tests).
    If engine is provided, use it; otherwise create from database_url or default URL.
    """
    if engine is None:
        engine = get_engine(database_url)
    Base.metadata.create_all(engine)


def get_session_factory(database_url: str | None = None) -> sessionmaker[Session]:
    """Return session factory. Uses default URL from set_database_url() if not provided."""
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(
            get_engine(database_url),
            expire_on_commit=False,
            autoflush=False,
        )
    return _session_factory


@contextmanager
def session_scope(factory: sessionmaker[Session] | None = None) -> Iterator[Session]:
    """Context manager for a single DB session (commit on success, rollback on error)."""
    session = (factory or get_session_factory())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
