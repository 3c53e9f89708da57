"""Shared fixtures: in-memory SQLite, storage, live source, fixed clock."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from chat_archive.archival import MessageArchiver
from chat_archive.config import ArchivalSettings, SearchSettings
from chat_archive.db import init_db
from chat_archive.live_source import InMemoryLiveMessageSource
from chat_archive.long_term_storage import InMemoryLongTermStorage
from chat_archive.messages import Message
from chat_archive.search import ChatSearchEngine
from chat_archive.search_index import SearchIndex

NOW = datetime(2026, 10, 19, 12, 0, 0, tzinfo=timezone.utc)
OLD = NOW - timedelta(days=200)


def make_messages(count, course_id="c1", tenant_id="t1", start=OLD, step=timedelta(minutes=1), content=None, prefix="m"):
    """count messages spaced by step; content(i) overrides the default text (i is 1-based)."""
    return [
        Message(
            id=f"{prefix}{i:05d}",
            course_id=course_id,
            tenant_id=tenant_id,
            author_id=f"u{i % 7}",
            content=content(i) if content else f"discussion note number {i}",
            created_at=start + step * (i - 1),
        )
        for i in range(1, count + 1)
    ]


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False})
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, expire_on_commit=False, autoflush=False)


@pytest.fixture
def storage():
    return InMemoryLongTermStorage()


@pytest.fixture
def live():
    return InMemoryLiveMessageSource()


@pytest.fixture
def search_index():
    return SearchIndex()


@pytest.fixture
def archival_settings():
    return ArchivalSettings(retry_delay_seconds=0.0)


@pytest.fixture
def archiver(session_factory, storage, live, archival_settings, search_index):
    return MessageArchiver(
        session_factory, storage, live, archival_settings, search_index=search_index, clock=lambda: NOW
    )


@pytest.fixture
def search_engine(session_factory, storage, live, search_index):
    engine = ChatSearchEngine(
        session_factory, storage, live, SearchSettings(), search_index=search_index, clock=lambda: NOW
    )
    yield engine
    engine.close()
