"""Wire configuration into storage, live source, and both engines (sharing one SearchIndex)."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session, sessionmaker

from chat_archive.archival import MessageArchiver
from chat_archive.config import ChatArchiveConfig
from chat_archive.db import get_session_factory, init_db, set_database_url
from chat_archive.errors import ConfigError
from chat_archive.live_source import HttpLiveMessageSource, InMemoryLiveMessageSource, LiveMessageSource
from chat_archive.long_term_storage import ObjectStorage, create_storage_backend_from_config
from chat_archive.search import ChatSearchEngine
from chat_archive.search_index import SearchIndex

logger = logging.getLogger(__name__)


@dataclass
class ChatArchiveServices:
    session_factory: sessionmaker[Session]
    storage: ObjectStorage
    live_source: LiveMessageSource
    search_index: SearchIndex
    archiver: MessageArchiver
    search: ChatSearchEngine

    def close(self) -> None:
        self.search.close()
        close = getattr(self.live_source, "close", None)
        if close is not None:
            close()


def create_live_source_from_config(config: ChatArchiveConfig) -> LiveMessageSource:
    """HTTP chat API when live_source.base_url is set, otherwise an empty in-memory source."""
    settings = config.live_source
    if not settings.base_url:
        return InMemoryLiveMessageSource(max_search_results=config.search.max_live_results)
    return HttpLiveMessageSource(
        base_url=settings.base_url,
        token=settings.token,
        fetch_timeout=settings.fetch_timeout_seconds,
        request_timeout=settings.request_timeout_seconds,
        max_search_results=config.search.max_live_results,
    )


def build_services(
    config: ChatArchiveConfig,
    storage: ObjectStorage | None = None,
    live_source: LiveMessageSource | None = None,
    session_factory: sessionmaker[Session] | None = None,
    create_tables: bool = False,
) -> ChatArchiveServices:
    """
    Build the archiver and search engine from config.

    storage, live_source, and session_factory override what config would construct.
    """
    if session_factory is None:
        if not config.database_url:
            raise ConfigError("database_url is required (config or CHAT_ARCHIVE_DATABASE_URL)")
        set_database_url(config.database_url)
        if create_tables:
            init_db()
        session_factory = get_session_factory()
    storage = storage if storage is not None else create_storage_backend_from_config(config.storage)
    live_source = live_source if live_source is not None else create_live_source_from_config(config)
    index = SearchIndex()
    services = ChatArchiveServices(
        session_factory=session_factory,
        storage=storage,
        live_source=live_source,
        search_index=index,
        archiver=MessageArchiver(session_factory, storage, live_source, config.archival, search_index=index),
        search=ChatSearchEngine(session_factory, storage, live_source, config.search, search_index=index),
    )
    logger.info(
        "Chat archive services ready",
        extra={"storage": type(storage).__name__, "live_source": type(live_source).__name__},
    )
    return services
