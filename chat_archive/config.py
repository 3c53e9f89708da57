"""
Configuration for archival and search (chat_archive.yaml or an app config dict).

Priority (high -> low):
  1. Environment variables (CHAT_ARCHIVE_DATABASE_URL, CHAT_ARCHIVE_LIVE_TOKEN)
  2. YAML file / dict passed to load_config() / ChatArchiveConfig.from_dict()
  3. Dataclass defaults below

The storage: section is passed through to create_storage_backend_from_config().
YAML is read with yaml.safe_load() only.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from chat_archive.errors import ConfigError

_ENV_DATABASE_URL = "CHAT_ARCHIVE_DATABASE_URL"
_ENV_LIVE_TOKEN = "CHAT_ARCHIVE_LIVE_TOKEN"


@dataclass
class ArchivalSettings:
    """Archival run configuration (chat_archive.yaml: archival:)."""

    threshold_days: int = 90
    batch_size: int = 1000
    min_messages: int = 100
    retry_attempts: int = 3
    retry_delay_seconds: float = 1.0
    verify_integrity: bool = True  # re-read and checksum each batch after upload
    path_prefix: str = "chat-archive"
    keep_job_records_days: int = 365
    failed_job_retention_days: int = 90


@dataclass
class SearchSettings:
    """Search and indexing configuration (chat_archive.yaml: search:)."""

    min_query_length: int = 2
    max_query_length: int = 255
    cache_ttl_seconds: int = 300
    suggestion_cache_ttl_seconds: int = 1800
    max_live_results: int = 50
    max_archived_results: int = 100
    max_combined_results: int = 100
    query_timeout_seconds: float = 10.0
    cleanup_days: int = 365
    enable_analytics: bool = True


@dataclass
class LiveSourceSettings:
    """Chat API connection (chat_archive.yaml: live_source:)."""

    base_url: str = ""
    token: str = ""
    fetch_timeout_seconds: float = 120.0
    request_timeout_seconds: float = 30.0


@dataclass
class ChatArchiveConfig:
    """Root configuration object."""

    database_url: str | None = None
    archival: ArchivalSettings = field(default_factory=ArchivalSettings)
    search: SearchSettings = field(default_factory=SearchSettings)
    live_source: LiveSourceSettings = field(default_factory=LiveSourceSettings)
    storage: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None, environ: dict[str, str] | None = None) -> "ChatArchiveConfig":
        """Build from a plain dict; unknown keys inside a section raise ConfigError."""
        data = data or {}
        env = os.environ if environ is None else environ
        config = cls(
            database_url=data.get("database_url"),
            archival=_build_section(ArchivalSettings, data.get("archival"), "archival"),
            search=_build_section(SearchSettings, data.get("search"), "search"),
            live_source=_build_section(LiveSourceSettings, data.get("live_source"), "live_source"),
            storage=dict(data.get("storage") or {}),
        )
        if env.get(_ENV_DATABASE_URL):
            config.database_url = env[_ENV_DATABASE_URL]
        if env.get(_ENV_LIVE_TOKEN):
            config.live_source.token = env[_ENV_LIVE_TOKEN]
        config.validate()
        return config

    def validate(self) -> None:
        a, s = self.archival, self.search
        if a.batch_size < 1:
            raise ConfigError(f"archival.batch_size must be >= 1, got {a.batch_size}")
        if a.threshold_days < 0:
            raise ConfigError(f"archival.threshold_days must be >= 0, got {a.threshold_days}")
        if a.retry_attempts < 1:
            raise ConfigError(f"archival.retry_attempts must be >= 1, got {a.retry_attempts}")
        if s.min_query_length < 1 or s.max_query_length < s.min_query_length:
            raise ConfigError(
                f"search query bounds invalid: min={s.min_query_length} max={s.max_query_length}"
            )
        if s.max_combined_results < 1:
            raise ConfigError(f"search.max_combined_results must be >= 1, got {s.max_combined_results}")


def _build_section(cls, raw: Any, name: str):
    if raw is None:
        return cls()
    if not isinstance(raw, dict):
        raise ConfigError(f"'{name}' must be a mapping, got {type(raw).__name__}")
    known = {f.name: f for f in fields(cls)}
    unknown = sorted(set(raw) - set(known))
    if unknown:
        raise ConfigError(f"unknown key(s) in '{name}': {', '.join(unknown)}")
    values = {}
    for key, value in raw.items():
        default = getattr(cls(), key)
        try:
            if isinstance(default, bool):
                values[key] = value if isinstance(value, bool) else str(value).lower() in ("1", "true", "yes")
            elif isinstance(default, (int, float)):
                values[key] = type(default)(value)
            else:
                values[key] = value
        except (TypeError, ValueError) as e:
            raise ConfigError(f"'{name}.{key}' has invalid value {value!r}") from e
    return cls(**values)


def load_config(path: str | Path | None = None, environ: dict[str, str] | None = None) -> ChatArchiveConfig:
    """Read chat_archive.yaml (if given and present) and build the config."""
    data: dict[str, Any] = {}
    if path is not None:
        p = Path(path)
        if p.exists():
            with p.open("r", encoding="utf-8") as fh:
                loaded = yaml.safe_load(fh)
            if loaded is not None and not isinstance(loaded, dict):
                raise ConfigError(f"{p}: top level must be a mapping")
            data = loaded or {}
    return ChatArchiveConfig.from_dict(data, environ=environ)
