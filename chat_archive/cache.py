"""
Short-lived result cache for search responses and suggestions.

- ResultCache: protocol for get/put/forget.
- InMemoryResultCache: per-process TTL cache (monotonic clock).
"""

from __future__ import annotations

import hashlib
import json
import threading
import time
from typing import Any, Callable, Protocol


def cache_key(prefix: str, *parts: Any) -> str:
    """Stable key: prefix + md5 of the JSON-encoded parts (e.g. chat_search:3f2a...)."""
    raw = json.dumps(parts, sort_keys=True, default=str, ensure_ascii=False)
    return f"{prefix}:{hashlib.md5(raw.encode('utf-8')).hexdigest()}"


class ResultCache(Protocol):
    def get(self, key: str) -> Any | None: ...
    def put(self, key: str, value: Any, ttl: float) -> None: ...
    def forget(self, key: str) -> None: ...


class InMemoryResultCache:
    """Thread-safe dict cache; expired entries are dropped lazily on read."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return value

    def put(self, key: str, value: Any, ttl: float) -> None:
        if ttl <= 0:
            return
        with self._lock:
            self._entries[key] = (self._clock() + ttl, value)

    def forget(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
