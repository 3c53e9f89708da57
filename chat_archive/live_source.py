"""
Live message source: the chat API that owns non-archived messages.

- LiveMessageSource: protocol consumed by the archival and search engines.
- InMemoryLiveMessageSource: tests and local dev.
- HttpLiveMessageSource: the platform chat API over HTTP (httpx), bearer token + X-Tenant-ID.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable, Protocol

import httpx

from chat_archive.errors import LiveSourceError
from chat_archive.messages import CourseCandidate, Message, SearchFilters, format_timestamp

logger = logging.getLogger(__name__)


class LiveMessageSource(Protocol):
    """Operations the engines need from the live store. Implementations raise LiveSourceError on failure."""

    def fetch_messages(self, tenant_id: str, course_id: str, cutoff: datetime | None = None) -> list[Message]:
        """Messages of a course created before cutoff (all messages when cutoff is None)."""
        ...

    def search_messages(
        self, tenant_id: str, query: str, course_id: str | None, filters: SearchFilters
    ) -> list[Message]:
        """The live store's own text search."""
        ...

    def delete_messages(
        self,
        tenant_id: str,
        course_id: str,
        cutoff: datetime,
        message_ids: list[str] | None = None,
    ) -> int:
        """Delete messages older than cutoff (restricted to message_ids when given); return deleted count."""
        ...

    def list_courses_needing_archival(
        self, tenant_id: str, cutoff: datetime, min_messages: int
    ) -> list[CourseCandidate]:
        """Courses with at least min_messages messages older than cutoff."""
        ...


class InMemoryLiveMessageSource:
    """
    In-memory live store for tests and local dev.

    Search matches messages containing any query word (case-insensitive), newest first.
    """

    def __init__(self, messages: Iterable[Message] = (), max_search_results: int = 50) -> None:
        self._messages: dict[str, Message] = {}
        self.max_search_results = max_search_results
        self.add(messages)

    def add(self, messages: Iterable[Message]) -> None:
        for message in messages:
            self._messages[message.id] = message

    def all_messages(self, tenant_id: str, course_id: str | None = None) -> list[Message]:
        return sorted(
            (
                m
                for m in self._messages.values()
                if m.tenant_id == tenant_id and (course_id is None or m.course_id == course_id)
            ),
            key=lambda m: (m.created_at, m.id),
        )

    def fetch_messages(self, tenant_id: str, course_id: str, cutoff: datetime | None = None) -> list[Message]:
        return [m for m in self.all_messages(tenant_id, course_id) if cutoff is None or m.created_at < cutoff]

    def search_messages(
        self, tenant_id: str, query: str, course_id: str | None, filters: SearchFilters
    ) -> list[Message]:
        words = query.lower().split()
        hits = [
            m
            for m in self.all_messages(tenant_id, course_id)
            if filters.matches(m) and any(w in m.content.lower() for w in words)
        ]
        hits.sort(key=lambda m: (m.created_at, m.id), reverse=True)
        return hits[: self.max_search_results]

    def delete_messages(
        self,
        tenant_id: str,
        course_id: str,
        cutoff: datetime,
        message_ids: list[str] | None = None,
    ) -> int:
        allowed = set(message_ids) if message_ids is not None else None
        doomed = [
            m.id
            for m in self.fetch_messages(tenant_id, course_id, cutoff)
            if allowed is None or m.id in allowed
        ]
        for message_id in doomed:
            del self._messages[message_id]
        return len(doomed)

    def list_courses_needing_archival(
        self, tenant_id: str, cutoff: datetime, min_messages: int
    ) -> list[CourseCandidate]:
        counts: dict[str, int] = {}
        for m in self._messages.values():
            if m.tenant_id == tenant_id and m.created_at < cutoff:
                counts[m.course_id] = counts.get(m.course_id, 0) + 1
        return [
            CourseCandidate(course_id=course_id, eligible_messages=count)
            for course_id, count in sorted(counts.items())
            if count >= min_messages
        ]


class HttpLiveMessageSource:
    """
    Platform chat API client.

    Endpoints (relative to base_url):
      GET    /api/v1/chat/archival/messages                  fetch for archival / indexing
      GET    /api/v1/chat/archival/courses-needing-archival  eligible courses
      DELETE /api/v1/chat/archival/cleanup                   purge archived messages
      GET    /api/v1/chat/search                             live search
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        fetch_timeout: float = 120.0,
        request_timeout: float = 30.0,
        max_search_results: int = 50,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """
        Args:
            base_url: Chat API base URL (e.g. https://chat.internal.example).
            token: Bearer token for the chat API.
            fetch_timeout: Timeout for bulk message fetches (large payloads).
            request_timeout: Timeout for search, course listing, and cleanup calls.
            max_search_results: limit passed to the live search endpoint.
            transport: Optional httpx transport (tests use httpx.MockTransport).
        """
        self.base_url = base_url.rstrip("/")
        self.fetch_timeout = fetch_timeout
        self.request_timeout = request_timeout
        self.max_search_results = max_search_results
        self._client = httpx.Client(
            base_url=self.base_url,
            headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
            timeout=httpx.Timeout(request_timeout),
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, path: str, tenant_id: str, timeout: float, **kwargs: Any) -> dict[str, Any]:
        try:
            response = self._client.request(
                method, path, headers={"X-Tenant-ID": tenant_id}, timeout=timeout, **kwargs
            )
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            raise LiveSourceError(
                f"{method} {path} failed with {e.response.status_code}: {e.response.text[:500]}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise LiveSourceError(f"{method} {path} failed: {e}") from e

    @staticmethod
    def _parse_messages(payload: dict[str, Any], tenant_id: str) -> list[Message]:
        messages = []
        for raw in payload.get("messages") or []:
            raw = dict(raw)
            raw.setdefault("tenant_id", tenant_id)
            try:
                messages.append(Message.from_dict(raw))
            except (KeyError, ValueError) as e:
                logger.warning("Skipping malformed live message", extra={"raw_id": raw.get("id"), "error": str(e)})
        return messages

    def fetch_messages(self, tenant_id: str, course_id: str, cutoff: datetime | None = None) -> list[Message]:
        params: dict[str, Any] = {"course_id": course_id, "include_metadata": "true"}
        if cutoff is not None:
            params["cutoff_date"] = format_timestamp(cutoff)
        payload = self._request(
            "GET", "/api/v1/chat/archival/messages", tenant_id, self.fetch_timeout, params=params
        )
        return self._parse_messages(payload, tenant_id)

    def search_messages(
        self, tenant_id: str, query: str, course_id: str | None, filters: SearchFilters
    ) -> list[Message]:
        params: dict[str, Any] = {"query": query, "limit": self.max_search_results, **filters.to_dict()}
        if course_id is not None:
            params["course_id"] = course_id
        payload = self._request("GET", "/api/v1/chat/search", tenant_id, self.request_timeout, params=params)
        return self._parse_messages(payload, tenant_id)

    def delete_messages(
        self,
        tenant_id: str,
        course_id: str,
        cutoff: datetime,
        message_ids: list[str] | None = None,
    ) -> int:
        body: dict[str, Any] = {
            "course_id": course_id,
            "cutoff_date": format_timestamp(cutoff),
            "verify_archived": True,
        }
        if message_ids is not None:
            body["message_ids"] = message_ids
        payload = self._request(
            "DELETE", "/api/v1/chat/archival/cleanup", tenant_id, self.request_timeout, json=body
        )
        return int(payload.get("deleted_count") or 0)

    def list_courses_needing_archival(
        self, tenant_id: str, cutoff: datetime, min_messages: int
    ) -> list[CourseCandidate]:
        payload = self._request(
            "GET",
            "/api/v1/chat/archival/courses-needing-archival",
            tenant_id,
            self.request_timeout,
            params={"cutoff_date": format_timestamp(cutoff), "min_messages": min_messages},
        )
        candidates = []
        for item in payload.get("courses") or []:
            if isinstance(item, dict):
                candidates.append(
                    CourseCandidate(
                        course_id=str(item["course_id"]),
                        eligible_messages=int(item.get("message_count") or 0),
                    )
                )
            else:
                candidates.append(CourseCandidate(course_id=str(item)))
        return candidates
