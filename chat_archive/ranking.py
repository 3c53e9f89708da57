"""
Lexical relevance scoring and the merge/rank step for combined search results.

The scorer is pluggable (any Callable[[query, content], float]); merge and tie-breaks do not
depend on how scores are produced.
"""

from __future__ import annotations

from typing import Callable, Iterable

from chat_archive.results import SearchHit

Scorer = Callable[[str, str], float]


def lexical_relevance(query: str, content: str) -> float:
    """
    Score content against query in [0, 1].

    Exact (case-insensitive) substring match scores 1.0; otherwise the fraction of query words
    that occur as a substring of some content word.
    """
    q = query.strip().lower()
    text = content.lower()
    if not q:
        return 0.0
    if q in text:
        return 1.0
    query_words = q.split()
    content_words = text.split()
    matches = sum(1 for qw in query_words if any(qw in cw for cw in content_words))
    return matches / len(query_words)


def _sort_key(hit: SearchHit) -> tuple:
    # score desc, newest first, then message id for a total order
    return (-hit.score, -hit.message.created_at.timestamp(), hit.message.id)


def merge_and_rank(
    live_hits: Iterable[SearchHit],
    archived_hits: Iterable[SearchHit],
    limit: int,
) -> list[SearchHit]:
    """
    Combine both result sets, one hit per message id, ranked by score then recency.

    A message present in both sets keeps its live copy.
    """
    by_id: dict[str, SearchHit] = {}
    for hit in live_hits:
        by_id.setdefault(hit.message.id, hit)
    for hit in archived_hits:
        by_id.setdefault(hit.message.id, hit)
    return sorted(by_id.values(), key=_sort_key)[:limit]
