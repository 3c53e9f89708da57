"""Tests for chat_archive.ranking."""

from datetime import timedelta

import pytest

from chat_archive.messages import Message
from chat_archive.ranking import lexical_relevance, merge_and_rank
from chat_archive.results import SearchHit

from tests.conftest import NOW


@pytest.mark.parametrize(
    "query, content, expected",
    [
        ("final exam", "The FINAL exam is Monday", 1.0),
        ("exam room", "exam schedule", 0.5),
        ("lab", "collaboration", 1.0),
        ("calc notes", "history essay", 0.0),
        ("   ", "anything", 0.0),
    ],
)
def test_lexical_relevance(query, content, expected):
    assert lexical_relevance(query, content) == expected


def _hit(mid, score, minutes=0, archived=False):
    message = Message(
        id=mid, course_id="c1", tenant_id="t1", author_id=None, content="x",
        created_at=NOW + timedelta(minutes=minutes),
    )
    return SearchHit(message=message, archived=archived, score=score, source="archive" if archived else "live")


def test_merge_keeps_live_copy_of_duplicates():
    merged = merge_and_rank([_hit("a", 0.5)], [_hit("a", 1.0, archived=True)], limit=10)
    assert len(merged) == 1
    assert merged[0].archived is False


def test_merge_orders_by_score_recency_then_id():
    merged = merge_and_rank(
        [_hit("b", 1.0, 0), _hit("c", 0.5, 9)],
        [_hit("a", 1.0, 0, archived=True), _hit("d", 1.0, 5, archived=True)],
        limit=10,
    )
    assert [h.message.id for h in merged] == ["d", "a", "b", "c"]


def test_merge_truncates():
    hits = [_hit(f"m{i}", 1.0, i) for i in range(10)]
    assert len(merge_and_rank(hits, [], limit=3)) == 3
