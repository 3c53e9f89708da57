"""End to end: 1,500 old messages archived into two batches, then found by search."""

from sqlalchemy import select

from chat_archive.models_archive import ArchivalJob, ArchiveBatch, JobStatus

from tests.conftest import NOW, make_messages

PHRASE = "quantum entanglement seminar"


def _content(i):
    return f"we should revisit the {PHRASE} notes" if i == 1200 else f"discussion note number {i}"


def test_archive_then_search_archived_message(archiver, search_engine, live, storage, session_factory):
    live.add(make_messages(1500, content=_content))

    stats = archiver.run("t1", now=NOW)

    assert stats.error is None
    assert stats.courses_processed == 1
    assert stats.total_processed == 1500
    assert stats.archived_messages == 1500
    assert stats.failed_messages == 0
    assert live.all_messages("t1") == []

    with session_factory() as session:
        batches = list(session.scalars(select(ArchiveBatch).order_by(ArchiveBatch.batch_index)))
        jobs = list(session.scalars(select(ArchivalJob)))
    assert [b.message_count for b in batches] == [1000, 500]
    assert [b.batch_index for b in batches] == [0, 1]
    assert len(jobs) == 1
    assert jobs[0].status == JobStatus.COMPLETED
    assert jobs[0].progress == 100.0
    assert jobs[0].messages_archived == 1500
    assert storage.list_prefix("chat-archive/2026/10/19/c1/") == sorted(b.storage_path for b in batches)

    response = search_engine.search("t1", "quantum entanglement")

    assert response.metadata.error is False
    assert response.metadata.integrity_failures == 0
    assert len(response.results) == 1
    hit = response.results[0]
    assert hit.message.id == "m01200"
    assert hit.archived is True
    assert hit.source == "archive"
    assert hit.archive_path == batches[1].storage_path
    assert hit.archive_path == "chat-archive/2026/10/19/c1/batch-1-120000.json"
    assert PHRASE in hit.message.content


def test_second_run_is_a_no_op(archiver, live, session_factory):
    live.add(make_messages(1500))
    archiver.run("t1", now=NOW)

    again = archiver.run("t1", now=NOW)

    assert again.courses_processed == 0
    assert again.archived_messages == 0
    with session_factory() as session:
        assert len(list(session.scalars(select(ArchiveBatch)))) == 2
        assert len(list(session.scalars(select(ArchivalJob)))) == 1
