"""
Tests for IndexingCoordinator: debounced per-owner batches, change
detection, failure isolation, flush/close/backfill.
"""
import asyncio
import logging

import pytest

from mailsearch.core.search.indexing import IndexingCoordinator
from mailsearch.core.search.lexical import LexicalIndex
from mailsearch.core.search.vector_index import VectorIndex

OWNER = 42
DEBOUNCE = 0.05


@pytest.fixture
def coordinator(session_factory, fake_provider):
    lexical = LexicalIndex(session_factory)
    vectors = VectorIndex(session_factory, fake_provider)
    return IndexingCoordinator(lexical, vectors, fake_provider, debounce_seconds=DEBOUNCE)


async def wait_for_timers():
    await asyncio.sleep(DEBOUNCE * 6)


class TestDebounce:

    @pytest.mark.asyncio
    async def test_burst_collapses_into_one_batch(self, coordinator, fake_provider, make_document):
        docs = [make_document(f"m{i}", subject=f"Subject {i}", body_text=f"Body {i}") for i in range(10)]
        for doc in docs:
            coordinator.upsert(OWNER, doc)
            coordinator.enqueue_embedding_batch(OWNER, [doc])

        assert fake_provider.batch_calls == []
        await wait_for_timers()

        assert len(fake_provider.batch_calls) == 1
        assert sorted(fake_provider.batch_calls[0]) == sorted(d.embedding_text() for d in docs)
        assert coordinator.vectors.count(OWNER) == 10

    @pytest.mark.asyncio
    async def test_owners_batched_separately(self, coordinator, fake_provider, make_document):
        for owner in (1, 2):
            doc = make_document("m", subject="Hello", body_text=f"Body for {owner}")
            coordinator.upsert(owner, doc)
            coordinator.enqueue_embedding_batch(owner, [doc])

        await wait_for_timers()

        assert len(fake_provider.batch_calls) == 2

    @pytest.mark.asyncio
    async def test_upsert_alone_never_embeds(self, coordinator, fake_provider, make_document):
        coordinator.upsert(OWNER, make_document("m", body_text="Body"))
        await wait_for_timers()

        assert fake_provider.batch_calls == []

    @pytest.mark.asyncio
    async def test_enqueue_after_fire_starts_new_batch(self, coordinator, fake_provider, make_document):
        first = make_document("a", body_text="First")
        coordinator.upsert(OWNER, first)
        coordinator.enqueue_embedding_batch(OWNER, [first])
        await wait_for_timers()

        second = make_document("b", body_text="Second")
        coordinator.upsert(OWNER, second)
        coordinator.enqueue_embedding_batch(OWNER, [second])
        await wait_for_timers()

        assert fake_provider.batch_calls == [["First"], ["Second"]]


class TestBatchFiltering:

    @pytest.mark.asyncio
    async def test_documents_without_body_skipped(self, coordinator, fake_provider, make_document):
        doc = make_document("m", subject="Only a subject")
        coordinator.upsert(OWNER, doc)

        stored = await coordinator.run_batch(OWNER, [doc])

        assert stored == 0
        assert fake_provider.batch_calls == []

    @pytest.mark.asyncio
    async def test_unchanged_documents_not_reembedded(self, coordinator, fake_provider, make_document):
        doc = make_document("m", subject="Hi", body_text="Body")
        coordinator.upsert(OWNER, doc)

        assert await coordinator.run_batch(OWNER, [doc]) == 1
        assert await coordinator.run_batch(OWNER, [doc]) == 0
        assert len(fake_provider.batch_calls) == 1

    @pytest.mark.asyncio
    async def test_changed_documents_reembedded(self, coordinator, fake_provider, make_document):
        coordinator.upsert(OWNER, make_document("m", subject="Hi", body_text="Old body"))
        await coordinator.run_batch(OWNER, [make_document("m", body_text="Old body")])

        updated = make_document("m", subject="Hi", body_text="New body")
        coordinator.upsert(OWNER, updated)
        stored = await coordinator.run_batch(OWNER, [updated])

        assert stored == 1
        assert fake_provider.batch_calls[-1] == ["Hi New body"]
        assert coordinator.vectors.count(OWNER) == 1

    @pytest.mark.asyncio
    async def test_removed_documents_skipped(self, coordinator, fake_provider, make_document):
        doc = make_document("m", body_text="Body")

        assert await coordinator.run_batch(OWNER, [doc]) == 0
        assert fake_provider.batch_calls == []

    @pytest.mark.asyncio
    async def test_holes_not_stored(self, coordinator, fake_provider, make_document):
        good = make_document("good", body_text="Good")
        bad = make_document("bad", body_text="Bad")
        coordinator.upsert(OWNER, good)
        coordinator.upsert(OWNER, bad)
        fake_provider.fail_texts = {"Bad"}

        stored = await coordinator.run_batch(OWNER, [good, bad])

        assert stored == 1
        assert coordinator.vectors.count(OWNER) == 1


class TestFailureIsolation:

    @pytest.mark.asyncio
    async def test_unavailable_provider_logged_and_skipped(self, coordinator, fake_provider, make_document, caplog):
        fake_provider.available = False
        doc = make_document("m", body_text="Body")
        coordinator.upsert(OWNER, doc)

        with caplog.at_level(logging.WARNING):
            coordinator.enqueue_embedding_batch(OWNER, [doc])
            await wait_for_timers()

        assert coordinator.vectors.count(OWNER) == 0
        assert "Skipping embedding batch" in caplog.text
        # The lexical write is untouched
        assert coordinator.lexical.get(OWNER, "m") is not None


class TestFlushCloseBackfill:

    @pytest.mark.asyncio
    async def test_flush_runs_pending_jobs_immediately(self, session_factory, fake_provider, make_document):
        coordinator = IndexingCoordinator(
            LexicalIndex(session_factory), VectorIndex(session_factory, fake_provider),
            fake_provider, debounce_seconds=60,
        )
        doc = make_document("m", body_text="Body")
        coordinator.upsert(OWNER, doc)
        coordinator.enqueue_embedding_batch(OWNER, [doc])

        stored = await coordinator.flush()

        assert stored == 1
        assert coordinator.pending_owners == []
        assert len(fake_provider.batch_calls) == 1

    @pytest.mark.asyncio
    async def test_close_cancels_pending_jobs(self, coordinator, fake_provider, make_document):
        doc = make_document("m", body_text="Body")
        coordinator.upsert(OWNER, doc)
        coordinator.enqueue_embedding_batch(OWNER, [doc])

        await coordinator.close()
        await wait_for_timers()

        assert fake_provider.batch_calls == []
        assert coordinator.pending_owners == []

    @pytest.mark.asyncio
    async def test_discard_drops_pending_document(self, coordinator, fake_provider, make_document):
        keep = make_document("keep", body_text="Keep")
        drop = make_document("drop", body_text="Drop")
        coordinator.upsert(OWNER, keep)
        coordinator.upsert(OWNER, drop)
        coordinator.enqueue_embedding_batch(OWNER, [keep, drop])

        coordinator.discard(OWNER, "drop")
        await coordinator.flush(OWNER)

        assert fake_provider.batch_calls == [["Keep"]]

    @pytest.mark.asyncio
    async def test_backfill_enqueues_stale_documents(self, coordinator, fake_provider, make_document):
        for i in range(3):
            coordinator.upsert(OWNER, make_document(f"m{i}", body_text=f"Body {i}"))
        coordinator.upsert(OWNER, make_document("empty", subject="No body"))

        scheduled = await coordinator.backfill(OWNER)
        await coordinator.flush(OWNER)

        assert scheduled == 3
        assert coordinator.vectors.count(OWNER) == 3
        assert await coordinator.backfill(OWNER) == 0
