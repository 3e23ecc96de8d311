"""
Indexing Coordinator

Writes documents to the lexical index synchronously and schedules embedding
generation as debounced, per-owner batch jobs.

List views touch many documents in short bursts; every enqueue for an owner
restarts that owner's timer, so a burst collapses into one provider call.
Embedding failures never surface to the code that indexed the document.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set

from mailsearch.core.search.embeddings import EmbeddingProvider
from mailsearch.core.search.errors import EmbeddingError, StoreUnavailable
from mailsearch.core.search.lexical import LexicalIndex
from mailsearch.core.search.models import SearchDocument
from mailsearch.core.search.vector_index import VectorIndex, content_hash

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_SECONDS = 5.0


@dataclass
class PendingBatchJob:
    """Documents waiting for one owner's debounce timer."""
    owner_id: int
    documents: Dict[str, SearchDocument] = field(default_factory=dict)
    task: Optional[asyncio.Task] = None


class IndexingCoordinator:
    """
    Upserts documents and owns the per-owner debounce map.

    At most one PendingBatchJob exists per owner. Once a job's timer fires
    the job leaves the map, so later enqueues start a fresh job instead of
    cancelling one that is already running.
    """

    def __init__(
        self,
        lexical: LexicalIndex,
        vectors: VectorIndex,
        provider: EmbeddingProvider,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
    ):
        self.lexical = lexical
        self.vectors = vectors
        self.provider = provider
        self.debounce_seconds = debounce_seconds

        self._pending: Dict[int, PendingBatchJob] = {}
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending_owners(self) -> List[int]:
        return list(self._pending)

    def upsert(self, owner_id: int, document: SearchDocument) -> int:
        """Write lexical fields. Never triggers embedding generation."""
        return self.lexical.upsert(owner_id, document)

    def enqueue_embedding_batch(self, owner_id: int, documents: Sequence[SearchDocument]):
        """Add documents to the owner's pending job and restart its timer."""
        if not documents:
            return

        job = self._pending.get(owner_id)
        if job is None:
            job = PendingBatchJob(owner_id=owner_id)
            self._pending[owner_id] = job

        for document in documents:
            job.documents[document.id] = document

        if job.task is not None and not job.task.done():
            job.task.cancel()

        job.task = asyncio.ensure_future(self._fire_after_delay(job))
        self._tasks.add(job.task)
        job.task.add_done_callback(self._tasks.discard)

        logger.debug(f"Embedding batch for owner {owner_id}: {len(job.documents)} documents pending")

    def discard(self, owner_id: int, message_id: str):
        """Drop a document from the owner's pending job, if present."""
        job = self._pending.get(owner_id)
        if job is not None:
            job.documents.pop(message_id, None)

    async def _fire_after_delay(self, job: PendingBatchJob):
        await asyncio.sleep(self.debounce_seconds)

        if self._pending.get(job.owner_id) is job:
            del self._pending[job.owner_id]

        try:
            await self.run_batch(job.owner_id, list(job.documents.values()))
        except Exception as e:
            logger.error(f"Embedding batch for owner {job.owner_id} failed: {e}", exc_info=True)

    async def run_batch(self, owner_id: int, documents: Sequence[SearchDocument]) -> int:
        """
        Generate and store embeddings for documents that need one.

        A document needs one when it has body text and its stored record is
        missing or was computed from different text.

        Returns:
            Number of embeddings stored
        """
        with_body = [d for d in documents if d.body_text and d.body_text.strip()]
        if not with_body:
            return 0

        try:
            candidates = self.vectors.embedding_candidates(owner_id, [d.id for d in with_body])
        except StoreUnavailable as e:
            logger.warning(f"Skipping embedding batch for owner {owner_id}: {e}")
            return 0

        work = []
        for row_id, document, stored_hash in candidates:
            # The indexed copy may have changed since it was enqueued
            if not document.body_text.strip():
                continue
            text = document.embedding_text()
            text_hash = content_hash(text)
            if stored_hash == text_hash:
                continue
            work.append((row_id, text, text_hash))

        if not work:
            logger.debug(f"Embedding batch for owner {owner_id}: nothing to do")
            return 0

        logger.info(f"Generating embeddings for {len(work)} documents (owner {owner_id})")

        try:
            vectors = await self.provider.embed_batch([text for _, text, _ in work])
        except EmbeddingError as e:
            # Search degrades to lexical-only until the provider recovers
            logger.warning(f"Skipping embedding batch for owner {owner_id}: {e}")
            return 0

        stored = 0
        for (row_id, _, text_hash), vector in zip(work, vectors):
            if vector is None:
                continue
            try:
                self.vectors.store(row_id, vector, text_hash, self.provider.model_name)
                stored += 1
            except StoreUnavailable as e:
                logger.warning(f"Failed to store embedding for document row {row_id}: {e}")

        logger.info(f"Stored {stored}/{len(work)} embeddings for owner {owner_id}")
        return stored

    async def flush(self, owner_id: Optional[int] = None) -> int:
        """
        Run pending jobs now instead of waiting for their timers.

        Also waits for jobs whose timers already fired.

        Returns:
            Number of embeddings stored by the flushed jobs
        """
        owners = [owner_id] if owner_id is not None else list(self._pending)

        stored = 0
        for owner in owners:
            job = self._pending.pop(owner, None)
            if job is None:
                continue
            if job.task is not None:
                job.task.cancel()
            stored += await self.run_batch(owner, list(job.documents.values()))

        running = [t for t in self._tasks if not t.done()]
        if running:
            await asyncio.gather(*running, return_exceptions=True)
        return stored

    async def backfill(self, owner_id: int, limit: Optional[int] = None) -> int:
        """Enqueue the owner's documents whose embeddings are missing or stale."""
        documents = self.vectors.stale_documents(owner_id, limit)
        if documents:
            logger.info(f"Backfilling embeddings for {len(documents)} documents (owner {owner_id})")
            self.enqueue_embedding_batch(owner_id, documents)
        return len(documents)

    async def close(self):
        """Cancel pending and running jobs."""
        tasks = list(self._tasks)
        self._pending.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
