"""
Search Service

Collaborator-facing entry points: indexing (documents or messages fetched
from the message store), lexical search, semantic search and removal.

Search methods never raise; failures produce an empty result. Indexing
methods never raise either; they report success so the primary action that
triggered indexing is never failed by it. No automatic fallback between
modes: callers check is_embedding_service_available() and choose.
"""
import logging
from dataclasses import asdict
from typing import Optional, Protocol, Sequence

from sqlalchemy.orm import sessionmaker

from mailsearch.core.config import Settings, get_settings
from mailsearch.core.search.dimensions import DimensionAdapter
from mailsearch.core.search.embeddings import EmbeddingProvider, create_embedding_provider
from mailsearch.core.search.errors import SearchEngineError, StoreUnavailable
from mailsearch.core.search.indexing import IndexingCoordinator
from mailsearch.core.search.lexical import LexicalIndex
from mailsearch.core.search.models import (
    RawMessage,
    SearchDocument,
    SearchFilters,
    SearchResult,
    SortMode,
)
from mailsearch.core.search.normalizer import DocumentNormalizer
from mailsearch.core.search.vector_index import VectorIndex

logger = logging.getLogger(__name__)


class MessageSource(Protocol):
    """The message store that owns the authoritative message data."""

    async def get_document(self, owner_id: int, message_id: str) -> Optional[RawMessage]:
        ...


class SearchService:
    """Routes indexing and queries to the lexical and vector indexes."""

    def __init__(
        self,
        session_factory: sessionmaker,
        provider: Optional[EmbeddingProvider] = None,
        settings: Optional[Settings] = None,
        message_source: Optional[MessageSource] = None,
        normalizer: Optional[DocumentNormalizer] = None,
        adapter: Optional[DimensionAdapter] = None,
    ):
        self.settings = settings or get_settings()
        self.provider = provider or create_embedding_provider(self.settings)
        self.message_source = message_source
        self.normalizer = normalizer or DocumentNormalizer()

        adapter = adapter or DimensionAdapter()
        adapter.check_provider(self.provider.dimensions())

        self.lexical = LexicalIndex(session_factory, self.settings.lexical_similarity_threshold)
        self.vectors = VectorIndex(session_factory, self.provider, adapter)
        self.coordinator = IndexingCoordinator(
            self.lexical,
            self.vectors,
            self.provider,
            debounce_seconds=self.settings.embedding_debounce_seconds,
        )

    async def start(self):
        """Warm up the embedding provider (loads the local model)."""
        await self.provider.warm_up()
        logger.info(
            f"Search service started (provider={self.provider.name}, "
            f"available={self.provider.is_available()})"
        )

    async def close(self):
        await self.coordinator.close()

    def _page_size(self, page_size: Optional[int]) -> int:
        if not page_size or page_size < 1:
            page_size = self.settings.default_page_size
        return min(page_size, self.settings.max_page_size)

    def _schedule_embeddings(self, owner_id: int, documents: Sequence[SearchDocument]):
        try:
            self.coordinator.enqueue_embedding_batch(owner_id, documents)
        except Exception as e:
            logger.warning(f"Could not schedule embeddings for owner {owner_id}: {e}")

    # ------------------------------------------------------------------
    # Indexing
    # ------------------------------------------------------------------

    async def index_document(self, owner_id: int, document: SearchDocument) -> bool:
        """Upsert one document and schedule its embedding. Returns False on failure."""
        try:
            self.coordinator.upsert(owner_id, document)
        except StoreUnavailable as e:
            logger.warning(f"Failed to index document {document.id} for owner {owner_id}: {e}")
            return False

        self._schedule_embeddings(owner_id, [document])
        return True

    async def index_documents(self, owner_id: int, documents: Sequence[SearchDocument]) -> dict:
        """
        Upsert many documents and schedule one embedding batch for them.

        Returns:
            Dict with 'indexed' and 'failed' counts
        """
        stats = {'indexed': 0, 'failed': 0}
        indexed = []

        for document in documents:
            try:
                self.coordinator.upsert(owner_id, document)
                indexed.append(document)
                stats['indexed'] += 1
            except StoreUnavailable as e:
                logger.warning(f"Failed to index document {document.id} for owner {owner_id}: {e}")
                stats['failed'] += 1

        if indexed:
            self._schedule_embeddings(owner_id, indexed)

        if stats['failed']:
            logger.warning(f"Indexed {stats['indexed']}/{len(documents)} documents for owner {owner_id}")
        return stats

    async def index_message(self, owner_id: int, message_id: str) -> bool:
        """Fetch a message from the message store, normalize it and index it."""
        if self.message_source is None:
            logger.warning("index_message called without a message source")
            return False

        try:
            raw = await self.message_source.get_document(owner_id, message_id)
        except Exception as e:
            logger.warning(f"Failed to fetch message {message_id} for owner {owner_id}: {e}")
            return False

        if raw is None:
            logger.warning(f"Message {message_id} not found for owner {owner_id}")
            return False

        document = self.normalizer.build_document(message_id, raw)
        return await self.index_document(owner_id, document)

    async def remove_document(self, owner_id: int, message_id: str) -> bool:
        """Remove a document and its embedding. Returns False if nothing was removed."""
        self.coordinator.discard(owner_id, message_id)
        try:
            removed = self.lexical.remove(owner_id, message_id)
        except StoreUnavailable as e:
            logger.warning(f"Failed to remove document {message_id} for owner {owner_id}: {e}")
            return False

        if removed:
            logger.debug(f"Removed document {message_id} for owner {owner_id}")
        return removed

    async def backfill(self, owner_id: int, limit: Optional[int] = None) -> int:
        """Schedule embeddings for documents that are missing them. Returns the number scheduled."""
        try:
            return await self.coordinator.backfill(owner_id, limit)
        except SearchEngineError as e:
            logger.warning(f"Backfill failed for owner {owner_id}: {e}")
            return 0

    async def flush(self, owner_id: Optional[int] = None) -> int:
        return await self.coordinator.flush(owner_id)

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search_lexical(
        self,
        owner_id: int,
        query: str,
        page: int = 1,
        page_size: Optional[int] = None,
        filters: Optional[SearchFilters] = None,
        sort: SortMode = SortMode.RELEVANCE,
    ) -> SearchResult:
        try:
            total, items = self.lexical.search(
                owner_id,
                query,
                filters=filters,
                page=page,
                page_size=self._page_size(page_size),
                sort=sort,
            )
            return SearchResult(total=total, items=items)
        except Exception as e:
            logger.error(f"Lexical search failed for owner {owner_id}: {e}", exc_info=True)
            return SearchResult.empty()

    async def search_semantic(
        self,
        owner_id: int,
        query: str,
        page: int = 1,
        page_size: Optional[int] = None,
        filters: Optional[SearchFilters] = None,
    ) -> SearchResult:
        if not query or not query.strip():
            return SearchResult.empty()

        try:
            total, items = await self.vectors.search(
                owner_id,
                query.strip(),
                filters=filters,
                page=page,
                page_size=self._page_size(page_size),
            )
            return SearchResult(total=total, items=items)
        except Exception as e:
            logger.error(f"Semantic search failed for owner {owner_id}: {e}", exc_info=True)
            return SearchResult.empty()

    def is_embedding_service_available(self) -> bool:
        return self.provider.is_available()

    def stats(self, owner_id: int) -> dict:
        """Index statistics for one owner."""
        quota = self.provider.quota_state()
        stats = {
            'provider': self.provider.name,
            'model': self.provider.model_name,
            'available': self.provider.is_available(),
            'dimensions': self.provider.dimensions(),
            'pending_batch': owner_id in self.coordinator.pending_owners,
            'quota': asdict(quota) if quota is not None else None,
        }
        try:
            stats['documents'] = self.lexical.count(owner_id)
            stats['embeddings'] = self.vectors.count(owner_id)
        except StoreUnavailable as e:
            logger.error(f"Failed to read index stats for owner {owner_id}: {e}")
            stats['documents'] = None
            stats['embeddings'] = None
        return stats
