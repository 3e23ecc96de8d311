"""
Vector Index

Nearest-neighbor search over canonical-width embeddings.

PostgreSQL ranks with pgvector's cosine distance operator (HNSW index).
Other databases fall back to an in-process numpy scan over the owner's
vectors, which is fine for development-sized mailboxes.
"""
import hashlib
import logging
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

import numpy as np
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from mailsearch.core.database.models import EmbeddingRecordRow, SearchDocumentRow
from mailsearch.core.search.dimensions import DimensionAdapter
from mailsearch.core.search.embeddings import EmbeddingProvider
from mailsearch.core.search.errors import StoreUnavailable
from mailsearch.core.search.lexical import filter_conditions, page_bounds, row_to_document, row_to_item
from mailsearch.core.search.models import SearchDocument, SearchFilters, SearchResultItem

logger = logging.getLogger(__name__)

# Rows fetched per round trip when scanning for stale embeddings
SCAN_CHUNK_SIZE = 500


def content_hash(text: str) -> str:
    """SHA-256 of the embedded text, used to detect content changes."""
    return hashlib.sha256(text.encode('utf-8')).hexdigest()


def cosine_similarities(matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
    """Cosine similarity of every row of `matrix` against `query` (0 for zero vectors)."""
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    dots = matrix @ query
    with np.errstate(divide='ignore', invalid='ignore'):
        sims = np.where(norms > 0, dots / norms, 0.0)
    return sims


class VectorIndex:
    """Embedding storage and semantic ranking, one record per document."""

    def __init__(
        self,
        session_factory: sessionmaker,
        provider: EmbeddingProvider,
        adapter: Optional[DimensionAdapter] = None,
    ):
        self._session_factory = session_factory
        self.provider = provider
        self.adapter = adapter or DimensionAdapter()

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _owner_embeddings(self, db, owner_id: int):
        return db.query(EmbeddingRecordRow).join(
            SearchDocumentRow, EmbeddingRecordRow.document_id == SearchDocumentRow.id
        ).filter(SearchDocumentRow.owner_id == owner_id)

    def count(self, owner_id: int) -> int:
        try:
            with self._session_factory() as db:
                return self._owner_embeddings(db, owner_id).count()
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Vector store unavailable: {e}") from e

    def has_embeddings(self, owner_id: int) -> bool:
        try:
            with self._session_factory() as db:
                return self._owner_embeddings(db, owner_id).first() is not None
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Vector store unavailable: {e}") from e

    def embedding_candidates(
        self, owner_id: int, message_ids: Sequence[str]
    ) -> List[Tuple[int, SearchDocument, Optional[str]]]:
        """
        Current state of the given documents.

        Returns:
            (row id, document as currently indexed, stored content hash or None)
            for each message that is still in the lexical index
        """
        if not message_ids:
            return []
        try:
            with self._session_factory() as db:
                rows = (
                    db.query(SearchDocumentRow, EmbeddingRecordRow.content_hash)
                    .outerjoin(EmbeddingRecordRow, EmbeddingRecordRow.document_id == SearchDocumentRow.id)
                    .filter(
                        SearchDocumentRow.owner_id == owner_id,
                        SearchDocumentRow.message_id.in_(list(message_ids)),
                    )
                    .all()
                )
                return [(row.id, row_to_document(row), stored_hash) for row, stored_hash in rows]
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Vector store unavailable: {e}") from e

    def stale_documents(self, owner_id: int, limit: Optional[int] = None) -> List[SearchDocument]:
        """Documents with body text whose embedding is missing or out of date."""
        stale: List[SearchDocument] = []
        try:
            with self._session_factory() as db:
                query = (
                    db.query(SearchDocumentRow, EmbeddingRecordRow.content_hash)
                    .outerjoin(EmbeddingRecordRow, EmbeddingRecordRow.document_id == SearchDocumentRow.id)
                    .filter(
                        SearchDocumentRow.owner_id == owner_id,
                        func.coalesce(SearchDocumentRow.body_text, '') != '',
                    )
                    .order_by(SearchDocumentRow.received_at.desc().nulls_last(), SearchDocumentRow.id.desc())
                )
                for row, stored_hash in query.yield_per(SCAN_CHUNK_SIZE):
                    document = row_to_document(row)
                    if stored_hash != content_hash(document.embedding_text()):
                        stale.append(document)
                        if limit and len(stale) >= limit:
                            break
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Vector store unavailable: {e}") from e
        return stale

    def store(self, document_row_id: int, vector: Sequence[float], text_hash: str, model_name: str):
        """
        Write (or overwrite) the embedding of one document in a single commit.

        The vector is adapted to the canonical storage width first.
        """
        values = {
            'vector': self.adapter.adapt(vector),
            'embedding_model': model_name,
            'content_hash': text_hash,
            'updated_at': datetime.utcnow(),
        }
        try:
            with self._session_factory() as db:
                existing = db.query(EmbeddingRecordRow.id).filter(
                    EmbeddingRecordRow.document_id == document_row_id
                ).first()

                if existing is None:
                    db.add(EmbeddingRecordRow(document_id=document_row_id, **values))
                else:
                    # Loaded vectors are numpy arrays; bypass ORM change comparison
                    db.execute(
                        update(EmbeddingRecordRow)
                        .where(EmbeddingRecordRow.document_id == document_row_id)
                        .values(**values)
                        .execution_options(synchronize_session=False)
                    )
                db.commit()
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Vector store unavailable: {e}") from e

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search(
        self,
        owner_id: int,
        query: str,
        filters: Optional[SearchFilters] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[int, List[SearchResultItem]]:
        """
        Rank the owner's embedded documents by cosine similarity to `query`.

        Returns (0, []) without calling the provider when it is unavailable or
        the owner has no embeddings. Any failure mid-query also yields (0, []).
        """
        if not self.provider.is_available():
            logger.debug("Semantic search skipped: embedding provider unavailable")
            return 0, []

        offset, limit = page_bounds(page, page_size)

        try:
            if not self.has_embeddings(owner_id):
                return 0, []

            query_vector = self.adapter.adapt(await self.provider.embed(query))
            if not np.any(query_vector):
                logger.warning(f"Semantic search owner={owner_id}: query embedding is all zeros")
                return 0, []

            with self._session_factory() as db:
                conditions = [SearchDocumentRow.owner_id == owner_id, *filter_conditions(filters)]

                if db.get_bind().dialect.name == 'postgresql':
                    total, items = self._search_pgvector(db, conditions, query_vector, offset, limit)
                else:
                    total, items = self._search_in_memory(db, conditions, query_vector, offset, limit)

            logger.debug(f"Semantic search owner={owner_id}: {total} candidates, {len(items)} returned")
            return total, items

        except Exception as e:
            logger.error(f"Semantic search failed for owner {owner_id}: {e}", exc_info=True)
            return 0, []

    def _search_pgvector(
        self, db, conditions, query_vector, offset, limit
    ) -> Tuple[int, List[SearchResultItem]]:
        # Zero vectors have no cosine distance (NaN); keep them out of total and ranking
        conditions = [*conditions, func.vector_norm(EmbeddingRecordRow.vector) > 0]

        total = db.execute(
            select(func.count(EmbeddingRecordRow.id))
            .join(SearchDocumentRow, EmbeddingRecordRow.document_id == SearchDocumentRow.id)
            .where(*conditions)
        ).scalar() or 0
        if total == 0:
            return 0, []

        distance = EmbeddingRecordRow.vector.cosine_distance(query_vector)
        rows = db.execute(
            select(SearchDocumentRow, (1 - distance).label("similarity"))
            .join(EmbeddingRecordRow, EmbeddingRecordRow.document_id == SearchDocumentRow.id)
            .where(*conditions)
            .order_by(distance, SearchDocumentRow.received_at.desc().nulls_last(), SearchDocumentRow.id.desc())
            .offset(offset)
            .limit(limit)
        ).all()

        return total, [row_to_item(row, float(similarity)) for row, similarity in rows]

    def _search_in_memory(
        self, db, conditions, query_vector, offset, limit
    ) -> Tuple[int, List[SearchResultItem]]:
        # Rows carry numpy arrays, so no ORM row de-duplication (legacy Query would hash them)
        rows = db.execute(
            select(SearchDocumentRow, EmbeddingRecordRow.vector)
            .join(EmbeddingRecordRow, EmbeddingRecordRow.document_id == SearchDocumentRow.id)
            .where(*conditions)
        ).all()

        candidates = []
        for row, vector in rows:
            vector = np.asarray(vector, dtype=float)
            if np.any(vector):
                candidates.append((row, vector))
        if not candidates:
            return 0, []

        matrix = np.vstack([vector for _, vector in candidates])
        sims = cosine_similarities(matrix, np.asarray(query_vector, dtype=float))

        def rank_key(pair):
            (row, _), sim = pair
            received = row.received_at.timestamp() if row.received_at else float('-inf')
            return -sim, -received, -row.id

        ranked = sorted(zip(candidates, sims), key=rank_key)
        return len(candidates), [row_to_item(row, float(sim)) for (row, _), sim in ranked[offset:offset + limit]]
