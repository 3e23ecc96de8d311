"""
Lexical Index

Stores the lexical fields of each document and ranks them against a query
with substring and trigram-similarity matching (pg_trgm on PostgreSQL, the
registered Python functions on SQLite).

Ranking (highest wins):
- 3.0  subject contains the query
- 2.5  sender name or sender email contains the query
- 1.5  snippet contains the query
- otherwise trigram similarity: subject x2.0, sender name x1.5, sender email x1.5

Literal matches always outrank fuzzy ones. Ties are broken by newest first.
"""
import logging
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import Float, and_, case, func, literal, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from mailsearch.core.database.models import SearchDocumentRow
from mailsearch.core.search.errors import StoreUnavailable
from mailsearch.core.search.models import (
    SearchDocument,
    SearchFilters,
    SearchResultItem,
    SortMode,
)

logger = logging.getLogger(__name__)

DEFAULT_SIMILARITY_THRESHOLD = 0.05

SUBJECT_LITERAL_SCORE = 3.0
SENDER_LITERAL_SCORE = 2.5
SNIPPET_LITERAL_SCORE = 1.5
SUBJECT_SIMILARITY_WEIGHT = 2.0
SENDER_NAME_SIMILARITY_WEIGHT = 1.5
SENDER_EMAIL_SIMILARITY_WEIGHT = 1.5


def _contains(column, needle: str):
    """Case-insensitive substring match; LIKE wildcards in `needle` are literal."""
    return func.lower(func.coalesce(column, '')).contains(needle.lower(), autoescape=True)


def _similarity(column, term: str):
    return func.similarity(func.coalesce(column, ''), term, type_=Float)


def filter_conditions(filters: Optional[SearchFilters]) -> list:
    """Required (AND) predicates for status, sender and unread filters."""
    if filters is None:
        return []

    conditions = []
    if filters.unread_only:
        conditions.append(func.lower(SearchDocumentRow.status) == 'inbox')
    if filters.status:
        conditions.append(func.lower(SearchDocumentRow.status) == filters.status.strip().lower())
    if filters.sender and filters.sender.strip():
        sender = filters.sender.strip()
        conditions.append(or_(
            _contains(SearchDocumentRow.sender_name, sender),
            _contains(SearchDocumentRow.sender_email, sender),
        ))
    return conditions


def row_to_document(row: SearchDocumentRow) -> SearchDocument:
    return SearchDocument(
        id=row.message_id,
        subject=row.subject,
        sender_name=row.sender_name,
        sender_email=row.sender_email,
        snippet=row.snippet,
        body_text=row.body_text,
        received_at=row.received_at,
        status=row.status or "inbox",
    )


def row_to_item(row: SearchDocumentRow, score: float) -> SearchResultItem:
    return SearchResultItem(
        id=row.message_id,
        subject=row.subject or "",
        sender_name=row.sender_name or "",
        sender_email=row.sender_email or "",
        snippet=row.snippet or "",
        received_at=row.received_at,
        status=row.status or "inbox",
        score=float(score),
    )


def page_bounds(page: int, page_size: int) -> Tuple[int, int]:
    """(offset, limit) for a 1-based page."""
    page = max(1, page or 1)
    page_size = max(1, page_size or 1)
    return (page - 1) * page_size, page_size


class LexicalIndex:
    """Lexical store and ranking over SearchDocumentRow."""

    def __init__(self, session_factory: sessionmaker, similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD):
        self._session_factory = session_factory
        self.similarity_threshold = similarity_threshold

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _write(self, db: Session, owner_id: int, document: SearchDocument) -> SearchDocumentRow:
        row = db.query(SearchDocumentRow).filter(
            SearchDocumentRow.owner_id == owner_id,
            SearchDocumentRow.message_id == document.id,
        ).one_or_none()

        if row is None:
            row = SearchDocumentRow(owner_id=owner_id, message_id=document.id)
            db.add(row)

        row.subject = document.subject
        row.sender_name = document.sender_name
        row.sender_email = document.sender_email
        row.snippet = document.snippet
        row.body_text = document.body_text
        row.received_at = document.received_at
        row.status = document.status or "inbox"

        db.flush()
        return row

    def upsert(self, owner_id: int, document: SearchDocument) -> int:
        """
        Insert or overwrite the lexical fields of one document.

        Idempotent per (owner_id, document.id).

        Returns:
            Row id of the stored document

        Raises:
            StoreUnavailable: If the store cannot be written
        """
        try:
            try:
                with self._session_factory() as db:
                    row = self._write(db, owner_id, document)
                    db.commit()
                    return row.id
            except IntegrityError:
                # A concurrent writer inserted the same (owner, message); the retry updates it
                logger.debug(f"Concurrent insert for {owner_id}/{document.id}, retrying as update")
                with self._session_factory() as db:
                    row = self._write(db, owner_id, document)
                    db.commit()
                    return row.id
        except SQLAlchemyError as e:
            logger.warning(f"Failed to upsert document {document.id} for owner {owner_id}: {e}")
            raise StoreUnavailable(f"Lexical store unavailable: {e}") from e

    def remove(self, owner_id: int, message_id: str) -> bool:
        """Delete a document (and its embedding). Returns False if it was not indexed."""
        try:
            with self._session_factory() as db:
                row = db.query(SearchDocumentRow).filter(
                    SearchDocumentRow.owner_id == owner_id,
                    SearchDocumentRow.message_id == message_id,
                ).one_or_none()
                if row is None:
                    return False
                db.delete(row)
                db.commit()
                return True
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Lexical store unavailable: {e}") from e

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, owner_id: int, message_id: str) -> Optional[SearchDocument]:
        try:
            with self._session_factory() as db:
                row = db.query(SearchDocumentRow).filter(
                    SearchDocumentRow.owner_id == owner_id,
                    SearchDocumentRow.message_id == message_id,
                ).one_or_none()
                return row_to_document(row) if row else None
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Lexical store unavailable: {e}") from e

    def count(self, owner_id: int) -> int:
        try:
            with self._session_factory() as db:
                return db.query(func.count(SearchDocumentRow.id)).filter(
                    SearchDocumentRow.owner_id == owner_id
                ).scalar() or 0
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Lexical store unavailable: {e}") from e

    def search(
        self,
        owner_id: int,
        query: str,
        filters: Optional[SearchFilters] = None,
        page: int = 1,
        page_size: int = 20,
        sort: SortMode = SortMode.RELEVANCE,
    ) -> Tuple[int, List[SearchResultItem]]:
        """
        Rank the owner's documents against `query`.

        Returns:
            (total matches, ranked page of result items). Any execution
            failure is logged and yields (0, []).
        """
        term = (query or "").strip()
        sort = SortMode(sort)
        offset, limit = page_bounds(page, page_size)

        conditions = [SearchDocumentRow.owner_id == owner_id, *filter_conditions(filters)]

        if term:
            subject_hit = _contains(SearchDocumentRow.subject, term)
            name_hit = _contains(SearchDocumentRow.sender_name, term)
            email_hit = _contains(SearchDocumentRow.sender_email, term)
            snippet_hit = _contains(SearchDocumentRow.snippet, term)

            subject_sim = _similarity(SearchDocumentRow.subject, term)
            name_sim = _similarity(SearchDocumentRow.sender_name, term)
            email_sim = _similarity(SearchDocumentRow.sender_email, term)

            threshold = self.similarity_threshold
            conditions.append(and_(
                or_(
                    SearchDocumentRow.subject.isnot(None),
                    SearchDocumentRow.sender_name.isnot(None),
                    SearchDocumentRow.sender_email.isnot(None),
                ),
                or_(
                    subject_hit, name_hit, email_hit, snippet_hit,
                    subject_sim > threshold, name_sim > threshold, email_sim > threshold,
                ),
            ))

            score = func.greatest(
                case((subject_hit, literal(SUBJECT_LITERAL_SCORE)), else_=literal(0.0)),
                case((or_(name_hit, email_hit), literal(SENDER_LITERAL_SCORE)), else_=literal(0.0)),
                case((snippet_hit, literal(SNIPPET_LITERAL_SCORE)), else_=literal(0.0)),
                subject_sim * SUBJECT_SIMILARITY_WEIGHT,
                name_sim * SENDER_NAME_SIMILARITY_WEIGHT,
                email_sim * SENDER_EMAIL_SIMILARITY_WEIGHT,
                type_=Float,
            )
        else:
            score = literal(1.0, type_=Float)

        score = score.label("score")

        if sort is SortMode.DATE_ASC:
            order_by = [SearchDocumentRow.received_at.asc().nulls_last(), SearchDocumentRow.id.asc()]
        elif sort is SortMode.RELEVANCE and term:
            order_by = [score.desc(), SearchDocumentRow.received_at.desc().nulls_last(),
                        SearchDocumentRow.id.desc()]
        else:
            # DATE_DESC, and relevance with an empty query
            order_by = [SearchDocumentRow.received_at.desc().nulls_last(), SearchDocumentRow.id.desc()]

        try:
            with self._session_factory() as db:
                total = db.query(func.count(SearchDocumentRow.id)).filter(*conditions).scalar() or 0
                if total == 0:
                    return 0, []

                rows = (
                    db.query(SearchDocumentRow, score)
                    .filter(*conditions)
                    .order_by(*order_by)
                    .offset(offset)
                    .limit(limit)
                    .all()
                )
                items = [row_to_item(row, row_score) for row, row_score in rows]

            logger.debug(f"Lexical search owner={owner_id} query={term!r}: {total} matches")
            return total, items

        except Exception as e:
            logger.error(f"Lexical search failed for owner {owner_id}: {e}", exc_info=True)
            return 0, []

    def upsert_many(self, owner_id: int, documents: Sequence[SearchDocument]) -> List[Tuple[str, bool]]:
        """Upsert each document independently; returns (message_id, stored) pairs."""
        results = []
        for document in documents:
            try:
                self.upsert(owner_id, document)
                results.append((document.id, True))
            except StoreUnavailable:
                results.append((document.id, False))
        return results
