"""
SQLAlchemy Database Models

Stores:
- Search documents (lexical fields per owner/message)
- Embedding records (one canonical-width vector per document)

The lexical and vector tables are independent views of the same message:
writing one never rolls back the other.
"""
from sqlalchemy import Column, String, Integer, DateTime, Text, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import declarative_base, relationship
from pgvector.sqlalchemy import Vector
from datetime import datetime

Base = declarative_base()

# Every stored vector is adapted to this width before it is written
CANONICAL_EMBEDDING_DIMENSIONS = 768


class SearchDocumentRow(Base):
    """
    Indexed message, identified by (owner_id, message_id).
    Refreshed whenever the owning message is fetched or changes state.
    """
    __tablename__ = "search_documents"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Integer, nullable=False, index=True)
    message_id = Column(String(255), nullable=False)

    subject = Column(Text)
    sender_name = Column(Text)
    sender_email = Column(Text)
    snippet = Column(Text)  # <= 200 chars
    body_text = Column(Text)  # <= 5000 chars, normalized plain text
    received_at = Column(DateTime)
    status = Column(String(50), nullable=False, default="inbox")

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    embedding = relationship(
        "EmbeddingRecordRow",
        back_populates="document",
        uselist=False,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        UniqueConstraint('owner_id', 'message_id', name='uq_search_documents_owner_message'),
        Index('ix_search_documents_owner_received', 'owner_id', 'received_at'),
        Index('ix_search_documents_owner_status', 'owner_id', 'status'),
        # Trigram indexes (pg_trgm) for fuzzy matching; plain indexes elsewhere
        Index('ix_search_documents_subject_trgm', 'subject',
              postgresql_using='gin', postgresql_ops={'subject': 'gin_trgm_ops'}),
        Index('ix_search_documents_sender_name_trgm', 'sender_name',
              postgresql_using='gin', postgresql_ops={'sender_name': 'gin_trgm_ops'}),
        Index('ix_search_documents_sender_email_trgm', 'sender_email',
              postgresql_using='gin', postgresql_ops={'sender_email': 'gin_trgm_ops'}),
    )


class EmbeddingRecordRow(Base):
    """
    Vector embedding for semantic search.
    Absent until generation succeeds; overwritten in a single commit on regeneration.
    """
    __tablename__ = "embedding_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    document_id = Column(
        Integer,
        ForeignKey('search_documents.id', ondelete='CASCADE'),
        unique=True,
        nullable=False,
    )

    vector = Column(Vector(CANONICAL_EMBEDDING_DIMENSIONS), nullable=False)

    # Metadata
    embedding_model = Column(String(200), nullable=False)
    content_hash = Column(String(64), nullable=False)  # SHA256 of embedded text (change detection)

    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    document = relationship("SearchDocumentRow", back_populates="embedding")

    __table_args__ = (
        Index('ix_embedding_records_vector_hnsw', 'vector',
              postgresql_using='hnsw',
              postgresql_with={'m': 16, 'ef_construction': 64},
              postgresql_ops={'vector': 'vector_cosine_ops'}),
    )
