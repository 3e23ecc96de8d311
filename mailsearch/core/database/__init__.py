"""Database module: search documents and embedding records"""
from .models import Base, SearchDocumentRow, EmbeddingRecordRow, CANONICAL_EMBEDDING_DIMENSIONS
from .connection import build_engine, init_db, get_session_factory, create_tables, drop_tables

__all__ = [
    'Base',
    'SearchDocumentRow',
    'EmbeddingRecordRow',
    'CANONICAL_EMBEDDING_DIMENSIONS',
    'build_engine',
    'init_db',
    'get_session_factory',
    'create_tables',
    'drop_tables',
]
