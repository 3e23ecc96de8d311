"""
Search module

Lexical (trigram) and semantic (vector) search over indexed messages, with
debounced embedding generation.
"""
from mailsearch.core.search.dimensions import DimensionAdapter, adapt_dimensions
from mailsearch.core.search.embeddings import (
    EmbeddingProvider,
    LocalEmbeddingProvider,
    RemoteEmbeddingProvider,
    create_embedding_provider,
)
from mailsearch.core.search.errors import (
    EmbeddingError,
    InvalidResponse,
    ProviderUnavailable,
    QuotaExceeded,
    RateLimited,
    SearchEngineError,
    StoreUnavailable,
)
from mailsearch.core.search.indexing import IndexingCoordinator
from mailsearch.core.search.lexical import LexicalIndex
from mailsearch.core.search.models import (
    RawMessage,
    SearchDocument,
    SearchFilters,
    SearchResult,
    SearchResultItem,
    SortMode,
)
from mailsearch.core.search.normalizer import DocumentNormalizer
from mailsearch.core.search.quota import QuotaGovernor, QuotaState, RequestGate
from mailsearch.core.search.service import MessageSource, SearchService
from mailsearch.core.search.vector_index import VectorIndex

__all__ = [
    'DimensionAdapter',
    'adapt_dimensions',
    'EmbeddingProvider',
    'LocalEmbeddingProvider',
    'RemoteEmbeddingProvider',
    'create_embedding_provider',
    'EmbeddingError',
    'InvalidResponse',
    'ProviderUnavailable',
    'QuotaExceeded',
    'RateLimited',
    'SearchEngineError',
    'StoreUnavailable',
    'IndexingCoordinator',
    'LexicalIndex',
    'RawMessage',
    'SearchDocument',
    'SearchFilters',
    'SearchResult',
    'SearchResultItem',
    'SortMode',
    'DocumentNormalizer',
    'QuotaGovernor',
    'QuotaState',
    'RequestGate',
    'MessageSource',
    'SearchService',
    'VectorIndex',
]
