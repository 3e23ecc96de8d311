"""
Search engine error taxonomy.

Provider errors describe why an embedding could not be produced; store errors
describe an unreachable lexical or vector store. Callers on the indexing side
log and swallow these, callers on the search side turn them into empty results.
"""


class SearchEngineError(Exception):
    """Base class for all search engine errors."""
    pass


class EmbeddingError(SearchEngineError):
    """Base class for embedding provider failures."""
    pass


class ProviderUnavailable(EmbeddingError):
    """Provider not configured or model failed to load (permanent until restart)."""
    pass


class RateLimited(EmbeddingError):
    """Transient provider throttling; recovers after the enforced delay."""
    pass


class QuotaExceeded(EmbeddingError):
    """Provider is in quota cooldown."""

    def __init__(self, message: str = "Embedding quota exceeded", retry_after: float = 0.0):
        super().__init__(message)
        self.retry_after = retry_after


class InvalidResponse(EmbeddingError):
    """Malformed or wrong-width provider output (fails this call only)."""
    pass


class StoreUnavailable(SearchEngineError):
    """Lexical or vector store unreachable."""
    pass
