"""
Embedding Providers

Generates vector embeddings for messages and queries.

Two providers share one capability contract (embed, embed_batch,
is_available, dimensions):
- LocalEmbeddingProvider: sentence-transformers model loaded once on first
  use; no external quota.
- RemoteEmbeddingProvider: OpenAI embeddings API, paced by a RequestGate and
  guarded by a QuotaGovernor.

The concrete provider is chosen once at startup by create_embedding_provider().
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Callable, List, Optional, Sequence

import numpy as np
from openai import (
    AsyncOpenAI,
    APIConnectionError,
    APIError,
    AuthenticationError,
    InternalServerError,
    PermissionDeniedError,
    RateLimitError,
)

from mailsearch.core.config import Settings, get_settings
from mailsearch.core.search.errors import (
    InvalidResponse,
    ProviderUnavailable,
    QuotaExceeded,
    RateLimited,
)
from mailsearch.core.search.normalizer import DocumentNormalizer
from mailsearch.core.search.quota import QuotaGovernor, QuotaState, RequestGate

logger = logging.getLogger(__name__)

# Native widths of known OpenAI embedding models
OPENAI_EMBEDDING_DIMS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}

_normalizer = DocumentNormalizer()


def prepare_input(text: str, max_chars: int) -> str:
    """Strip markup, collapse whitespace and cap length before embedding."""
    return _normalizer.normalize_text(text, max_chars)


def _validate_vector(values, expected_dims: int) -> List[float]:
    try:
        vector = np.asarray(values, dtype=float).ravel()
    except (TypeError, ValueError) as e:
        raise InvalidResponse(f"Embedding is not numeric: {e}") from e

    if vector.shape[0] != expected_dims:
        raise InvalidResponse(
            f"Invalid embedding dimensions: expected {expected_dims}, got {vector.shape[0]}"
        )
    if not np.all(np.isfinite(vector)):
        raise InvalidResponse("Embedding contains NaN or infinite values")
    return vector.tolist()


class EmbeddingProvider(ABC):
    """Capability contract shared by all embedding providers."""

    name: str = "embedding"

    @abstractmethod
    async def embed(self, text: str) -> List[float]:
        """Embed one text or raise an EmbeddingError."""

    @abstractmethod
    async def embed_batch(self, texts: Sequence[str]) -> List[Optional[List[float]]]:
        """
        Embed many texts.

        Returns a list aligned with `texts`; items that failed are None.
        """

    @abstractmethod
    def is_available(self) -> bool:
        """Whether a call made now could succeed."""

    @abstractmethod
    def dimensions(self) -> int:
        """Native width of the vectors this provider returns."""

    @property
    def model_name(self) -> str:
        return self.name

    async def warm_up(self):
        """Prepare the provider (load models, etc.). Never raises."""
        return None

    def quota_state(self) -> Optional[QuotaState]:
        return None


def _load_sentence_transformer(model_name: str):
    from sentence_transformers import SentenceTransformer
    return SentenceTransformer(model_name)


class LocalEmbeddingProvider(EmbeddingProvider):
    """
    On-device sentence-transformers model.

    The model is loaded once, in a worker thread, on first use. Concurrent
    first callers await the same in-flight load. A failed load is permanent
    for the life of the process.
    """

    name = "local"

    def __init__(
        self,
        model_name: str = "sentence-transformers/all-MiniLM-L6-v2",
        dimensions: int = 384,
        max_input_chars: int = 512,
        loader: Callable[[str], object] = _load_sentence_transformer,
    ):
        self._model_name = model_name
        self._dimensions = dimensions
        self.max_input_chars = max_input_chars
        self._loader = loader

        self._model = None
        self._load_task: Optional[asyncio.Task] = None
        self._load_error: Optional[BaseException] = None

        logger.info(f"EmbeddingService will use LOCAL model: {model_name} ({dimensions} dimensions)")

    @property
    def model_name(self) -> str:
        return self._model_name

    def is_available(self) -> bool:
        return self._model is not None

    def dimensions(self) -> int:
        return self._dimensions

    async def warm_up(self):
        try:
            await self._ensure_model()
        except ProviderUnavailable:
            pass

    async def _load(self):
        logger.info(f"Loading local embedding model: {self._model_name}...")
        try:
            model = await asyncio.to_thread(self._loader, self._model_name)
        except Exception as e:
            self._load_error = e
            logger.error(f"Failed to load local embedding model {self._model_name}: {e}")
            raise ProviderUnavailable(f"Local embedding model failed to load: {e}") from e

        self._model = model
        logger.info(f"Local embedding model loaded successfully: {self._model_name}")

    async def _ensure_model(self):
        if self._model is not None:
            return self._model
        if self._load_error is not None:
            raise ProviderUnavailable(f"Local embedding model failed to load: {self._load_error}")

        if self._load_task is None:
            self._load_task = asyncio.ensure_future(self._load())

        # Shield so a cancelled caller does not cancel the shared load
        await asyncio.shield(self._load_task)
        return self._model

    def _encode(self, model, text: str) -> List[float]:
        result = model.encode(text, normalize_embeddings=True, convert_to_numpy=True)
        return _validate_vector(result, self._dimensions)

    async def embed(self, text: str) -> List[float]:
        processed = prepare_input(text, self.max_input_chars)
        if not processed:
            raise ValueError("Text cannot be empty")

        model = await self._ensure_model()
        try:
            return await asyncio.to_thread(self._encode, model, processed)
        except InvalidResponse:
            raise
        except Exception as e:
            logger.error(f"Failed to generate local embedding: {e}")
            raise InvalidResponse(f"Local model failed to embed text: {e}") from e

    async def embed_batch(self, texts: Sequence[str]) -> List[Optional[List[float]]]:
        if not texts:
            return []

        model = await self._ensure_model()
        processed = [prepare_input(t, self.max_input_chars) for t in texts]

        async def _one(text: str) -> Optional[List[float]]:
            if not text:
                return None
            return await asyncio.to_thread(self._encode, model, text)

        # No external quota: items run in parallel
        results = await asyncio.gather(*(_one(t) for t in processed), return_exceptions=True)

        vectors: List[Optional[List[float]]] = []
        failures = 0
        for result in results:
            if isinstance(result, BaseException):
                failures += 1
                logger.debug(f"Local embedding failed for one text: {result}")
                vectors.append(None)
            else:
                vectors.append(result)

        if failures:
            logger.warning(f"Failed to generate {failures} embeddings out of {len(texts)}")
        return vectors


class RemoteEmbeddingProvider(EmbeddingProvider):
    """
    OpenAI embeddings API.

    Every request passes the quota governor (fail fast during cooldown) and
    the request gate (minimum delay plus jitter). Batches go out in small
    groups, one request per group, and stop at the first quota failure.
    """

    name = "openai"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "text-embedding-3-small",
        dimensions: int = 768,
        base_url: Optional[str] = None,
        timeout: float = 60.0,
        max_input_chars: int = 5000,
        batch_group_size: int = 10,
        transient_backoff: float = 8.0,
        governor: Optional[QuotaGovernor] = None,
        gate: Optional[RequestGate] = None,
        client=None,
    ):
        self.model = model
        self.max_input_chars = max_input_chars
        self.batch_group_size = max(1, batch_group_size)
        self.transient_backoff = transient_backoff
        self.governor = governor or QuotaGovernor(name=f"openai:{model}")
        self.gate = gate or RequestGate()

        # Only text-embedding-3-* accept a requested width
        self._send_dimensions = model.startswith("text-embedding-3")
        if self._send_dimensions:
            self._dimensions = dimensions
        else:
            self._dimensions = OPENAI_EMBEDDING_DIMS.get(model, dimensions)
            if model not in OPENAI_EMBEDDING_DIMS:
                logger.warning(f"Unknown embedding model '{model}' - assuming {self._dimensions} dimensions. "
                               f"Known models: {list(OPENAI_EMBEDDING_DIMS.keys())}")

        if client is None and api_key:
            # SDK retries are disabled: 429s must reach the governor
            client = AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout, max_retries=0)
        self._client = client
        self._disabled: Optional[str] = None if client is not None else "OpenAI API key not configured"
        self._throttled = False

        if self._client is not None:
            logger.info(f"Using OpenAI for embeddings: {model} ({self._dimensions} dimensions)")

    @property
    def model_name(self) -> str:
        return self.model

    def is_available(self) -> bool:
        return self._disabled is None and self.governor.is_available()

    def dimensions(self) -> int:
        return self._dimensions

    def quota_state(self) -> Optional[QuotaState]:
        return self.governor.snapshot()

    def _parse(self, response, expected: int) -> List[List[float]]:
        data = getattr(response, "data", None)
        if not data or len(data) != expected:
            got = len(data) if data else 0
            raise InvalidResponse(f"Invalid embedding response: expected {expected} items, got {got}")

        items = sorted(data, key=lambda d: getattr(d, "index", 0) or 0) if expected > 1 else data
        return [_validate_vector(getattr(item, "embedding", None), self._dimensions) for item in items]

    async def _request(self, inputs: List[str]) -> List[List[float]]:
        if self._disabled is not None:
            raise ProviderUnavailable(self._disabled)

        self.governor.check()
        await self.gate.acquire()
        # Cooldown may have started while this caller was waiting for its slot
        self.governor.check()
        self.governor.record_request()

        kwargs = {"model": self.model, "input": inputs}
        if self._send_dimensions:
            kwargs["dimensions"] = self._dimensions

        try:
            response = await self._client.embeddings.create(**kwargs)
        except RateLimitError as e:
            retry_after = self.governor.record_quota_failure()
            raise QuotaExceeded(
                "Embedding generation quota exceeded. Please try again later.",
                retry_after=retry_after,
            ) from e
        except (AuthenticationError, PermissionDeniedError) as e:
            self._disabled = f"OpenAI rejected credentials: {e}"
            logger.error(f"Disabling remote embeddings: {self._disabled}")
            raise ProviderUnavailable(self._disabled) from e
        except (InternalServerError, APIConnectionError) as e:
            # Includes APITimeoutError
            self.gate.push_back(self.transient_backoff)
            if not self._throttled:
                self._throttled = True
                logger.warning(
                    f"Transient embedding API error, delaying requests by {self.transient_backoff:.0f}s: {e}"
                )
            raise RateLimited(f"Embedding API temporarily unavailable: {e}") from e
        except APIError as e:
            logger.error(f"Embedding API error: {e}")
            raise InvalidResponse(f"Embedding API error: {e}") from e

        vectors = self._parse(response, expected=len(inputs))

        self.governor.record_success()
        if self._throttled:
            self._throttled = False
            logger.info("Embedding API recovered")
        return vectors

    async def embed(self, text: str) -> List[float]:
        processed = prepare_input(text, self.max_input_chars)
        if not processed:
            raise ValueError("Text cannot be empty")

        vectors = await self._request([processed])
        logger.debug(f"Generated OpenAI embedding for text ({len(processed)} chars)")
        return vectors[0]

    async def embed_batch(self, texts: Sequence[str]) -> List[Optional[List[float]]]:
        results: List[Optional[List[float]]] = [None] * len(texts)
        if not texts:
            return results

        if self._disabled is not None:
            raise ProviderUnavailable(self._disabled)
        # Fail fast when the whole batch would be rejected
        self.governor.check()

        processed = [prepare_input(t, self.max_input_chars) for t in texts]
        failures = 0
        succeeded = 0

        for start in range(0, len(processed), self.batch_group_size):
            indexes = [i for i in range(start, min(start + self.batch_group_size, len(processed))) if processed[i]]
            if not indexes:
                continue

            try:
                vectors = await self._request([processed[i] for i in indexes])
            except QuotaExceeded:
                logger.warning(
                    f"Quota exceeded during batch generation. Processed {start}/{len(texts)} texts."
                )
                break
            except ProviderUnavailable as e:
                if not succeeded:
                    raise
                # Vectors from earlier groups are still returned
                logger.warning(
                    f"Embedding provider disabled during batch generation. Processed {start}/{len(texts)} texts: {e}"
                )
                break
            except (RateLimited, InvalidResponse) as e:
                failures += len(indexes)
                logger.debug(f"Embedding group starting at {start} failed: {e}")
                continue

            succeeded += len(indexes)
            for i, vector in zip(indexes, vectors):
                results[i] = vector

        if failures:
            logger.warning(f"Failed to generate {failures} embeddings out of {len(texts)}")
        return results


def create_embedding_provider(settings: Optional[Settings] = None) -> EmbeddingProvider:
    """
    Build the configured provider. Called once at startup.

    OpenAI without an API key falls back to the local model.
    """
    settings = settings or get_settings()
    choice = settings.embedding_provider.strip().lower()

    if choice == "openai":
        if settings.openai_api_key:
            return RemoteEmbeddingProvider(
                api_key=settings.openai_api_key,
                model=settings.openai_embedding_model,
                dimensions=settings.openai_embedding_dimensions,
                base_url=settings.openai_base_url,
                timeout=settings.openai_timeout,
                max_input_chars=settings.remote_max_input_chars,
                batch_group_size=settings.remote_batch_group_size,
                transient_backoff=settings.remote_transient_backoff,
                governor=QuotaGovernor(
                    name=f"openai:{settings.openai_embedding_model}",
                    base_cooldown=settings.quota_base_cooldown,
                    growth=settings.quota_cooldown_growth,
                    max_cooldown=settings.quota_max_cooldown,
                ),
                gate=RequestGate(
                    min_delay=settings.remote_min_request_delay,
                    max_jitter=settings.remote_max_jitter,
                    max_wait=settings.remote_max_gate_wait,
                ),
            )
        logger.warning("OPENAI_API_KEY not configured. Falling back to LOCAL embedding model.")
    elif choice != "local":
        logger.warning(f"Unknown embedding provider '{settings.embedding_provider}', using LOCAL model")

    return LocalEmbeddingProvider(
        model_name=settings.local_embedding_model,
        dimensions=settings.local_embedding_dimensions,
        max_input_chars=settings.local_max_input_chars,
    )
