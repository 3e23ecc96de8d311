"""
Tests for LocalEmbeddingProvider: single-flight model loading, permanent
load failures, batch holes.
"""
import asyncio
import threading
import time
from unittest.mock import MagicMock

import numpy as np
import pytest

from mailsearch.core.search.embeddings import LocalEmbeddingProvider
from mailsearch.core.search.errors import InvalidResponse, ProviderUnavailable


class StubModel:
    """Stands in for a SentenceTransformer."""

    def __init__(self, dims: int = 384, fail_on: str = None):
        self.dims = dims
        self.fail_on = fail_on
        self.inputs = []

    def encode(self, text, normalize_embeddings=False, convert_to_numpy=True):
        self.inputs.append(text)
        if self.fail_on and self.fail_on in text:
            raise RuntimeError("encode failed")
        vector = np.full(self.dims, 1.0 / np.sqrt(self.dims), dtype=np.float32)
        return vector


class CountingLoader:
    """Thread-safe loader that counts calls and takes a while."""

    def __init__(self, model=None, error: Exception = None, delay: float = 0.05):
        self.model = model or StubModel()
        self.error = error
        self.delay = delay
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self, model_name: str):
        with self._lock:
            self.calls += 1
        time.sleep(self.delay)
        if self.error:
            raise self.error
        return self.model


class TestModelLoading:

    @pytest.mark.asyncio
    async def test_concurrent_first_calls_share_one_load(self):
        loader = CountingLoader()
        provider = LocalEmbeddingProvider(model_name="stub", loader=loader)

        results = await asyncio.gather(*(provider.embed(f"text {i}") for i in range(5)))

        assert loader.calls == 1
        assert len(results) == 5
        assert all(len(v) == 384 for v in results)

    @pytest.mark.asyncio
    async def test_unavailable_until_loaded(self):
        provider = LocalEmbeddingProvider(model_name="stub", loader=CountingLoader(delay=0))
        assert not provider.is_available()

        await provider.warm_up()

        assert provider.is_available()
        assert provider.dimensions() == 384

    @pytest.mark.asyncio
    async def test_failed_load_is_permanent(self):
        loader = CountingLoader(error=OSError("model files missing"), delay=0)
        provider = LocalEmbeddingProvider(model_name="stub", loader=loader)

        with pytest.raises(ProviderUnavailable):
            await provider.embed("hello")
        with pytest.raises(ProviderUnavailable):
            await provider.embed("hello again")
        with pytest.raises(ProviderUnavailable):
            await provider.embed_batch(["a", "b"])

        assert loader.calls == 1
        assert not provider.is_available()

    @pytest.mark.asyncio
    async def test_warm_up_swallows_load_failure(self):
        provider = LocalEmbeddingProvider(
            model_name="stub", loader=CountingLoader(error=RuntimeError("boom"), delay=0)
        )

        await provider.warm_up()

        assert not provider.is_available()


class TestEmbedding:

    @pytest.mark.asyncio
    async def test_input_cleaned_and_truncated(self):
        model = StubModel()
        provider = LocalEmbeddingProvider(model_name="stub", max_input_chars=512,
                                          loader=CountingLoader(model=model, delay=0))

        await provider.embed("<p>" + "lorem ipsum " * 200 + "</p>")

        assert len(model.inputs[0]) <= 512
        assert "<p>" not in model.inputs[0]

    @pytest.mark.asyncio
    async def test_requests_normalized_embeddings(self):
        model = MagicMock()
        model.encode.return_value = np.zeros(384)
        model.encode.return_value[0] = 1.0
        provider = LocalEmbeddingProvider(model_name="stub", loader=lambda name: model)

        vector = await provider.embed("hello")

        assert vector[0] == 1.0
        assert model.encode.call_args.kwargs["normalize_embeddings"] is True

    @pytest.mark.asyncio
    async def test_empty_text_rejected(self):
        provider = LocalEmbeddingProvider(model_name="stub", loader=CountingLoader(delay=0))
        with pytest.raises(ValueError):
            await provider.embed("   ")

    @pytest.mark.asyncio
    async def test_wrong_width_is_invalid_response(self):
        provider = LocalEmbeddingProvider(model_name="stub", dimensions=384,
                                          loader=CountingLoader(model=StubModel(dims=512), delay=0))
        with pytest.raises(InvalidResponse):
            await provider.embed("hello")

    @pytest.mark.asyncio
    async def test_batch_failures_leave_holes(self):
        model = StubModel(fail_on="broken")
        provider = LocalEmbeddingProvider(model_name="stub", loader=CountingLoader(model=model, delay=0))

        vectors = await provider.embed_batch(["first", "broken text", "", "last"])

        assert len(vectors) == 4
        assert vectors[0] is not None
        assert vectors[1] is None
        assert vectors[2] is None
        assert vectors[3] is not None

    @pytest.mark.asyncio
    async def test_empty_batch(self):
        loader = CountingLoader(delay=0)
        provider = LocalEmbeddingProvider(model_name="stub", loader=loader)

        assert await provider.embed_batch([]) == []
        assert loader.calls == 0
