"""
Tests for fitting provider vectors to the canonical storage width.
"""
import logging

import numpy as np
import pytest

from mailsearch.core.database.models import CANONICAL_EMBEDDING_DIMENSIONS
from mailsearch.core.search.dimensions import DimensionAdapter, adapt_dimensions
from mailsearch.tests.fakes import keyword_vector
from mailsearch.core.search.vector_index import cosine_similarities


class TestAdaptDimensions:

    def test_shorter_vector_zero_padded(self):
        vector = [0.5, -1.0, 2.0]
        adapted = adapt_dimensions(vector, 8)

        assert len(adapted) == 8
        assert adapted[:3] == vector
        assert adapted[3:] == [0.0] * 5

    def test_same_width_unchanged(self):
        vector = [0.1, 0.2, 0.3, 0.4]
        assert adapt_dimensions(vector, 4) == vector

    def test_longer_vector_truncated_with_warning(self, caplog):
        with caplog.at_level(logging.WARNING):
            adapted = adapt_dimensions(list(range(10)), 4)

        assert adapted == [0.0, 1.0, 2.0, 3.0]
        assert "truncating" in caplog.text

    def test_accepts_numpy_arrays(self):
        adapted = adapt_dimensions(np.ones(384, dtype=np.float32), 768)
        assert len(adapted) == 768
        assert sum(adapted) == pytest.approx(384)

    def test_invalid_width_rejected(self):
        with pytest.raises(ValueError):
            adapt_dimensions([1.0], 0)

    def test_padding_preserves_cosine_similarity(self):
        a = keyword_vector("quarterly invoice")
        b = keyword_vector("invoice overdue")

        before = cosine_similarities(np.array([a]), np.array(b))[0]
        after = cosine_similarities(np.array([adapt_dimensions(a, 768)]), np.array(adapt_dimensions(b, 768)))[0]

        assert after == pytest.approx(before)


class TestDimensionAdapter:

    def test_defaults_to_canonical_width(self):
        adapter = DimensionAdapter()
        assert len(adapter.adapt([1.0] * 384)) == CANONICAL_EMBEDDING_DIMENSIONS

    def test_explicit_target_width(self):
        adapter = DimensionAdapter(canonical_width=16)
        assert len(adapter.adapt([1.0, 2.0], 4)) == 4

    def test_check_provider(self, caplog):
        adapter = DimensionAdapter(canonical_width=768)
        assert adapter.check_provider(384)
        assert adapter.check_provider(768)
        with caplog.at_level(logging.ERROR):
            assert not adapter.check_provider(1536)
        assert "wider than storage" in caplog.text
