"""
Dimension adaptation between provider widths and the storage width.

Zero-padding on the right leaves dot products and norms unchanged, so cosine
similarity between two vectors padded the same way is preserved. Truncation
only happens on a misconfiguration (provider wider than storage).
"""
import logging
from typing import List, Sequence, Union

import numpy as np

from mailsearch.core.database.models import CANONICAL_EMBEDDING_DIMENSIONS

logger = logging.getLogger(__name__)

VectorLike = Union[Sequence[float], np.ndarray]


def adapt_dimensions(vector: VectorLike, target_width: int) -> List[float]:
    """
    Fit a vector to `target_width`.

    Unchanged if already that wide, zero-padded on the right if shorter,
    truncated (with a warning) if longer.
    """
    if target_width <= 0:
        raise ValueError("target_width must be positive")

    values = np.asarray(vector, dtype=float).ravel()
    width = values.shape[0]

    if width == target_width:
        return values.tolist()

    if width > target_width:
        logger.warning(
            f"Embedding width {width} exceeds storage width {target_width}, truncating "
            f"(provider/storage configuration mismatch)"
        )
        return values[:target_width].tolist()

    return np.pad(values, (0, target_width - width)).tolist()


class DimensionAdapter:
    """Adapts provider vectors to one canonical storage width."""

    def __init__(self, canonical_width: int = CANONICAL_EMBEDDING_DIMENSIONS):
        self.canonical_width = canonical_width

    def adapt(self, vector: VectorLike, target_width: int = None) -> List[float]:
        return adapt_dimensions(vector, target_width or self.canonical_width)

    def check_provider(self, provider_width: int) -> bool:
        """True when a provider of this width fits without truncation."""
        if provider_width > self.canonical_width:
            logger.error(
                f"Provider width {provider_width} is wider than storage width {self.canonical_width}; "
                f"vectors will be truncated"
            )
            return False
        return True
