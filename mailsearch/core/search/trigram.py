"""
Trigram similarity with pg_trgm semantics.

Used directly by tests and registered as SQL functions on SQLite
connections so the lexical ranking query runs unchanged outside PostgreSQL.
"""
import re
from typing import Optional, Set

# pg_trgm treats anything that is not alphanumeric as a word separator
_WORD_RE = re.compile(r"[^\W_]+", re.UNICODE)


def trigrams(value: Optional[str]) -> Set[str]:
    """Return the pg_trgm trigram set of a string (lowercased, words padded '  w ')."""
    result: Set[str] = set()
    if not value:
        return result
    for word in _WORD_RE.findall(value.lower()):
        padded = f"  {word} "
        for i in range(len(padded) - 2):
            result.add(padded[i:i + 3])
    return result


def trigram_similarity(left: Optional[str], right: Optional[str]) -> float:
    """Shared trigrams over the union of both trigram sets (0.0 - 1.0)."""
    a = trigrams(left)
    b = trigrams(right)
    union = a | b
    if not union:
        return 0.0
    return len(a & b) / len(union)


def greatest(*values):
    """SQL GREATEST: largest non-NULL argument, NULL if all are NULL."""
    present = [v for v in values if v is not None]
    if not present:
        return None
    return max(present)
