"""Email search and relevance engine."""

__version__ = "0.1.0"
