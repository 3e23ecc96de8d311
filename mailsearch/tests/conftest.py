"""
Shared fixtures for search engine tests.

Databases are in-memory SQLite (StaticPool) with the trigram functions
registered by build_engine(); embeddings come from a deterministic fake
provider unless a test needs a real provider class.
"""
from datetime import datetime, timedelta

import pytest
from sqlalchemy.orm import sessionmaker

from mailsearch.core.config import Settings
from mailsearch.core.database.connection import build_engine, create_tables
from mailsearch.core.search.models import SearchDocument
from mailsearch.tests.fakes import FakeEmbeddingProvider


@pytest.fixture
def test_settings():
    """Settings isolated from .env files."""
    return Settings(
        _env_file=None,
        database_url="sqlite://",
        embedding_provider="local",
        embedding_debounce_seconds=0.05,
        default_page_size=20,
        max_page_size=100,
    )


@pytest.fixture
def engine(test_settings):
    engine = build_engine("sqlite://", test_settings)
    create_tables(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@pytest.fixture
def fake_provider():
    return FakeEmbeddingProvider()


@pytest.fixture
def make_document():
    """Factory for SearchDocuments; age_days counts back from 2024-05-01."""
    base = datetime(2024, 5, 1, 12, 0, 0)

    def _make(doc_id: str, subject: str = "", sender_email: str = "", body_text: str = "",
              sender_name: str = "", snippet: str = "", status: str = "inbox", age_days: int = 0):
        return SearchDocument(
            id=doc_id,
            subject=subject,
            sender_name=sender_name,
            sender_email=sender_email,
            snippet=snippet,
            body_text=body_text,
            received_at=base - timedelta(days=age_days),
            status=status,
        )

    return _make
