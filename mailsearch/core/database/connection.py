"""
Database connection and session management.

PostgreSQL (pg_trgm + pgvector) in production. SQLite is accepted for
development and tests; its connections get Python implementations of the
trigram functions the lexical ranking relies on.
"""
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.exc import OperationalError, DBAPIError
from typing import Optional
import logging
import time

from mailsearch.core.config import Settings, get_settings
from mailsearch.core.search.trigram import trigram_similarity, greatest

logger = logging.getLogger(__name__)

engine: Optional[Engine] = None
SessionLocal: Optional[sessionmaker] = None


def normalize_database_url(url: str) -> str:
    # Some hosts hand out postgres:// URLs
    if url.startswith('postgres://'):
        return url.replace('postgres://', 'postgresql://', 1)
    return url


def _register_sqlite_functions(dbapi_connection, connection_record):
    dbapi_connection.create_function("similarity", 2, trigram_similarity, deterministic=True)
    dbapi_connection.create_function("greatest", -1, greatest, deterministic=True)
    # Embedding rows rely on ON DELETE CASCADE
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(url: str, settings: Optional[Settings] = None) -> Engine:
    """
    Create an engine for the given URL.

    In-memory SQLite URLs share one connection (StaticPool) so every session
    sees the same database.
    """
    settings = settings or get_settings()
    url = normalize_database_url(url)

    if url.startswith('sqlite'):
        kwargs = {'connect_args': {'check_same_thread': False}, 'echo': settings.database_echo}
        if ':memory:' in url or url in ('sqlite://', 'sqlite:///'):
            kwargs['poolclass'] = StaticPool
        new_engine = create_engine(url, **kwargs)
        event.listen(new_engine, "connect", _register_sqlite_functions)
        return new_engine

    return create_engine(
        url,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_recycle=3600,
        echo=settings.database_echo,
    )


def init_db(settings: Optional[Settings] = None, max_retries: int = 3, retry_delay: float = 1.0) -> sessionmaker:
    """
    Initialize the engine and session factory with retry logic.
    Call this once at application startup.

    Raises:
        RuntimeError: If connection fails after all retries
    """
    global engine, SessionLocal
    settings = settings or get_settings()

    for attempt in range(max_retries):
        try:
            engine = build_engine(settings.database_url, settings)

            # Test connection
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))

            SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
            logger.info(f"Database initialized: {engine.url.render_as_string(hide_password=True)}")
            return SessionLocal

        except (OperationalError, DBAPIError) as e:
            logger.warning(f"Database connection attempt {attempt + 1}/{max_retries} failed: {e}")
            if attempt < max_retries - 1:
                time.sleep(retry_delay * (attempt + 1))
            else:
                logger.error(f"Database initialization failed after {max_retries} attempts")
                raise RuntimeError(f"Failed to connect to database: {e}") from e


def get_session_factory() -> sessionmaker:
    if not SessionLocal:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return SessionLocal


def create_tables(bind: Optional[Engine] = None):
    """
    Create extensions (PostgreSQL), tables and indexes.
    Schema evolution is handled outside this package.
    """
    bind = bind or engine
    if bind is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    from .models import Base

    if bind.dialect.name == 'postgresql':
        with bind.begin() as conn:
            conn.execute(text("CREATE EXTENSION IF NOT EXISTS pg_trgm"))
            conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))

    Base.metadata.create_all(bind=bind)
    logger.info("Database tables created")


def drop_tables(bind: Optional[Engine] = None):
    """
    Drop all tables (DESTRUCTIVE - use with caution!).
    Only for development/testing.
    """
    bind = bind or engine
    if bind is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    from .models import Base
    Base.metadata.drop_all(bind=bind)
    logger.warning("Database tables dropped")
