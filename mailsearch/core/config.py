"""
Configuration Management

Centralized configuration using Pydantic Settings.
All settings loaded from environment variables with sensible defaults.
"""
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Ignore extra environment variables that aren't defined in the model
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # ============================================================
    # Database Configuration
    # ============================================================
    database_url: str = Field("sqlite:///./mailsearch.db", description="Database connection URL (PostgreSQL in production)")
    database_pool_size: int = Field(5, description="Database connection pool size")
    database_max_overflow: int = Field(10, description="Max overflow connections")
    database_echo: bool = Field(False, description="Echo SQL statements (debugging)")

    # ============================================================
    # Embedding Provider Configuration
    # ============================================================
    embedding_provider: str = Field("local", description="Embedding provider: local or openai")

    # Local model (sentence-transformers)
    local_embedding_model: str = Field(
        "sentence-transformers/all-MiniLM-L6-v2",
        description="sentence-transformers model name"
    )
    local_embedding_dimensions: int = Field(384, description="Native width of the local model")
    local_max_input_chars: int = Field(512, description="Input truncation for the local model")

    # Remote model (OpenAI)
    openai_api_key: Optional[str] = Field(None, description="OpenAI API key")
    openai_base_url: Optional[str] = Field(None, description="Override OpenAI endpoint")
    openai_embedding_model: str = Field("text-embedding-3-small", description="OpenAI embedding model")
    openai_embedding_dimensions: int = Field(768, description="Requested width for text-embedding-3-* models")
    openai_timeout: float = Field(60.0, description="Per-request timeout in seconds")
    remote_max_input_chars: int = Field(5000, description="Input truncation for the remote model")

    # Remote request pacing
    remote_min_request_delay: float = Field(1.0, description="Minimum seconds between remote requests")
    remote_max_jitter: float = Field(0.5, description="Random jitter added to each remote request (seconds)")
    remote_max_gate_wait: float = Field(30.0, description="Longest a caller may wait for a request slot")
    remote_batch_group_size: int = Field(10, description="Texts per remote batch request")
    remote_transient_backoff: float = Field(8.0, description="Gate push-back after a transient provider error")

    # Quota cooldown
    quota_base_cooldown: float = Field(3600.0, description="Initial cooldown after a quota failure (seconds)")
    quota_cooldown_growth: float = Field(1.5, description="Cooldown multiplier per consecutive quota failure")
    quota_max_cooldown: float = Field(86400.0, description="Cooldown ceiling (seconds)")

    # ============================================================
    # Indexing / Search Configuration
    # ============================================================
    embedding_debounce_seconds: float = Field(5.0, description="Debounce window for per-owner embedding batches")
    lexical_similarity_threshold: float = Field(0.05, description="Minimum trigram similarity for fuzzy matches")
    default_page_size: int = Field(20, description="Default results per page")
    max_page_size: int = Field(100, description="Upper bound on results per page")

    # ============================================================
    # Logging Configuration
    # ============================================================
    log_level: str = Field("INFO", description="Logging level (DEBUG/INFO/WARNING/ERROR)")
    log_format: str = Field(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format string"
    )

    @property
    def uses_openai(self) -> bool:
        return self.embedding_provider.strip().lower() == "openai"


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get application settings (singleton).

    Returns:
        Settings instance
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings():
    """Reload settings from environment (useful for testing)."""
    global _settings
    _settings = Settings()
    return _settings
