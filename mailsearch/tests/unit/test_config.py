"""
Tests for Settings loading.
"""
from mailsearch.core.config import Settings, get_settings, reload_settings


class TestSettings:

    def test_defaults(self):
        settings = Settings(_env_file=None)

        assert settings.embedding_provider == "local"
        assert settings.local_embedding_dimensions == 384
        assert settings.openai_embedding_dimensions == 768
        assert settings.quota_base_cooldown == 3600
        assert settings.quota_cooldown_growth == 1.5
        assert settings.quota_max_cooldown == 86400
        assert settings.embedding_debounce_seconds == 5.0
        assert settings.lexical_similarity_threshold == 0.05

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("EMBEDDING_PROVIDER", "OpenAI")
        monkeypatch.setenv("EMBEDDING_DEBOUNCE_SECONDS", "2.5")

        settings = Settings(_env_file=None)

        assert settings.uses_openai
        assert settings.embedding_debounce_seconds == 2.5

    def test_singleton_reload(self, monkeypatch):
        monkeypatch.setenv("MAX_PAGE_SIZE", "50")

        reloaded = reload_settings()

        assert get_settings() is reloaded
        assert reloaded.max_page_size == 50
        monkeypatch.delenv("MAX_PAGE_SIZE")
        reload_settings()
