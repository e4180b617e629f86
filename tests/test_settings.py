import pytest

from feed_engine.settings import EngineSettings


class TestEngineSettings:
    def test_defaults(self):
        settings = EngineSettings.from_env(environ={})

        assert settings.cache.max_entries == 1000
        assert settings.cache.max_size_bytes == 50 * 1024 * 1024
        assert settings.preloader.refresh_interval == 7200
        assert settings.preloader.max_concurrent_requests == 3
        assert settings.parser.max_items == 50
        assert settings.log_level == "INFO"
        assert settings.storage_dir is None

    def test_reads_prefixed_variables(self):
        settings = EngineSettings.from_env(environ={
            "FEED_ENGINE_CACHE_MAX_ENTRIES": "200",
            "FEED_ENGINE_CACHE_DEFAULT_TTL": "90.5",
            "FEED_ENGINE_PRELOADER_ENABLED": "false",
            "FEED_ENGINE_PRELOADER_RETRY_ATTEMPTS": "1",
            "FEED_ENGINE_PARSER_EXCLUDE_KEYWORDS": "sponsored, advert",
            "FEED_ENGINE_LOG_LEVEL": "DEBUG",
            "FEED_ENGINE_STORAGE_DIR": "/tmp/feed-engine",
        })

        assert settings.cache.max_entries == 200
        assert settings.cache.default_ttl == 90.5
        assert settings.preloader.enabled is False
        assert settings.preloader.retry_attempts == 1
        assert settings.parser.exclude_keywords == ("sponsored", "advert")
        assert settings.log_level == "DEBUG"
        assert settings.storage_dir == "/tmp/feed-engine"

    def test_bad_boolean(self):
        with pytest.raises(ValueError):
            EngineSettings.from_env(environ={"FEED_ENGINE_PARSER_STRIP_HTML": "maybe"})

    def test_invalid_values_are_rejected_by_the_config(self):
        with pytest.raises(ValueError):
            EngineSettings.from_env(environ={"FEED_ENGINE_CACHE_MAX_ENTRIES": "0"})

    def test_loads_env_file(self, tmp_path, monkeypatch):
        monkeypatch.delenv("FEED_ENGINE_PRELOADER_BATCH_PAUSE", raising=False)
        env_file = tmp_path / ".env"
        env_file.write_text("FEED_ENGINE_PRELOADER_BATCH_PAUSE=2.5\n")

        settings = EngineSettings.from_env(env_file=str(env_file))

        assert settings.preloader.batch_pause == 2.5
        monkeypatch.delenv("FEED_ENGINE_PRELOADER_BATCH_PAUSE", raising=False)
