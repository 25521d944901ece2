from __future__ import annotations

import pytest
from pydantic import ValidationError

from journalq.config import AppConfig

from helpers import make_settings


class TestAppConfig:
    def test_defaults(self):
        settings = make_settings()
        assert settings.WORKER_CONCURRENCY == 3
        assert settings.JOB_DEFAULT_ATTEMPTS == 3
        assert settings.RETRY_MAX_DELAY == 10.0
        assert settings.QUEUE_KEY_PREFIX == "journalq"
        assert settings.FALLBACK_DB_PATH == ":memory:"
        assert settings.redis_configured is False
        assert settings.JOB_LEASE_SECONDS == 60.0
        assert settings.PROGRESS_TABLE == "user_progress"
        assert settings.REWARDS_TABLE == "user_rewards"

    def test_blank_redis_url_is_unset(self, monkeypatch):
        monkeypatch.setenv("REDIS_URL", "   ")
        assert AppConfig().REDIS_URL is None

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("REDIS_URL", "redis://cache:6379/1")
        monkeypatch.setenv("WORKER_CONCURRENCY", "7")
        monkeypatch.setenv("log_level", "debug")

        settings = AppConfig()
        assert settings.redis_configured is True
        assert settings.WORKER_CONCURRENCY == 7
        assert settings.LOG_LEVEL == "DEBUG"

    @pytest.mark.parametrize("field, value", [
        ("WORKER_CONCURRENCY", 0),
        ("RETRY_JITTER", 1.5),
        ("JOB_RETENTION_SECONDS", 10),
        ("WORKER_POLL_INTERVAL", 0),
        ("JOB_LEASE_SECONDS", 0.5),
    ])
    def test_rejects_out_of_range_values(self, field, value):
        with pytest.raises(ValidationError):
            make_settings(**{field: value})

    def test_allowed_origins_list(self):
        assert make_settings(ALLOWED_ORIGINS="https://a.test, https://b.test").allowed_origins_list == [
            "https://a.test",
            "https://b.test",
        ]
        assert make_settings(ALLOWED_ORIGINS="").allowed_origins_list == ["*"]

    def test_integration_flags(self):
        settings = make_settings(ANTHROPIC_API_KEY="sk-test", SUPABASE_URL="https://x.supabase.co")
        assert settings.completion_configured is True
        assert settings.supabase_configured is False
