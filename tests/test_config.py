import pytest
from pydantic import ValidationError

from intelgate.config import RateLimitBackend, Settings, get_settings, reset_settings_cache


@pytest.fixture
def clean_settings():
    reset_settings_cache()
    yield
    reset_settings_cache()


def test_defaults():
    settings = Settings()
    assert settings.session_ttl_days == 7
    assert settings.session_inactivity_timeout_minutes == 30
    assert settings.session_cleanup_interval_seconds == 3600
    assert settings.rate_limit_backend == RateLimitBackend.STORE
    assert settings.cors_allow_origins == []


def test_from_env(monkeypatch, clean_settings):
    monkeypatch.setenv("RATE_LIMIT_BACKEND", " Redis ")
    monkeypatch.setenv("SESSION_TTL_DAYS", "14")
    monkeypatch.setenv("SESSION_INACTIVITY_TIMEOUT_MINUTES", "45")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example,")
    monkeypatch.setenv("OPERATIONS_FILE", "")

    settings = get_settings()

    assert settings.rate_limit_backend == RateLimitBackend.REDIS
    assert settings.session_ttl_days == 14
    assert settings.session_inactivity_timeout_minutes == 45
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]
    assert settings.operations_file is None
    assert get_settings() is settings


def test_blank_timeout_is_unset(monkeypatch, clean_settings):
    monkeypatch.setenv("SESSION_INACTIVITY_TIMEOUT_MINUTES", "  ")
    assert Settings.from_env().session_inactivity_timeout_minutes is None


@pytest.mark.parametrize(
    "env, value",
    [
        ("SESSION_INACTIVITY_TIMEOUT_MINUTES", "0"),
        ("SESSION_TTL_DAYS", "0"),
        ("RATE_LIMIT_BACKEND", "memcached"),
    ],
)
def test_invalid_values_rejected(monkeypatch, clean_settings, env, value):
    monkeypatch.setenv(env, value)
    with pytest.raises(ValidationError):
        Settings.from_env()
