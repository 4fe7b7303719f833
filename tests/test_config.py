import pytest
from pydantic import ValidationError

from authlane.config import Settings, get_settings, reset_settings_cache

SECRET = "x" * 32


def test_defaults():
    settings = Settings(jwt_secret=SECRET)
    assert settings.access_token_ttl_seconds == 15 * 60
    assert settings.refresh_token_ttl_seconds == 7 * 24 * 3600
    assert settings.rate_limit_requests == 10
    assert settings.rate_limit_window_seconds == 60
    assert settings.refresh_cookie_path == "/api/v1/auth/refresh"
    assert settings.cookie_secure is True


@pytest.mark.parametrize("secret", [None, "", "too-short"])
def test_jwt_secret_is_required_and_long(secret):
    with pytest.raises(ValidationError):
        Settings(jwt_secret=secret)


def test_non_positive_ttl_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret=SECRET, access_token_ttl_minutes=0)


def test_hash_cost_bounds():
    with pytest.raises(ValidationError):
        Settings(jwt_secret=SECRET, password_hash_cost=0)
    assert Settings(jwt_secret=SECRET, password_hash_cost=10).password_hash_cost == 10


def test_blank_redis_url_means_none():
    assert Settings(jwt_secret=SECRET, redis_url="  ").redis_url is None


def test_from_env_reads_named_variables(monkeypatch):
    monkeypatch.setenv("JWT_SECRET", SECRET)
    monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "5")
    monkeypatch.setenv("RATE_LIMIT_REQUESTS", "3")
    monkeypatch.setenv("COOKIE_SECURE", "false")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")

    settings = Settings.from_env()

    assert settings.access_token_ttl_seconds == 300
    assert settings.rate_limit_requests == 3
    assert settings.cookie_secure is False
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]


def test_settings_are_cached_until_reset(monkeypatch):
    reset_settings_cache()
    first = get_settings()
    assert get_settings() is first

    monkeypatch.setenv("RATE_LIMIT_REQUESTS", "4")
    reset_settings_cache()
    assert get_settings().rate_limit_requests == 4
    reset_settings_cache()


def test_settings_are_immutable():
    settings = Settings(jwt_secret=SECRET)
    with pytest.raises(ValidationError):
        settings.rate_limit_requests = 1
