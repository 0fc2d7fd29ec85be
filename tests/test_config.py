from unittest.mock import patch

import pytest

from habla.config import AppEnv, Settings, get_settings, reset_settings_cache


def test_environment_overrides_defaults(monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_MAX", "250")
    monkeypatch.setenv("TOKEN_TTL_MINUTES", "30")
    monkeypatch.setenv("N8N_WEBHOOK_URL", "https://n8n.example.com/webhook/tutor")

    settings = Settings.from_env()

    assert settings.rate_limit_max == 250
    assert settings.token_ttl_minutes == 30
    assert settings.n8n_webhook_url == "https://n8n.example.com/webhook/tutor"


def test_defaults_for_auth_limits():
    settings = Settings(jwt_secret="x")

    assert settings.register_rate_limit == 3
    assert settings.login_rate_limit == 5
    assert settings.auth_rate_limit_window_minutes == 15
    assert settings.token_ttl_minutes == 7 * 24 * 60
    assert settings.app_env is AppEnv.PRODUCTION


def test_cors_origins_are_split(monkeypatch):
    monkeypatch.setenv("CORS_ORIGIN", "https://app.example.com, http://localhost:3000,")

    settings = Settings.from_env()

    assert settings.cors_allow_origins == ["https://app.example.com", "http://localhost:3000"]


def test_blank_optional_urls_become_none(monkeypatch):
    monkeypatch.setenv("REDIS_URL", "   ")
    monkeypatch.setenv("N8N_API_KEY", "")

    settings = Settings.from_env()

    assert settings.redis_url is None
    assert settings.n8n_api_key is None


@pytest.mark.parametrize("raw,expected", [("Development", AppEnv.DEVELOPMENT), (" test ", AppEnv.TEST)])
def test_app_env_is_normalized(raw, expected):
    settings = Settings(app_env=raw, jwt_secret="x")
    assert settings.app_env is expected
    assert settings.is_development is (expected is AppEnv.DEVELOPMENT)


def test_missing_jwt_secret_is_generated_with_warning(monkeypatch):
    monkeypatch.delenv("JWT_SECRET", raising=False)

    with patch("habla.config.logger") as mock_logger:
        first = Settings.from_env()
        second = Settings.from_env()

    assert len(first.jwt_secret) >= 64
    assert first.jwt_secret != second.jwt_secret
    assert mock_logger.warning.call_args[0][0] == "jwt_secret_generated"


def test_settings_cache_is_reset(monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_MAX", "7")
    reset_settings_cache()
    assert get_settings().rate_limit_max == 7

    monkeypatch.setenv("RATE_LIMIT_MAX", "8")
    assert get_settings().rate_limit_max == 7
    reset_settings_cache()
    assert get_settings().rate_limit_max == 8
