"""Tests for environment-driven settings."""

import pytest
from pydantic import ValidationError

from authkernel.config import AppEnv, Settings, get_settings, reset_settings_cache

ACCESS = "config-access-secret-0123456789"
REFRESH = "config-refresh-secret-0123456789"


class TestDefaults:
    def test_security_defaults(self):
        settings = Settings(jwt_access_secret=ACCESS, jwt_refresh_secret=REFRESH)
        assert settings.lockout_threshold == 5
        assert settings.lockout_duration_minutes == 15
        assert settings.idle_session_minutes == 8
        assert settings.access_token_ttl_minutes == 15
        assert settings.refresh_token_ttl_days == 30
        assert settings.default_max_sessions == 5
        assert settings.totp_window == 1

    def test_cookie_secure_follows_environment(self):
        dev = Settings(jwt_access_secret=ACCESS, jwt_refresh_secret=REFRESH)
        prod = Settings(
            app_env="production", jwt_access_secret=ACCESS, jwt_refresh_secret=REFRESH
        )
        assert dev.cookie_secure is False
        assert prod.cookie_secure is True
        assert prod.is_production


class TestSecrets:
    def test_missing_secrets_generated_outside_production(self):
        settings = Settings(app_env="development")
        assert len(settings.jwt_access_secret) >= 16
        assert settings.jwt_access_secret != settings.jwt_refresh_secret

    def test_missing_secrets_rejected_in_production(self):
        with pytest.raises(ValidationError):
            Settings(app_env="production")

    def test_short_secret_rejected(self):
        with pytest.raises(ValidationError):
            Settings(jwt_access_secret="short", jwt_refresh_secret=REFRESH)

    def test_identical_secrets_rejected(self):
        with pytest.raises(ValidationError):
            Settings(jwt_access_secret=ACCESS, jwt_refresh_secret=ACCESS)


class TestFromEnv:
    def test_environment_overrides(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("LOCKOUT_THRESHOLD", "3")
        monkeypatch.setenv("IDLE_SESSION_MINUTES", "20")
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")
        monkeypatch.setenv("APP_ENV", "TEST")
        settings = Settings.from_env()
        assert settings.app_env == AppEnv.TEST
        assert settings.lockout_threshold == 3
        assert settings.idle_session_minutes == 20
        assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]

    def test_dotenv_file_is_read(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("MFA_ISSUER", raising=False)
        (tmp_path / ".env").write_text("MFA_ISSUER=Example Corp\n")
        assert Settings.from_env().mfa_issuer == "Example Corp"

    def test_process_env_wins_over_dotenv(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        (tmp_path / ".env").write_text("MFA_ISSUER=From File\n")
        monkeypatch.setenv("MFA_ISSUER", "From Env")
        assert Settings.from_env().mfa_issuer == "From Env"

    def test_blank_cookie_secure_uses_default(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("COOKIE_SECURE", "")
        assert Settings.from_env().cookie_secure is False

    def test_settings_are_cached_until_reset(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        first = get_settings()
        assert get_settings() is first
        reset_settings_cache()
        assert get_settings() is not first
