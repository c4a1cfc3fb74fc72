"""Tests for Settings loading and signing secret validation."""

import pytest
from pydantic import ValidationError

from gatehouse.config import AppEnv, DispatchBackend, Settings


class TestSigningSecrets:
    def test_missing_secrets_rejected_outside_test_mode(self):
        with pytest.raises(ValidationError) as exc_info:
            Settings(test_mode=False, jwt_secret=None, refresh_jwt_secret=None)
        assert "JWT_SECRET" in str(exc_info.value)

    def test_blank_secret_counts_as_missing(self):
        with pytest.raises(ValidationError):
            Settings(test_mode=False, jwt_secret="   ", refresh_jwt_secret="refresh")

    def test_test_mode_generates_distinct_secrets(self):
        settings = Settings(test_mode=True, jwt_secret=None, refresh_jwt_secret=None)
        assert settings.jwt_secret
        assert settings.refresh_jwt_secret
        assert settings.jwt_secret != settings.refresh_jwt_secret

    def test_equal_access_and_refresh_secrets_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            Settings(jwt_secret="same-secret", refresh_jwt_secret="same-secret")
        assert "REFRESH_JWT_SECRET" in str(exc_info.value)

    def test_verification_secret_defaults_to_access_secret(self):
        settings = Settings(jwt_secret="access", refresh_jwt_secret="refresh")
        assert settings.verification_secret == "access"

    def test_explicit_verification_secret_kept(self):
        settings = Settings(
            jwt_secret="access", refresh_jwt_secret="refresh", verification_secret="verify"
        )
        assert settings.verification_secret == "verify"


class TestFromEnv:
    def test_reads_environment_names(self, monkeypatch):
        monkeypatch.setenv("JWT_SECRET", "env-access")
        monkeypatch.setenv("REFRESH_JWT_SECRET", "env-refresh")
        monkeypatch.setenv("LOGIN_RATE_LIMIT_MAX_ATTEMPTS", "7")
        monkeypatch.setenv("RATE_LIMIT_FAIL_OPEN", "false")
        monkeypatch.setenv("DISPATCH_BACKEND", "memory")
        monkeypatch.setenv("APP_ENV", "development")

        settings = Settings.from_env()

        assert settings.jwt_secret == "env-access"
        assert settings.login_rate_limit_max_attempts == 7
        assert settings.rate_limit_fail_open is False
        assert settings.dispatch_backend == DispatchBackend.MEMORY
        assert settings.app_env == AppEnv.DEVELOPMENT

    def test_cors_origins_split_on_commas(self, monkeypatch):
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example,")
        settings = Settings.from_env()
        assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]


class TestEnvironmentFlags:
    def test_production_cookies_are_secure(self):
        settings = Settings(jwt_secret="a", refresh_jwt_secret="b", app_env="production")
        assert settings.cookie_secure is True
        assert settings.is_development is False

    def test_development_cookies_not_secure(self):
        settings = Settings(jwt_secret="a", refresh_jwt_secret="b", app_env="development")
        assert settings.cookie_secure is False
        assert settings.is_development is True

    def test_defaults(self):
        settings = Settings(jwt_secret="a", refresh_jwt_secret="b")
        assert settings.access_token_ttl_minutes == 15
        assert settings.login_rate_limit_max_attempts == 5
        assert settings.login_rate_limit_window_seconds == 600
        assert settings.dispatch_max_attempts == 5
        assert settings.rate_limit_fail_open is True
