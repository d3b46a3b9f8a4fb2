"""Tests for settings loading and log hygiene."""

import pydantic
import pytest

from warden.config import Settings, get_settings, reset_settings_cache
from warden.logging import (
    _redact_secrets,
    email_digest,
    get_correlation_id,
    redact_email,
    set_correlation_id,
)


class TestSettings:
    def test_from_env_reads_declared_names(self, monkeypatch):
        monkeypatch.setenv("JWT_SECRET", "x" * 40)
        monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "5")
        monkeypatch.setenv("SUPER_ADMIN_EMAIL", "  Boss@Example.COM ")
        monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/0")

        settings = Settings.from_env()

        assert settings.access_token_ttl_minutes == 5
        assert settings.super_admin_email == "boss@example.com"
        assert settings.redis_url == "redis://localhost:6379/0"

    def test_non_positive_limits_are_rejected(self):
        with pytest.raises(pydantic.ValidationError):
            Settings(jwt_secret="x" * 40, login_max_attempts=0)

    def test_blank_admin_email_is_none(self):
        assert Settings(jwt_secret="x" * 40, super_admin_email="  ").super_admin_email is None

    def test_generated_secret_is_persisted(self, monkeypatch, tmp_path):
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

        first = Settings(jwt_secret=None)
        second = Settings(jwt_secret=None)

        assert len(first.jwt_secret) >= 32
        assert first.jwt_secret == second.jwt_secret
        assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret

    def test_derived_keys_fall_back_to_jwt_secret(self):
        settings = Settings(jwt_secret="j" * 40)

        assert settings.lookup_key == b"j" * 40
        assert settings.sealing_material == "j" * 40

        separate = Settings(jwt_secret="j" * 40, lookup_secret="l" * 40, mfa_encryption_key="m" * 40)

        assert separate.lookup_key == b"l" * 40
        assert separate.sealing_material == "m" * 40

    def test_settings_cache(self, monkeypatch):
        reset_settings_cache()
        monkeypatch.setenv("JWT_ISSUER", "cached-issuer")
        try:
            assert get_settings() is get_settings()
            assert get_settings().jwt_issuer == "cached-issuer"
        finally:
            reset_settings_cache()


class TestLogHygiene:
    def test_secret_keys_are_masked(self):
        event = _redact_secrets(
            None,
            "info",
            {
                "event": "login",
                "password": "hunter2hunter2",
                "refresh_token": "abcdef123456",
                "email": "alice@example.com",
                "token_id": "tok-1",
                "email_hash": "0123abcd",
                "error_kind": "token_invalid",
            },
        )

        assert event["password"] == "hu***r2"
        assert event["refresh_token"] == "ab***56"
        assert event["email"].startswith("al***")
        assert event["token_id"] == "tok-1"
        assert event["email_hash"] == "0123abcd"
        assert event["error_kind"] == "token_invalid"

    def test_short_secrets_are_fully_masked(self):
        assert _redact_secrets(None, "info", {"code": "1234"})["code"] == "***"

    def test_email_helpers(self):
        assert redact_email("user@example.com") == "u***@example.com"
        assert redact_email("u@example.com") == "*@example.com"
        assert redact_email("nonsense") == "***"
        assert email_digest(" Alice@Example.com") == email_digest("alice@example.com")
        assert email_digest(None) is None

    def test_correlation_id(self):
        assert set_correlation_id("abc") == "abc"
        assert get_correlation_id() == "abc"
        generated = set_correlation_id()
        assert generated != "abc"
        assert get_correlation_id() == generated
