"""
tests/test_config.py -- Tests for core/config.py Settings validation.

Covers:
  - SECRET_KEY policy: dev auto-generation, production refusal, minimum length
  - REFRESH_SECRET_KEY fallback
  - cross-field policy checks
  - environment variable mapping
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError as PydanticValidationError

from core.config import Settings

KEY = "k" * 32


class TestSecretKey:
    def test_debug_generates_key(self) -> None:
        settings = Settings(debug=True, secret_key="")
        assert len(settings.secret_key) >= 32

    def test_production_requires_key(self, monkeypatch) -> None:
        monkeypatch.delenv("SECRET_KEY", raising=False)
        with pytest.raises(PydanticValidationError, match="SECRET_KEY is required"):
            Settings(debug=False, secret_key="")

    def test_short_key_rejected(self) -> None:
        with pytest.raises(PydanticValidationError, match="at least 32 characters"):
            Settings(debug=True, secret_key="short")

    def test_short_refresh_key_rejected(self) -> None:
        with pytest.raises(PydanticValidationError, match="REFRESH_SECRET_KEY"):
            Settings(secret_key=KEY, refresh_secret_key="short")

    def test_refresh_key_falls_back_to_secret_key(self) -> None:
        assert Settings(secret_key=KEY).refresh_signing_key == KEY
        assert Settings(secret_key=KEY, refresh_secret_key="r" * 32).refresh_signing_key == "r" * 32


class TestPolicy:
    def test_max_lockout_below_base_rejected(self) -> None:
        with pytest.raises(PydanticValidationError, match="LOCKOUT_MAX_DURATION_SECONDS"):
            Settings(secret_key=KEY, lockout_duration_seconds=600, lockout_max_duration_seconds=60)

    def test_refresh_ttl_below_access_ttl_rejected(self) -> None:
        with pytest.raises(PydanticValidationError, match="REFRESH_TOKEN_TTL_SECONDS"):
            Settings(secret_key=KEY, access_token_ttl_seconds=3600, refresh_token_ttl_seconds=60)

    @pytest.mark.parametrize(
        "field",
        ["lockout_threshold", "max_sessions", "access_token_ttl_seconds", "email_verification_max_attempts"],
    )
    def test_non_positive_values_rejected(self, field) -> None:
        with pytest.raises(PydanticValidationError):
            Settings(secret_key=KEY, **{field: 0})

    def test_bcrypt_rounds_bounds(self) -> None:
        with pytest.raises(PydanticValidationError):
            Settings(secret_key=KEY, bcrypt_rounds=3)


class TestEnvironment:
    def test_values_read_from_environment(self, monkeypatch) -> None:
        monkeypatch.setenv("SECRET_KEY", KEY)
        monkeypatch.setenv("LOCKOUT_THRESHOLD", "7")
        monkeypatch.setenv("PROGRESSIVE_LOCKOUT", "true")
        monkeypatch.setenv("MAX_SESSIONS", "10")
        settings = Settings()
        assert settings.secret_key == KEY
        assert settings.lockout_threshold == 7
        assert settings.progressive_lockout is True
        assert settings.max_sessions == 10

    def test_email_verification_from_environment(self, monkeypatch) -> None:
        monkeypatch.setenv("SECRET_KEY", KEY)
        monkeypatch.setenv("REQUIRE_EMAIL_VERIFICATION", "true")
        monkeypatch.setenv("EMAIL_VERIFICATION_TTL_SECONDS", "3600")
        settings = Settings()
        assert settings.require_email_verification is True
        assert settings.email_verification_ttl_seconds == 3600
        assert settings.email_verification_resend_seconds == 60
