"""Tests for environment-driven settings."""

from decimal import Decimal

from rewards_engine.config import Settings


class TestSettings:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("REWARDS_DATABASE_URL", raising=False)
        settings = Settings(_env_file=None)
        assert settings.database_url == ""
        assert settings.points_quantum == Decimal("1")
        assert settings.cashback_quantum == Decimal("0.01")

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("REWARDS_DATABASE_URL", "sqlite:///rewards.db")
        monkeypatch.setenv("REWARDS_CAP_RETRY_ATTEMPTS", "9")
        settings = Settings(_env_file=None)
        assert settings.database_url == "sqlite:///rewards.db"
        assert settings.cap_retry_attempts == 9
