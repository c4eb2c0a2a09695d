"""Service settings, read from REWARDS_-prefixed environment variables or .env."""

from decimal import Decimal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    # Empty means the in-memory store; otherwise a SQLAlchemy URL.
    database_url: str = ""
    ruleset_file: str = ""
    transaction_file: str = ""

    points_quantum: Decimal = Decimal("1")
    cashback_quantum: Decimal = Decimal("0.01")
    cap_retry_attempts: int = 5

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="REWARDS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()
