# config.py
from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from the environment or a .env file."""

    model_config = SettingsConfigDict(
        env_prefix="BUDGET_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_env: str = Field(default="development", description="Deployment environment")
    database_url: str = Field(
        default="sqlite:///./budget.db", description="SQLAlchemy database URL"
    )

    jwt_secret: str = Field(
        default="dev-only-secret-change-me-before-deploying",
        description="HMAC key for JWT signing",
    )
    jwt_issuer: str = Field(default="budget-planner", description="JWT iss claim")
    access_token_ttl_minutes: int = Field(default=15, gt=0)
    refresh_token_ttl_days: int = Field(default=7, gt=0)

    log_level: str = Field(default="INFO", description="Root log level")
    log_json: bool = Field(default=False, description="Render logs as JSON lines")

    cors_origins_str: str = Field(
        default="*",
        alias="BUDGET_CORS_ORIGINS",
        description="Comma-separated list of allowed CORS origins",
    )

    notification_buffer_size: int = Field(
        default=10, gt=0, description="Per-connection event buffer"
    )
    stream_keepalive_seconds: float = Field(
        default=15.0, gt=0, description="Idle interval before a keep-alive comment"
    )

    default_currency: str = Field(default="RUB")

    rate_limit_enabled: bool = Field(default=True, description="Apply per-client rate limits")
    auth_rate_limit: str = Field(
        default="60/minute;10/second",
        description="Rate limit for the auth endpoints, per client address",
    )
    ai_rate_limit: str = Field(
        default="30/minute;10/second",
        description="Rate limit for the AI endpoints, per client address",
    )

    token_purge_hour: int = Field(
        default=3, ge=0, le=23, description="Hour of the daily refresh-token purge"
    )

    @property
    def cors_origins(self) -> List[str]:
        return [o.strip() for o in self.cors_origins_str.split(",") if o.strip()]

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    return Settings()
