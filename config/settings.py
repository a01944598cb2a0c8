"""Runtime settings for the rollout controller."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=False, alias="LOG_JSON")

    reconcile_interval_seconds: float = Field(
        default=30.0, gt=0.0, alias="RECONCILE_INTERVAL_SECONDS"
    )
    adapter_timeout_seconds: float = Field(
        default=10.0, gt=0.0, alias="ADAPTER_TIMEOUT_SECONDS"
    )
    min_lookback_seconds: float = Field(
        default=30.0, ge=0.0, alias="MIN_LOOKBACK_SECONDS"
    )
    default_tolerated_failures: int = Field(
        default=2, ge=0, alias="DEFAULT_TOLERATED_FAILURES"
    )
    terminal_retention_seconds: float = Field(
        default=7 * 24 * 3600, ge=0.0, alias="TERMINAL_RETENTION_SECONDS"
    )

    state_dir: Path = Field(default=Path("var/rollouts"), alias="STATE_DIR")
    prometheus_url: str = Field(
        default="http://prometheus:9090", alias="PROMETHEUS_URL"
    )
    traffic_api_url: str = Field(
        default="http://traffic-router:8080", alias="TRAFFIC_API_URL"
    )
    traffic_route: str = Field(default="default", alias="TRAFFIC_ROUTE")
    notifier_webhook_url: str | None = Field(
        default=None, alias="NOTIFIER_WEBHOOK_URL"
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a process-wide cached settings instance."""

    return Settings()
