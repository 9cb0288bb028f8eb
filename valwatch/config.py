"""Application configuration from environment variables."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from pydantic import BaseModel, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

HTTP_SCHEMES = ("http", "https")
WS_SCHEMES = ("ws", "wss")


def _check_url(url: str, schemes: tuple[str, ...]) -> str:
    parsed = urlparse(url)
    if parsed.scheme not in schemes or not parsed.netloc:
        raise ValueError(f"{url!r} is not a valid {'/'.join(schemes)} URL")
    return url.rstrip("/")


class RpcEndpoint(BaseModel):
    """An RPC endpoint watched by the health checker."""

    name: str
    url: str

    @field_validator("url")
    @classmethod
    def _valid_url(cls, v: str) -> str:
        return _check_url(v, HTTP_SCHEMES)


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Telegram
    tg_token: str = ""
    telegram_api_url: str = "https://api.telegram.org"
    telegram_chat_ids: list[int] = []  # subscribed at startup
    bot_keepalive_interval: int = 60  # seconds

    # Chain
    mainnet_axelar_lcd_rest_base_urls: list[str] = ["https://axelar-lcd.publicnode.com"]
    mainnet_axelar_ws_urls: list[str] = ["wss://axelar-rpc.publicnode.com/websocket"]
    axelar_voter_address: str = ""
    axelar_valcons_address: Optional[str] = None
    rpc_endpoints: list[RpcEndpoint] = []

    # Thresholds
    broadcaster_balance_threshold: int = 5_000_000  # uaxl
    broadcaster_balance_check_interval: int = 3600  # seconds
    uptime_threshold_low: float = 99.0  # percent
    uptime_threshold_medium: float = 95.0
    uptime_threshold_high: float = 90.0
    last_x_hour_poll_vote_notification: int = 12  # hours

    # Redis
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    queue_prefix: str = "valwatch"

    # Database
    database_path: Path = Path("data/valwatch.db")

    # Scheduling (seconds)
    notification_dispatch_interval: int = 10
    uptime_check_interval: int = 300
    poll_vote_check_interval: int = 60
    rpc_health_check_interval: int = 120
    validator_sync_interval: int = 3600

    # Health checks (seconds)
    job_health_check_interval: int = 300
    app_health_check_interval: int = 60

    # Lifecycle
    startup_max_attempts: int = 3
    startup_backoff_base: float = 2.0
    job_init_retry_interval: float = 5.0

    # Logging
    log_level: str = "INFO"

    @field_validator("telegram_api_url")
    @classmethod
    def _valid_http_url(cls, v: str) -> str:
        return _check_url(v, HTTP_SCHEMES)

    @field_validator("mainnet_axelar_lcd_rest_base_urls")
    @classmethod
    def _valid_lcd_urls(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("at least one LCD REST base URL is required")
        return [_check_url(url, HTTP_SCHEMES) for url in v]

    @field_validator("mainnet_axelar_ws_urls")
    @classmethod
    def _valid_ws_urls(cls, v: list[str]) -> list[str]:
        return [_check_url(url, WS_SCHEMES) for url in v]

    @field_validator("axelar_voter_address")
    @classmethod
    def _valid_voter_address(cls, v: str) -> str:
        if v and not (v.startswith("axelar1") and v[7:].isalnum()):
            raise ValueError(f"{v!r} is not an axelar1 bech32 address")
        return v

    @field_validator(
        "broadcaster_balance_threshold",
        "broadcaster_balance_check_interval",
        "last_x_hour_poll_vote_notification",
        "notification_dispatch_interval",
        "uptime_check_interval",
        "poll_vote_check_interval",
        "rpc_health_check_interval",
        "validator_sync_interval",
        "job_health_check_interval",
        "app_health_check_interval",
        "startup_max_attempts",
        "startup_backoff_base",
        "job_init_retry_interval",
        "bot_keepalive_interval",
    )
    @classmethod
    def _positive(cls, v):
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("log_level")
    @classmethod
    def _valid_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level {v!r}")
        return level

    @model_validator(mode="after")
    def _ordered_uptime_thresholds(self) -> "Settings":
        # "high" severity fires at the lowest uptime
        if not (self.uptime_threshold_high < self.uptime_threshold_medium < self.uptime_threshold_low <= 100):
            raise ValueError("uptime thresholds must satisfy high < medium < low <= 100")
        return self

    @property
    def redis_url(self) -> str:
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"


@lru_cache
def get_settings(env_file: Optional[str] = ".env") -> Settings:
    """Settings for ``env_file``, loaded once per file."""
    return Settings(_env_file=env_file)
