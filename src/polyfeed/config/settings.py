import logging
from typing import Any, Optional

from pydantic import BaseModel, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from polyfeed.config.enumerations import RateLimitPolicy

logger = logging.getLogger(__name__)


class RateLimitSettings(BaseModel):
    """Request budget shared by every REST call and stream connect.

    Defaults match the free tier: five calls per minute.
    """

    ceiling: int = Field(default=5, ge=1)
    refill_amount: int = Field(default=5, ge=1)
    refill_interval: float = Field(default=60.0, gt=0)
    policy: RateLimitPolicy = RateLimitPolicy.BLOCKING


class BackoffSettings(BaseModel):
    """Reconnect backoff curve. ``max_attempts=None`` retries forever."""

    base_delay: float = Field(default=1.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1)
    max_delay: float = Field(default=60.0, ge=0)
    jitter: float = Field(default=0.2, ge=0, le=1)
    max_attempts: Optional[int] = Field(default=None, ge=1)


class ClientSettings(BaseSettings):
    api_key: SecretStr
    api_url: str = "https://api.polygon.io"
    stream_url: str = "wss://socket.polygon.io/stocks"

    request_timeout: float = 30.0
    connect_timeout: float = 10.0
    auth_timeout: float = 10.0
    subscribe_timeout: float = 10.0
    heartbeat_timeout: Optional[float] = 30.0
    feed_queue_size: int = 0

    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    backoff: BackoffSettings = Field(default_factory=BackoffSettings)

    model_config = SettingsConfigDict(
        env_prefix="POLYGON_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
    )


def load_settings(env_file: Optional[str] = ".env", **overrides: Any) -> ClientSettings:
    """Load settings from the environment and ``env_file``; keyword overrides win."""
    settings = ClientSettings(_env_file=env_file, **overrides)  # type: ignore[call-arg]
    logger.debug(
        "Loaded settings (api_url=%s, stream_url=%s)", settings.api_url, settings.stream_url
    )
    return settings
