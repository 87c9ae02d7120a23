"""Support broker configuration."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Environment-driven settings for the support broker."""

    # Admission queue
    max_queue_size: int = 100
    promotion_delay_ms: int = 0
    wait_unit_seconds: int = 120  # Advisory wait per queue slot
    connect_timeout_seconds: int = 1800  # 0 = never expire unconnected sessions
    correlation_table_size: int = 1000

    # Telegram relay (disabled when token or chat id is empty)
    telegram_bot_token: str = ""
    telegram_support_chat_id: str = ""
    telegram_webhook_secret: str = ""  # Set to receive updates via webhook instead of polling
    telegram_api_base: str = "https://api.telegram.org"
    telegram_poll_timeout: int = 30
    relay_send_timeout: float = 10.0

    # HTTP surface
    host: str = "0.0.0.0"
    port: int = 3000
    cors_origins: list[str] = [
        "http://localhost:5500",
        "http://127.0.0.1:5500",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]
    start_rate_limit: str = "30/minute"
    rate_limit_enabled: bool = True
    trust_forwarded_for: bool = False  # Only behind a proxy that sets X-Forwarded-For
    log_level: str = "INFO"

    model_config = {"env_prefix": "SUPPORT_", "env_file": ".env", "extra": "ignore"}


settings = Settings()
