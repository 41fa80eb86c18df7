"""docbridge configuration."""

from __future__ import annotations

import logging

from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

DEFAULT_COMPANION_URL = "http://127.0.0.1:17654"


class Settings(BaseSettings):
    """Environment-driven settings for the companion and sync clients."""

    companion_url: str = DEFAULT_COMPANION_URL
    app_url: str = "http://localhost:5000"
    app_cookie: str = ""

    # Health monitoring
    check_interval_ms: int = 30_000
    max_consecutive_errors: int = 5
    auto_restart: bool = True
    debug: bool = False

    # Companion requests
    open_timeout_ms: int = 4_000
    availability_cache_ttl_ms: int = 5_000

    # Sync stream
    sync_close_grace_ms: int = 5_000
    sync_error_grace_ms: int = 2_000
    sync_reconnect_delay_ms: int = 2_000
    sync_max_reconnect_attempts: int = 5

    model_config = {"env_prefix": "DOCBRIDGE_", "env_file": ".env", "extra": "ignore"}


def load_settings() -> Settings:
    """Read settings from the environment (and ``.env`` when present)."""
    settings = Settings()
    logger.debug(
        "docbridge config: companion_url=%s, app_url=%s, check_interval_ms=%d",
        settings.companion_url,
        settings.app_url,
        settings.check_interval_ms,
    )
    return settings
