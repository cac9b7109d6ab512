"""drawguard — application configuration.

Loads .env variables into a typed config object.
Validates required variables on startup.
"""

import os
from dataclasses import dataclass
from datetime import time

from dotenv import load_dotenv


_REQUIRED_VARS = [
    "BROKER_BASE_URL",
    "LIVE_FEED_URL",
]


@dataclass(frozen=True)
class Config:
    """Typed configuration loaded from environment variables."""

    broker_base_url: str
    live_feed_url: str
    db_path: str
    log_level: str
    health_port: int
    poll_interval_seconds: int
    poll_concurrency: int
    broker_timeout_seconds: float
    reconnect_attempts: int
    session_ttl_hours: int
    trading_timezone: str
    broker_timezone: str  # naive broker timestamps are in this zone
    daily_reset_time: str  # "HH:MM" in the trading timezone
    order_history_start: str  # ISO date, lower bound of the first order fetch
    feed_reconnect_base_seconds: float = 1.0
    feed_reconnect_max_seconds: float = 60.0
    feed_max_reconnect_attempts: int = 10
    live_resync_seconds: int = 60

    @property
    def reset_time(self) -> time:
        """Return the daily reset wall-clock time as a ``datetime.time``."""
        hour, minute = self.daily_reset_time.split(":")
        return time(int(hour), int(minute))


def load_config(env_path: str | None = None) -> Config:
    """Load configuration from environment variables.

    Raises ``ValueError`` with a message naming the missing variable when a
    required variable is absent, or when ``DAILY_RESET_TIME`` is malformed.
    """
    load_dotenv(dotenv_path=env_path)

    missing = [v for v in _REQUIRED_VARS if not os.environ.get(v)]
    if missing:
        raise ValueError(
            f"Missing required environment variable(s): {', '.join(missing)}"
        )

    config = Config(
        broker_base_url=os.environ["BROKER_BASE_URL"].rstrip("/"),
        live_feed_url=os.environ["LIVE_FEED_URL"],
        db_path=os.environ.get("DB_PATH", "data/drawguard.db"),
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
        health_port=int(os.environ.get("HEALTH_PORT", "8080")),
        poll_interval_seconds=int(os.environ.get("POLL_INTERVAL_SECONDS", "240")),
        poll_concurrency=int(os.environ.get("POLL_CONCURRENCY", "5")),
        broker_timeout_seconds=float(os.environ.get("BROKER_TIMEOUT_SECONDS", "30")),
        reconnect_attempts=int(os.environ.get("RECONNECT_ATTEMPTS", "3")),
        session_ttl_hours=int(os.environ.get("SESSION_TTL_HOURS", "24")),
        trading_timezone=os.environ.get("TRADING_TIMEZONE", "Asia/Tehran"),
        broker_timezone=os.environ.get("BROKER_TIMEZONE", "Europe/Istanbul"),
        daily_reset_time=os.environ.get("DAILY_RESET_TIME", "01:30"),
        order_history_start=os.environ.get("ORDER_HISTORY_START", "2025-06-01"),
        feed_reconnect_base_seconds=float(
            os.environ.get("FEED_RECONNECT_BASE_SECONDS", "1")
        ),
        feed_reconnect_max_seconds=float(
            os.environ.get("FEED_RECONNECT_MAX_SECONDS", "60")
        ),
        feed_max_reconnect_attempts=int(
            os.environ.get("FEED_MAX_RECONNECT_ATTEMPTS", "10")
        ),
        live_resync_seconds=int(os.environ.get("LIVE_RESYNC_SECONDS", "60")),
    )

    try:
        config.reset_time
    except ValueError as exc:
        raise ValueError(
            f"DAILY_RESET_TIME must be HH:MM, got {config.daily_reset_time!r}"
        ) from exc

    return config
