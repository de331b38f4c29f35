"""
Realtime Sync Configuration

Per-topic timing and capacity values are static constants, not runtime
flags. The only environment-driven settings are the Redis connection and
the log level; all environment variables MUST be read here.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass

# ── Static per-topic constants ────────────────────────────────────────────────

# Coalescing window for high-churn topics (seconds).
HEAVY_INVALIDATION_WINDOW = 2.0

# Low-churn topics fire on the next loop turn; same-tick bursts still coalesce.
IMMEDIATE_INVALIDATION_WINDOW = 0.0

# Matches the page size of the notifications query.
NOTIFICATION_LIST_CAPACITY = 20

# Delay between an optimistic patch and its authoritative refresh (seconds).
RECONCILIATION_DELAY = 3.0

CHANGE_CHANNEL_PREFIX = "changes:"


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


def _optional_env(name: str, default: str = "") -> str:
    """Get an optional environment variable with a default."""
    return os.environ.get(name, default)


def _optional_env_float(name: str, default: float) -> float:
    """Get an optional float environment variable with a default."""
    value = os.environ.get(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(f"Invalid float value for {name}: {value}")


def _log_level(name: str, default: str) -> int:
    value = os.environ.get(name, default).upper()
    level = logging.getLevelName(value)
    if not isinstance(level, int):
        raise ConfigurationError(f"Invalid log level for {name}: {value}")
    return level


@dataclass(frozen=True)
class RedisConfig:
    """Redis connection used by the change transport."""
    url: str
    poll_interval: float = 0.1


@dataclass(frozen=True)
class LoggingConfig:
    level: int = logging.INFO
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass(frozen=True)
class Settings:
    """Root configuration container."""
    redis: RedisConfig
    logging: LoggingConfig


def load_settings() -> Settings:
    """Load all settings from environment variables."""
    redis = RedisConfig(
        url=_optional_env("REDIS_URL", "redis://localhost:6379/0"),
        poll_interval=_optional_env_float("REDIS_POLL_INTERVAL", 0.1),
    )
    return Settings(
        redis=redis,
        logging=LoggingConfig(level=_log_level("LOG_LEVEL", "INFO")),
    )
