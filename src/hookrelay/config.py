"""Application configuration settings.

This module provides centralized configuration management using environment
variables with sensible defaults.
"""

import json
import os
from dataclasses import dataclass, field
from typing import Any


def _get_bool_env(name: str, default: bool = False) -> bool:
    """Get a boolean value from environment variable.

    Args:
        name: Environment variable name.
        default: Default value if not set.

    Returns:
        Boolean value from environment.
    """
    value = os.getenv(name, "").lower()
    if value in ("true", "1", "yes", "on"):
        return True
    if value in ("false", "0", "no", "off"):
        return False
    return default


def _get_int_env(name: str, default: int) -> int:
    """Get an integer value from environment variable."""
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {value!r}") from e


def _get_json_env(name: str) -> dict[str, Any]:
    """Get a JSON object from environment variable.

    Args:
        name: Environment variable name.

    Returns:
        Parsed object, or an empty dict if unset.

    Raises:
        ValueError: If the value is not a JSON object.
    """
    raw = os.getenv(name)
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"{name} is not valid JSON: {e}") from e
    if not isinstance(value, dict):
        raise ValueError(f"{name} must be a JSON object")
    return value


def _get_list_env(name: str) -> list[str]:
    """Get a comma-separated list from environment variable."""
    raw = os.getenv(name, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class Settings:
    """Application settings loaded from environment variables.

    Attributes:
        DATABASE_PATH: SQLite file holding idempotency, watermark and outcome tables.
        LOG_LEVEL: Logging level.
        SIGNATURE_TOLERANCE_SECONDS: Replay window for signed webhooks.
        RETRY_MAX_ATTEMPTS: Attempts per downstream operation.
        RETRY_BASE_DELAY_MS: Base backoff delay.
        RETRY_MAX_DELAY_MS: Backoff ceiling (also caps Retry-After hints).
        OPERATION_DEADLINE_SECONDS: Wall-clock budget for one operation.
        RATE_LIMIT_MAX_WAIT_SECONDS: Longest a caller waits for tokens.
        IDEMPOTENCY_PENDING_TTL_SECONDS: Age after which a pending reservation
            is considered abandoned and may be reclaimed.
        RETENTION_DAYS: Retention for terminal idempotency and outcome rows.
        PROCESS_INLINE: Process events before responding instead of in the
            background.
        REDIS_URL: Optional Redis URL for shared rate-limit buckets.
        WEBHOOK_SOURCES: Source name -> {type, secret, scheme}.
        RATE_LIMITS: Bucket name -> {capacity, refill_rate}.
    """

    # Storage
    DATABASE_PATH: str = "data/hookrelay.db"

    # Logging
    LOG_LEVEL: str = "INFO"

    # Ingestion
    SIGNATURE_TOLERANCE_SECONDS: int = 300
    PROCESS_INLINE: bool = False
    IDEMPOTENCY_PENDING_TTL_SECONDS: int = 900
    RETENTION_DAYS: int = 30

    # Retry / deadlines
    RETRY_MAX_ATTEMPTS: int = 5
    RETRY_BASE_DELAY_MS: int = 1000
    RETRY_MAX_DELAY_MS: int = 30000
    OPERATION_DEADLINE_SECONDS: int = 120

    # Rate limiting
    RATE_LIMIT_MAX_WAIT_SECONDS: int = 60
    REDIS_URL: str | None = None
    RATE_LIMITS: dict[str, Any] = field(default_factory=dict)

    # Sources
    WEBHOOK_SOURCES: dict[str, Any] = field(default_factory=dict)

    # Notification channels
    SLACK_WEBHOOK_URL: str | None = None
    PAGERDUTY_ROUTING_KEY: str | None = None
    SMTP_HOST: str | None = None
    SMTP_PORT: int = 587
    SMTP_USERNAME: str | None = None
    SMTP_PASSWORD: str | None = None
    SMTP_SENDER: str | None = None
    SMTP_RECIPIENTS: list[str] = field(default_factory=list)

    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings from environment variables.

        Returns:
            Settings instance populated from environment.
        """
        return cls(
            DATABASE_PATH=os.getenv("DATABASE_PATH", "data/hookrelay.db"),
            LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO"),
            SIGNATURE_TOLERANCE_SECONDS=_get_int_env("SIGNATURE_TOLERANCE_SECONDS", 300),
            PROCESS_INLINE=_get_bool_env("PROCESS_INLINE", default=False),
            IDEMPOTENCY_PENDING_TTL_SECONDS=_get_int_env(
                "IDEMPOTENCY_PENDING_TTL_SECONDS", 900
            ),
            RETENTION_DAYS=_get_int_env("RETENTION_DAYS", 30),
            RETRY_MAX_ATTEMPTS=_get_int_env("RETRY_MAX_ATTEMPTS", 5),
            RETRY_BASE_DELAY_MS=_get_int_env("RETRY_BASE_DELAY_MS", 1000),
            RETRY_MAX_DELAY_MS=_get_int_env("RETRY_MAX_DELAY_MS", 30000),
            OPERATION_DEADLINE_SECONDS=_get_int_env("OPERATION_DEADLINE_SECONDS", 120),
            RATE_LIMIT_MAX_WAIT_SECONDS=_get_int_env("RATE_LIMIT_MAX_WAIT_SECONDS", 60),
            REDIS_URL=os.getenv("REDIS_URL"),
            RATE_LIMITS=_get_json_env("RATE_LIMITS"),
            WEBHOOK_SOURCES=_get_json_env("WEBHOOK_SOURCES"),
            SLACK_WEBHOOK_URL=os.getenv("SLACK_WEBHOOK_URL"),
            PAGERDUTY_ROUTING_KEY=os.getenv("PAGERDUTY_ROUTING_KEY"),
            SMTP_HOST=os.getenv("SMTP_HOST"),
            SMTP_PORT=_get_int_env("SMTP_PORT", 587),
            SMTP_USERNAME=os.getenv("SMTP_USERNAME"),
            SMTP_PASSWORD=os.getenv("SMTP_PASSWORD"),
            SMTP_SENDER=os.getenv("SMTP_SENDER"),
            SMTP_RECIPIENTS=_get_list_env("SMTP_RECIPIENTS"),
        )
