"""
Central configuration using Pydantic BaseSettings.

Validates all env vars at first use (fail-fast). Every timing knob of the
retry/poll engine lives here so call sites never hardcode budgets.

Usage:
    from imagebuilder.settings import get_settings

    settings = get_settings()
    print(settings.poll.readiness_interval)

Lazy initialization: get_settings() creates the singleton on first call.
Tests can reset via get_settings.cache_clear().
"""

from functools import lru_cache
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings


# =============================================================================
# Nested Settings Groups
# =============================================================================


class RetrySettings(BaseSettings):
    """Provider error retry rules and the network-level retry loop."""

    model_config = {"env_prefix": "IMAGEBUILDER_RETRY_", "extra": "ignore"}

    # Throttling (TooManyRequests): exponential, unbounded by default
    throttle_initial_delay: float = 5.0
    throttle_max_delay: float = 120.0
    throttle_max_retries: int = 0

    # InternalError: constant
    internal_error_delay: float = 10.0
    internal_error_max_retries: int = 100

    # Resource busy / exclusive access conflicts: constant
    conflict_delay: float = 10.0
    conflict_max_retries: int = 100

    # Connection reset, socket timeout, temporary DNS failure
    network_delay: float = 0.5
    network_max_retries: int = 20

    @model_validator(mode="after")
    def _validate_delays(self):
        """Reject negative delays and an inverted throttle window."""
        for name in (
            "throttle_initial_delay",
            "throttle_max_delay",
            "internal_error_delay",
            "conflict_delay",
            "network_delay",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must not be negative")
        for name in (
            "throttle_max_retries",
            "internal_error_max_retries",
            "conflict_max_retries",
            "network_max_retries",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must not be negative (0 means unbounded)")
        if self.throttle_max_delay < self.throttle_initial_delay:
            raise ValueError("throttle_max_delay must be >= throttle_initial_delay")
        return self


class PollSettings(BaseSettings):
    """Operation status polling and resource readiness polling."""

    model_config = {"env_prefix": "IMAGEBUILDER_POLL_", "extra": "ignore"}

    # Async operation status endpoint
    operation_interval: float = 1.0
    operation_timeout: Optional[float] = None

    # Resource readiness (VM power state, deployment provisioning state)
    readiness_interval: float = 15.0
    readiness_max_attempts: Optional[int] = 60
    readiness_deadline: Optional[float] = None
    readiness_initial_delay: float = 0.0
    max_query_errors: int = 3

    # Resource group deletion
    deletion_interval: float = 15.0
    deletion_deadline: float = 15 * 60

    # Interruptible task cancellation check
    interrupt_check_interval: float = 0.1

    @model_validator(mode="after")
    def _validate_intervals(self):
        """Intervals must be positive; budgets must allow at least one attempt."""
        for name in ("operation_interval", "readiness_interval", "deletion_interval", "interrupt_check_interval"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.readiness_max_attempts is not None and self.readiness_max_attempts < 1:
            raise ValueError("readiness_max_attempts must be >= 1")
        if self.max_query_errors < 0:
            raise ValueError("max_query_errors must not be negative")
        return self


class LogSettings(BaseSettings):
    """Logging configuration."""

    model_config = {"env_prefix": "IMAGEBUILDER_LOG_", "extra": "ignore"}

    level: str = "INFO"
    format: str = "json"
    file: str = ""

    # Request/response bodies from the management API
    requests: bool = False


# =============================================================================
# Root Settings
# =============================================================================


class Settings(BaseSettings):
    """Root application settings composing all sub-settings."""

    model_config = {
        "env_prefix": "IMAGEBUILDER_",
        "extra": "ignore",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }

    # Pause before every step and wait for the operator
    debug: bool = False

    # Management endpoint
    management_url: str = "https://management.azure.com"
    api_version: str = "2014-06-01"
    request_timeout: int = 60

    # Nested groups (initialized separately to support env_prefix)
    retry: RetrySettings = None  # type: ignore[assignment]
    poll: PollSettings = None  # type: ignore[assignment]
    logging: LogSettings = None  # type: ignore[assignment]

    @model_validator(mode="before")
    @classmethod
    def _init_nested(cls, values):
        """Initialize nested settings from environment."""
        if values.get("retry") is None:
            values["retry"] = RetrySettings()
        if values.get("poll") is None:
            values["poll"] = PollSettings()
        if values.get("logging") is None:
            values["logging"] = LogSettings()
        return values


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Get the application settings singleton.

    Lazy-initialized on first call. Validates all env vars (fail-fast).
    Tests can reset via: get_settings.cache_clear()
    """
    return Settings()
