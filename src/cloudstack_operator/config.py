"""Configuration management with validation.

Every setting comes from the environment and is validated when the Config
is constructed. API credentials are not settings: they come from mounted
files only (see credentials.py).
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_RESYNC_INTERVAL_SECONDS = 600
MIN_RESYNC_INTERVAL_SECONDS = 30
MAX_RESYNC_INTERVAL_SECONDS = 3600

DEFAULT_WORKERS = 4
MIN_WORKERS = 1
MAX_WORKERS = 32

DEFAULT_REQUEST_TIMEOUT_SECONDS = 30
MIN_REQUEST_TIMEOUT_SECONDS = 1
MAX_REQUEST_TIMEOUT_SECONDS = 300

DEFAULT_ASYNC_JOB_TIMEOUT_SECONDS = 300
MIN_ASYNC_JOB_TIMEOUT_SECONDS = 10
MAX_ASYNC_JOB_TIMEOUT_SECONDS = 3600

DEFAULT_RECONCILE_TIMEOUT_SECONDS = 900
DEFAULT_REQUEUE_DELAY_SECONDS = 10
DEFAULT_BACKOFF_MAX_SECONDS = 300
DEFAULT_PARTIAL_TRANSITION_REQUEUE_SECONDS = 2

# Object documents are small; anything larger is rejected unread
MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class Config:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Paths
    cloud_config_path: Path = field(default_factory=lambda: Path("/config/cloud-config"))
    specs_dir: Path = field(default_factory=lambda: Path("/specs"))
    status_dir: Path = field(default_factory=lambda: Path("/status"))
    secrets_dir: Path = field(default_factory=lambda: Path("/secrets"))

    # Scheduling
    resync_interval_seconds: int = DEFAULT_RESYNC_INTERVAL_SECONDS
    workers: int = DEFAULT_WORKERS
    requeue_delay_seconds: int = DEFAULT_REQUEUE_DELAY_SECONDS
    backoff_max_seconds: int = DEFAULT_BACKOFF_MAX_SECONDS
    partial_transition_requeue_seconds: int = DEFAULT_PARTIAL_TRANSITION_REQUEUE_SECONDS

    # Timeouts
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS
    async_job_timeout_seconds: int = DEFAULT_ASYNC_JOB_TIMEOUT_SECONDS
    reconcile_timeout_seconds: int = DEFAULT_RECONCILE_TIMEOUT_SECONDS

    log_level: str = "INFO"

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        def check_range(name: str, value: int, low: int, high: int) -> None:
            if not (low <= value <= high):
                errors.append(f"{name} must be between {low} and {high}: {value}")

        check_range(
            "RESYNC_INTERVAL",
            self.resync_interval_seconds,
            MIN_RESYNC_INTERVAL_SECONDS,
            MAX_RESYNC_INTERVAL_SECONDS,
        )
        check_range("WORKERS", self.workers, MIN_WORKERS, MAX_WORKERS)
        check_range(
            "REQUEST_TIMEOUT",
            self.request_timeout_seconds,
            MIN_REQUEST_TIMEOUT_SECONDS,
            MAX_REQUEST_TIMEOUT_SECONDS,
        )
        check_range(
            "ASYNC_JOB_TIMEOUT",
            self.async_job_timeout_seconds,
            MIN_ASYNC_JOB_TIMEOUT_SECONDS,
            MAX_ASYNC_JOB_TIMEOUT_SECONDS,
        )

        if self.reconcile_timeout_seconds < self.request_timeout_seconds:
            errors.append("RECONCILE_TIMEOUT must not be shorter than REQUEST_TIMEOUT")
        if self.requeue_delay_seconds < 1:
            errors.append("REQUEUE_DELAY must be at least 1 second")
        if self.backoff_max_seconds < self.requeue_delay_seconds:
            errors.append("BACKOFF_MAX must not be shorter than REQUEUE_DELAY")
        if self.partial_transition_requeue_seconds < 0:
            errors.append("PARTIAL_TRANSITION_REQUEUE must not be negative")

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            errors.append(f"LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}: {self.log_level}")

        # Path validation
        if not self.cloud_config_path.is_file():
            errors.append(f"Cloud config file does not exist: {self.cloud_config_path}")
        if not self.specs_dir.is_dir():
            errors.append(f"Specs directory does not exist: {self.specs_dir}")
        if self.status_dir.exists() and not self.status_dir.is_dir():
            errors.append(f"Status path is not a directory: {self.status_dir}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def log_level_number(self) -> int:
        return logging.getLevelName(self.log_level.upper())

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            CLOUD_CONFIG_PATH: INI file with the [Global] API credentials
                (default: /config/cloud-config)
            SPECS_DIR: Path to declared object YAML documents (default: /specs)
            STATUS_DIR: Path where status records are persisted (default: /status)
            SECRETS_DIR: Per-cluster credential files named after the
                identity reference (default: /secrets)
            RESYNC_INTERVAL: Seconds between full resyncs (default: 600)
            WORKERS: Objects reconciled concurrently (default: 4)
            REQUEST_TIMEOUT: Per HTTP request timeout in seconds (default: 30)
            ASYNC_JOB_TIMEOUT: Upper bound for async CloudStack jobs (default: 300)
            RECONCILE_TIMEOUT: Upper bound for one reconciliation (default: 900)
            REQUEUE_DELAY: Base requeue delay after a recoverable error (default: 10)
            BACKOFF_MAX: Cap of the exponential transient backoff (default: 300)
            PARTIAL_TRANSITION_REQUEUE: Requeue delay for a machine left
                stopped mid affinity change (default: 2)
            LOG_LEVEL: Logging level name (default: INFO)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_path(key: str, default: str) -> Path:
            return Path(os.environ.get(key, default))

        status_dir = get_path("STATUS_DIR", "/status")
        status_dir.mkdir(parents=True, exist_ok=True)

        return cls(
            cloud_config_path=get_path("CLOUD_CONFIG_PATH", "/config/cloud-config"),
            specs_dir=get_path("SPECS_DIR", "/specs"),
            status_dir=status_dir,
            secrets_dir=get_path("SECRETS_DIR", "/secrets"),
            resync_interval_seconds=get_int("RESYNC_INTERVAL", DEFAULT_RESYNC_INTERVAL_SECONDS),
            workers=get_int("WORKERS", DEFAULT_WORKERS),
            requeue_delay_seconds=get_int("REQUEUE_DELAY", DEFAULT_REQUEUE_DELAY_SECONDS),
            backoff_max_seconds=get_int("BACKOFF_MAX", DEFAULT_BACKOFF_MAX_SECONDS),
            partial_transition_requeue_seconds=get_int(
                "PARTIAL_TRANSITION_REQUEUE", DEFAULT_PARTIAL_TRANSITION_REQUEUE_SECONDS
            ),
            request_timeout_seconds=get_int("REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT_SECONDS),
            async_job_timeout_seconds=get_int(
                "ASYNC_JOB_TIMEOUT", DEFAULT_ASYNC_JOB_TIMEOUT_SECONDS
            ),
            reconcile_timeout_seconds=get_int(
                "RECONCILE_TIMEOUT", DEFAULT_RECONCILE_TIMEOUT_SECONDS
            ),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
        )
