"""Main entry point for the CloudStack topology operator.

API credentials are read from mounted files only. Startup fails when they
are found in the environment.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime

from .config import Config, ConfigurationError
from .credentials import CredentialError, enforce_file_credentials, load_api_config
from .machine import MachineReconciler
from .manager import ReconcileManager, Reconcilers
from .reconciler import TopologyReconciler, make_client_factory
from .store import ObjectStore

# Attributes every LogRecord carries; everything else came in through extra=
_RESERVED_RECORD_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int | str = logging.INFO) -> None:
    """Configure structured logging with JSON output for production."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from the HTTP stack
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_reconcilers(config: Config) -> Reconcilers:
    """Wire the reconcilers with the operator-wide credentials.

    Raises:
        CredentialError: If the cloud-config file is unusable.
    """
    factory = make_client_factory(config, load_api_config(config.cloud_config_path))
    return Reconcilers(
        topology=TopologyReconciler(
            factory,
            requeue_delay=config.requeue_delay_seconds,
            partial_transition_delay=config.partial_transition_requeue_seconds,
        ),
        machine=MachineReconciler(
            factory,
            requeue_delay=config.requeue_delay_seconds,
            partial_transition_delay=config.partial_transition_requeue_seconds,
        ),
    )


async def main() -> int:
    """Run the operator.

    Returns:
        Exit code (0 for success, 1 for configuration errors, 2 for
        credentials found in the environment).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        enforce_file_credentials()
    except CredentialError as e:
        logger.critical("Security violation", extra={"error": str(e)})
        return 2

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    logging.getLogger().setLevel(config.log_level.upper())

    try:
        reconcilers = build_reconcilers(config)
    except CredentialError as e:
        logger.error("Failed to load credentials", extra={"error": str(e)})
        return 1

    logger.info(
        "Starting CloudStack topology operator",
        extra={
            "specs_dir": str(config.specs_dir),
            "status_dir": str(config.status_dir),
            "workers": config.workers,
        },
    )

    manager = ReconcileManager(config, ObjectStore(config.specs_dir, config.status_dir), reconcilers)

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        manager.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        await manager.run()
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1

    logger.info("Operator stopped")
    return 0


def run() -> None:
    """Entry point for the operator process."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
