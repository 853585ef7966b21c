"""Main entry point for the Tyk operator.

Wires the Kubernetes adapter, the Tyk management API client and the
controller together, installs signal handlers and runs until SIGTERM/SIGINT.
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import signal
import sys
from datetime import UTC, datetime
from pathlib import Path

from kubernetes.config import ConfigException

from .config import Config, ConfigurationError
from .controller import Controller
from .kube import KubernetesEventSource, KubernetesResourceStore, load_kube_config
from .resource_kinds import KINDS
from .tyk_client import TykClient

# LogRecord attributes that are not structured "extra" fields
_RESERVED_RECORD_ATTRS = frozenset(
    (
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
    )
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


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output for production."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from client libraries
    for name in ("httpx", "httpcore", "kubernetes", "urllib3"):
        logging.getLogger(name).setLevel(logging.WARNING)


async def main(config_file: Path | None = None, workers: int | None = None) -> int:
    """Run the operator.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env(config_file)
        if workers is not None:
            config = dataclasses.replace(config, worker_count=workers)
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    logger.info(
        "Starting Tyk operator",
        extra={
            "url": config.url,
            "mode": config.mode.value,
            "namespaces": list(config.namespaces) or "all",
            "enable_webhooks": config.enable_webhooks,
        },
    )

    try:
        custom_api, core_api = load_kube_config()
    except ConfigException as e:
        logger.error("Failed to load Kubernetes configuration", extra={"error": str(e)})
        return 1

    store = KubernetesResourceStore(
        custom_api, core_api, config.namespaces, config.request_timeout_seconds
    )
    event_source = KubernetesEventSource(custom_api, core_api, list(KINDS.values()), config.namespaces)

    async with TykClient(config) as client:
        controller = Controller(config, store, client, event_source)

        loop = asyncio.get_running_loop()

        def signal_handler(sig: signal.Signals) -> None:
            logger.info("Received signal", extra={"signal": sig.name})
            controller.shutdown()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

        try:
            await controller.run()
        except Exception as e:
            logger.exception("Unhandled exception", extra={"error": str(e)})
            return 1
        finally:
            event_source.close()

    logger.info("Operator stopped")
    return 0


def run() -> None:
    """Entry point for running the operator without the CLI."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
