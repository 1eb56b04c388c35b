"""Main entry point for the site agent.

The agent runs next to the site's hardware controller. It executes
operations requested by the cloud, republishes resource inventory on a
schedule and keeps its mutual TLS channel current across certificate
rotation.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime

from .agent import SiteAgent
from .config import Config, ConfigurationError
from .overrides import OverrideLoadError, Overrides, load_overrides
from .resources import resource_names

_RESERVED_RECORD_FIELDS = frozenset(
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

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_FIELDS:
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

    # Reduce noise from transport libraries
    for name in ("grpc", "temporalio", "urllib3"):
        logging.getLogger(name).setLevel(logging.WARNING)


def load_configuration() -> tuple[Config, Overrides]:
    """Read environment configuration and the optional override file.

    Raises:
        ConfigurationError: If the environment is invalid.
        OverrideLoadError: If the override file is invalid.
    """
    config = Config.from_env()
    overrides = Overrides()
    if config.overrides_path is not None:
        overrides = load_overrides(config.overrides_path, resource_names())
    return config, overrides


async def main() -> int:
    """Run the site agent.

    Returns:
        Exit code (0 for clean shutdown, 1 for configuration or startup failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config, overrides = load_configuration()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1
    except OverrideLoadError as e:
        logger.error("Override file error", extra={"error": str(e)})
        return 1

    if config.dev_mode:
        logging.getLogger().setLevel(logging.DEBUG)

    logger.info(
        "Starting site agent",
        extra={
            "site_id": config.site_id,
            "site_controller": config.site_controller.address,
            "workflow_engine": config.temporal.target,
            "secure": config.site_controller.secure,
        },
    )

    try:
        agent = SiteAgent(config, overrides=overrides)
    except Exception as e:
        logger.error(
            "Failed to initialize site agent",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return 1

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        agent.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        await agent.start()
        await agent.run()
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        await agent.close()
        return 1

    logger.info("Site agent stopped")
    return 0


def run() -> None:
    """Entry point for the site agent process."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
