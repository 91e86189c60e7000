"""Shared logging helpers using structlog + Logfire."""

from __future__ import annotations

import logging

import logfire
import structlog
import structlog.contextvars

_logfire_ready = False


def _ensure_logfire() -> None:
    global _logfire_ready
    if _logfire_ready:
        return
    logfire.configure(send_to_logfire="if-token-present", service_name="sddc-cli")
    logfire.instrument_pydantic()
    _logfire_ready = True


def configure_logging(verbose: bool = False) -> None:
    """Configure structlog + Logfire + stdlib logging for the CLI."""

    _ensure_logfire()

    level = logging.DEBUG if verbose else logging.INFO
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(logging.Formatter("%(message)s"))
    logging.basicConfig(level=level, handlers=[stream_handler], force=True)
    # aiohttp logs every connection at debug level
    logging.getLogger("aiohttp").setLevel(logging.WARNING)

    timestamper = structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S", utc=True)
    renderer: structlog.types.Processor
    if verbose:
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.KeyValueRenderer(
            key_order=["timestamp", "level", "logger", "command", "kind", "event", "target", "task_id"],
            drop_missing=True,
        )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            timestamper,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            logfire.StructlogProcessor(),
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def bind_run_context(command: str, **fields: str) -> None:
    """Tag every log line of the current run with the command and its arguments."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(command=command, **fields)
