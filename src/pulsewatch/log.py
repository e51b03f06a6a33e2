"""Structured logging for pulsewatch.

Every module logs through ``get_logger(__name__)``. Host applications that
already configure structlog need not call ``configure_logging``; the SDK
only lowers its own logger to DEBUG when ``debug`` is enabled.
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from structlog.stdlib import ProcessorFormatter

LOGGER_NAME = "pulsewatch"

# httpx logs every request at INFO, including our own deliveries.
_NOISY_LOGGERS = ("httpx", "httpcore")


def configure_logging(debug: bool = False, json_output: bool = False) -> None:
    """Route structlog through stdlib logging with a console or JSON renderer.

    Args:
        debug: Log pulsewatch internals at DEBUG instead of WARNING.
        json_output: Render JSON lines instead of the console format.
    """
    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_output:
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=[*shared_processors, ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        ProcessorFormatter(
            processors=[
                ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info,
                renderer,
            ],
            foreign_pre_chain=shared_processors,
        )
    )

    sdk_logger = logging.getLogger(LOGGER_NAME)
    sdk_logger.handlers = [handler]
    sdk_logger.propagate = False
    set_debug(debug)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def set_debug(debug: bool) -> None:
    """Switch the pulsewatch logger between DEBUG and WARNING."""
    logging.getLogger(LOGGER_NAME).setLevel(logging.DEBUG if debug else logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a bound logger for a pulsewatch module.

    Args:
        name: Logger name (typically __name__).

    Returns:
        Bound structlog logger.
    """
    logger: structlog.stdlib.BoundLogger = structlog.get_logger(name)
    return logger
