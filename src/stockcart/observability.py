"""Structured logging for stockcart.

Library modules only ask for a logger; configure_logging() is called by the
entry points (CLI, API server) and never on import.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from structlog.stdlib import BoundLogger

LOGGER_NAME = "stockcart"


def get_logger(component: str | None = None) -> BoundLogger:
    """Get a logger, optionally bound to a component name.

    Example:
        >>> logger = get_logger("ledger")
        >>> logger.info("stock_reserved", product_id="p1", quantity=2)
    """
    name = f"{LOGGER_NAME}.{component}" if component else LOGGER_NAME
    return structlog.get_logger(name)


def configure_logging(*, log_level: str = "INFO", json_format: bool = False) -> None:
    """Configure structlog processors and the stdlib handler level.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        json_format: If True, output JSON lines. If False, output console format.
    """
    processors: list[Any] = [
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper(), logging.INFO),
    )
