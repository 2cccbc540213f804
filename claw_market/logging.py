"""Logging configuration for Claw Market."""

import logging
import sys
from typing import Any

import structlog

from claw_market.config import Config, get_config

SECURITY_EVENT = "security_policy"


def configure_logging(config: Config | None = None) -> None:
    """Configure structured logging for Claw Market."""
    config = config or get_config()

    # Get log level from config
    log_level = getattr(logging, config.logging.level.upper(), logging.INFO)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if config.logging.format == "console":
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Get a logger instance.

    Args:
        name: Optional logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()


def log_security_event(logger: Any, message: str, **fields: Any) -> None:
    """Log a policy refusal so operators can tell attacks from outages."""
    logger.warning(message, event_type=SECURITY_EVENT, **fields)


# Create module-level logger
log = get_logger(__name__)
