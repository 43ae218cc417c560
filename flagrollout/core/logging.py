"""
Structured logging configuration using structlog
"""

import logging
import sys

import structlog

from flagrollout.core.config import settings


def _resolve_log_level() -> int:
    if settings.LOG_LEVEL:
        return logging.getLevelName(settings.LOG_LEVEL.upper())
    return logging.DEBUG if settings.DEBUG else logging.INFO


def configure_logging():
    """Configure structured logging for the application"""
    log_level = _resolve_log_level()

    # Configure standard logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )

    # Configure structlog
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if not settings.DEBUG else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = None):
    """
    Get a structured logger instance

    Args:
        name: Logger name (usually __name__ of the module)

    Returns:
        Structured logger instance
    """
    return structlog.get_logger(name)


def flag_log_context(flag_key: str, **kwargs):
    """Bind the flag being operated on to every log line inside the block.

    Usage:
        with flag_log_context("new-checkout", rollout_action="advance"):
            ...
    """
    return structlog.contextvars.bound_contextvars(flag_key=flag_key, **kwargs)
