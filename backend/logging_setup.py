"""
Structured Logging
==================
One place to configure structlog for the API process, the CLI entrypoint and
the test-suite. Components obtain loggers with
``structlog.get_logger(component=...)`` at module level or
``structlog.get_logger().bind(...)`` per call.
"""

import logging
import os

import structlog


class LoggingConfig:
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
    LOG_FORMAT = os.getenv("LOG_FORMAT", "json")


def configure_logging(level: str = None, fmt: str = None) -> None:
    """Configure structlog processors and level filtering."""
    level_name = (level or LoggingConfig.LOG_LEVEL).upper()
    renderer = (
        structlog.dev.ConsoleRenderer(colors=True)
        if (fmt or LoggingConfig.LOG_FORMAT) == "console"
        else structlog.processors.JSONRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level_name, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
