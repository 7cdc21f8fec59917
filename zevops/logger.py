"""Logging configuration for the ZEV console."""

import logging
import sys

import structlog


def _stderr_logger(*args) -> structlog.PrintLogger:
    # sys.stderr is looked up per logger so redirected streams are honoured
    return structlog.PrintLogger(file=sys.stderr)


def setup_logging(service_name: str, log_level: str = "WARNING") -> None:
    """Configure structured logging for the console.

    Output goes to stderr so it never interleaves with the rich screen.
    """
    level = logging.getLevelName(log_level.upper())

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer() if log_level.upper() == "DEBUG"
            else structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=_stderr_logger,
        cache_logger_on_first_use=False,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=level,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))

    logger = structlog.get_logger(service_name)
    logger.debug(
        "Logging configured",
        service=service_name,
        log_level=log_level,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a logger instance."""
    return structlog.get_logger(name)
