"""
Structured Logging Setup
========================
One place to configure structlog for the server, the sweep task and
the admin console.

Production gets JSON lines, development gets the colored console
renderer.
"""

import logging
import os

import structlog


def configure_logging(json_logs: bool | None = None, level: int = logging.INFO) -> None:
    """Configure structlog processors for the whole process."""
    if json_logs is None:
        json_logs = os.getenv("ENV", "development") == "production"

    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(colors=True)
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
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
