"""Logging configuration for the book market."""

import logging

import structlog


def configure_logging(level="INFO"):
    """Route structlog through the stdlib root logger at the given level."""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    # getLevelName hands back "Level X" for names it does not know
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(format="%(message)s", level=level)
    logging.getLogger().setLevel(level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S"),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Suppress noisy library loggers
    logging.getLogger("werkzeug").setLevel(logging.WARNING)
