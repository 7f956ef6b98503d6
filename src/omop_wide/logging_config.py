"""
Centralized logging configuration.

Configure once at the entry point (the CLI), not per module. Core modules log
through structlog; it is routed into stdlib logging here so both share one
handler and one level.
"""

import logging
import sys

import structlog


def configure_logging(level: int | str = logging.INFO) -> None:
    """
    Configure Python logging and structlog for the entire application.

    Truly idempotent: safe to call multiple times without side effects.
    Checks if root logger already has handlers before configuring.
    """
    root_logger = logging.getLogger()

    # Only configure if no handlers exist (truly idempotent)
    if root_logger.handlers:
        return

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.processors.format_exc_info,
            structlog.processors.KeyValueRenderer(key_order=["event"], sort_keys=True),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
    )

    # Reduce noise
    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
