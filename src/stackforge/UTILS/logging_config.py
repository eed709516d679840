"""
Logging setup: structlog on top of the standard library, written to stderr so
operator output on stdout stays clean.
"""
import logging
import os
import sys
from typing import Optional

import structlog
from structlog.stdlib import BoundLogger, LoggerFactory, ProcessorFormatter


def configure_logging(log_level: Optional[str] = None, json_output: Optional[bool] = None) -> None:
    """
    Configures structlog and the root logger.

    Args:
        log_level: Level name (defaults to the LOG_LEVEL env var or WARNING).
        json_output: Force JSON lines; by default JSON is used unless stderr is a terminal.
    """
    if log_level is None:
        log_level = os.getenv("LOG_LEVEL", "WARNING")
    level = getattr(logging, log_level.upper(), logging.WARNING)

    if json_output is None:
        json_output = not sys.stderr.isatty()
    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(
        ProcessorFormatter(
            processor=renderer,
            foreign_pre_chain=[structlog.processors.add_log_level, structlog.processors.TimeStamper(fmt="iso")],
        )
    )

    # Clear any existing handlers to prevent duplicates
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    # botocore is chatty at DEBUG; keep it one notch quieter than ours.
    logging.getLogger("botocore").setLevel(max(level, logging.INFO))

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.TimeStamper(fmt="iso"),
            ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=LoggerFactory(),
        wrapper_class=BoundLogger,
        cache_logger_on_first_use=True,
    )
