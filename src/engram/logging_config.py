"""Logging setup for applications embedding engram.

Library modules only create ``logging.getLogger(__name__)`` loggers; handlers
are attached here, on the ``engram`` logger, when the host application asks.
"""

from __future__ import annotations

import logging

from rich.logging import RichHandler

_LOGGER_NAME = "engram"


def configure_logging(level: int | str = logging.INFO) -> logging.Logger:
    """Attach a RichHandler to the engram logger (once) and set its level."""
    logger = logging.getLogger(_LOGGER_NAME)
    if not any(isinstance(h, RichHandler) for h in logger.handlers):
        handler = RichHandler(rich_tracebacks=True, show_path=False)
        handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
        logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False
    return logger


def enable_debug_mode() -> logging.Logger:
    """Verbose engram logging, including per-query lexical fallbacks."""
    return configure_logging(logging.DEBUG)
