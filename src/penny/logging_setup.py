"""Logging configuration for the ``penny`` package.

Library modules call ``get_logger("penny.<module>")`` and never attach
handlers. Entry points (the CLI) call ``configure_logging`` once at startup.
"""

import logging
import os
import sys
from typing import IO

_PKG_LOGGER_NAME = "penny"
_CONFIGURED = False

LOG_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"


def _parse_level(level: int | str | None) -> int:
    """Numeric level from an int, a name or a digit string; unknown names give INFO."""
    if level is None:
        level = os.getenv("PENNY_LOG_LEVEL")
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        name = level.strip().upper()
        if name.isdigit():
            return int(name)
        numeric = getattr(logging, name, None)
        if isinstance(numeric, int):
            return numeric
    return logging.INFO


def configure_logging(
    level: int | str | None = None,
    *,
    stream: IO[str] = sys.stderr,
) -> None:
    """Attach a single stream handler to the package logger. Idempotent.

    ``level`` falls back to PENNY_LOG_LEVEL, then INFO. The CLI passes DEBUG
    for --verbose.
    """
    global _CONFIGURED
    if _CONFIGURED:
        return

    logger = logging.getLogger(_PKG_LOGGER_NAME)
    for h in list(logger.handlers):
        if isinstance(h, logging.NullHandler):
            logger.removeHandler(h)

    handler = logging.StreamHandler(stream)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    logger.setLevel(_parse_level(level))
    logger.addHandler(handler)
    logger.propagate = False

    _CONFIGURED = True


def get_logger(name: str) -> logging.Logger:
    """Return a logger, adding a NullHandler to the package logger until configured."""
    pkg_logger = logging.getLogger(_PKG_LOGGER_NAME)
    if not _CONFIGURED and not pkg_logger.handlers:
        pkg_logger.addHandler(logging.NullHandler())
    return logging.getLogger(name)
