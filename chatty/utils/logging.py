"""
Logging for chatty.

Every module logs through a child of the ``chatty`` logger.  Only that root
carries a handler, so the output format and level are decided in one place
and ``set_level`` (driven by ``CHATTY_LOG_LEVEL`` / ``logging.level``)
applies to the whole package.
"""

import logging
import sys
from typing import Optional

ROOT_LOGGER = "chatty"

_FORMAT = "%(asctime)s  [%(levelname)s]  %(name)s - %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"


def _root() -> logging.Logger:
    root = logging.getLogger(ROOT_LOGGER)
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(fmt=_FORMAT, datefmt=_DATEFMT))
        root.addHandler(handler)
        root.propagate = False
        root.setLevel(logging.INFO)
    return root


def get_logger(name: str, level: Optional[int] = None) -> logging.Logger:
    """
    Return the logger for *name*, nested under ``chatty``.

    Names outside the package (``"scripts.backup"``) are prefixed so they
    share the package handler.  *level* overrides the inherited level for
    this logger only.
    """
    _root()
    if name != ROOT_LOGGER and not name.startswith(ROOT_LOGGER + "."):
        name = f"{ROOT_LOGGER}.{name}"
    logger = logging.getLogger(name)
    if level is not None:
        logger.setLevel(level)
    return logger


def set_level(level: int) -> None:
    """Set the level for every chatty logger that does not override it."""
    _root().setLevel(level)
