from __future__ import annotations

import logging
import sys
from typing import TextIO

_root_logger = logging.getLogger("skillspkg")
_root_logger.addHandler(logging.NullHandler())


def setup_logging(
    level: str | int = "INFO",
    format: str | None = None,
    stream: TextIO | None = None,
) -> None:
    """
    Configure the ``skillspkg`` logger.

    Library code only ever logs through child loggers, so applications that
    embed the package keep full control unless they call this.
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    _root_logger.setLevel(level)
    _root_logger.handlers.clear()

    if format is None:
        format = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(logging.Formatter(format))
    handler.setLevel(level)
    _root_logger.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    if name.startswith("skillspkg."):
        return logging.getLogger(name)
    return logging.getLogger(f"skillspkg.{name}")
