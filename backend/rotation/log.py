from __future__ import annotations

import logging
import sys

_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """
    Install one stderr handler on the package logger.

    Safe to call repeatedly (CLI callback + API startup); later calls only adjust the level.
    """

    logger = logging.getLogger("rotation")
    logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    if any(getattr(h, "_rotation_handler", False) for h in logger.handlers):
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(_FORMAT))
    handler._rotation_handler = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
