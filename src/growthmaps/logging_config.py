#!/usr/bin/env python3
"""growthmaps.logging_config

Handler setup for the `growthmaps` logger namespace.

Design notes:
- Library modules only call `logging.getLogger(__name__)`; nothing is
  configured until an application (or notebook) calls setup_logging().
- Calling it again replaces the handlers instead of stacking them.
- rasterio logs every GDAL open at DEBUG; its logger is kept at WARNING
  unless `gdal_debug` is set.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional, Union

LOGGER_NAME = "growthmaps"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%H:%M:%S"


def _coerce_level(level: Union[int, str]) -> int:
    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level).upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level: {level!r}")
    return value


def setup_logging(
    level: Union[int, str] = logging.INFO,
    log_file: Optional[Union[str, Path]] = None,
    *,
    gdal_debug: bool = False,
) -> logging.Logger:
    """Attach a stdout handler (and optionally a file handler) to the package logger.

    Args:
        level: Level as a number or a name ("DEBUG", "info", ...).
        log_file: Optional log file; parent directories are created and the
            file is truncated.
        gdal_debug: Keep rasterio's DEBUG records (GDAL open/close chatter).
    """
    level = _coerce_level(level)
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, mode="w", encoding="utf-8"))
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    if not gdal_debug:
        logging.getLogger("rasterio").setLevel(max(level, logging.WARNING))

    logger.debug("Logging initialized at %s", logging.getLevelName(level))
    return logger
