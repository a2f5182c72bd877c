"""Logging setup for the froth-control CLI and kiosk service."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Libraries whose connection chatter drowns out command logs.
NETWORK_LOGGERS = ("paho", "aiohttp.access", "aiohttp.client", "aiohttp.server")

LOG_FILE_MAX_BYTES = 1_000_000
LOG_FILE_BACKUPS = 3


def _resolve_level(level: str) -> int:
    value = logging.getLevelName(level.strip().upper())
    return value if isinstance(value, int) else logging.INFO


def configure_logging(
    level: str = "INFO", *, log_path: Optional[Path] = None, log_network: bool = False
) -> None:
    """Replace the root handlers with console (and optionally file) output.

    ``log_path`` enables a size-rotated file next to the console stream.
    ``log_network`` lets paho and aiohttp log at ``level`` instead of WARNING.
    """

    logging.captureWarnings(True)

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    resolved = _resolve_level(level)
    logging.basicConfig(level=resolved, format=LOG_FORMAT)

    if log_path:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=LOG_FILE_MAX_BYTES,
            backupCount=LOG_FILE_BACKUPS,
            encoding="utf-8",
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(file_handler)

    network_level = resolved if log_network else max(resolved, logging.WARNING)
    for name in NETWORK_LOGGERS:
        logging.getLogger(name).setLevel(network_level)
