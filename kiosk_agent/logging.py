"""Logging configuration helpers."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Libraries that log every request or browser protocol message at INFO/DEBUG.
NOISY_LOGGERS = ("aiohttp.access", "aiohttp.client", "asyncio", "playwright")


def configure_logging(
    level: str = "INFO", *, log_path: Optional[Path] = None, log_network: bool = False
) -> None:
    """Configure root logging handlers.

    Parameters
    ----------
    level:
        Log level name, e.g. "INFO".
    log_path:
        Optional file to append to in addition to the console. A file that
        cannot be opened is reported and skipped rather than aborting startup.
    log_network:
        When true, leave HTTP client and browser automation loggers at the
        root level instead of quieting them.
    """

    logging.captureWarnings(True)

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )

    if log_path:
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_path)
        except OSError as exc:
            logging.getLogger(__name__).warning(
                "Cannot write log file %s: %s", log_path, exc
            )
        else:
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
            root.addHandler(file_handler)

    if not log_network:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
