"""Logging helpers."""
from __future__ import annotations

import logging
from logging import Logger

LOG_FORMAT = "%(asctime)s | %(levelname)8s | %(name)s | %(message)s"
TRANSPORT_LOGGERS = ("httpx", "httpcore", "websockets")


def configure_logging(level: int | str = logging.INFO) -> None:
    """Set up the root handler and apply ``level``, also when already set up."""

    if isinstance(level, str):
        level = level.upper()
    logging.basicConfig(level=level, format=LOG_FORMAT)
    root = logging.getLogger()
    root.setLevel(level)
    # per-request transport chatter only shows at debug
    transport_level = logging.DEBUG if root.level <= logging.DEBUG else logging.WARNING
    for name in TRANSPORT_LOGGERS:
        logging.getLogger(name).setLevel(transport_level)


def get_logger(name: str) -> Logger:
    if not logging.getLogger().handlers:
        configure_logging()
    return logging.getLogger(name)
