"""Logging setup shared by every lmchat module."""

from __future__ import annotations

import logging
import os
import sys

_DEFAULT_LEVEL = os.environ.get("LMCHAT_LOG_LEVEL", "INFO")
_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str | int = _DEFAULT_LEVEL) -> None:
    """Install a single stdout handler on the root logger."""
    logging.captureWarnings(True)
    root = logging.getLogger()
    root.setLevel(level)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_FORMAT))
    root.handlers = [handler]


def get_logger(name: str = "lmchat") -> logging.Logger:
    """Return a named logger, configuring the root logger on first use."""
    if not logging.getLogger().handlers:
        configure_logging()
    return logging.getLogger(name)


__all__ = ["configure_logging", "get_logger"]
