from __future__ import annotations

import os
import sys
from typing import Optional

from loguru import logger as _loguru_logger

_LOGGER = None

DEFAULT_LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "{level:<8} | {extra[tag]} | {message}"
)


def _configure(level: str, log_format: str, log_file: Optional[str] = None):
    _loguru_logger.remove()
    _loguru_logger.configure(extra={"tag": "roomsync"})
    _loguru_logger.add(
        sys.stdout,
        format=log_format,
        level=level,
        enqueue=True,
    )
    if log_file:
        _loguru_logger.add(
            log_file,
            format=log_format,
            level=level,
            rotation="10 MB",
            retention="7 days",
            enqueue=True,
        )
    return _loguru_logger


def _configure_fallback(exc: Optional[Exception] = None):
    """Configure a minimal console logger when the YAML config is unavailable."""
    level = os.environ.get("LOG_LEVEL", "INFO")
    log_format = os.environ.get("LOG_FORMAT", DEFAULT_LOG_FORMAT)
    logger = _configure(level, log_format)
    if exc and os.environ.get("LOG_FALLBACK_DEBUG"):
        logger.warning(f"Falling back to minimal logger configuration: {exc}")
    return logger


def setup_logging():
    """
    Return a logger instance that works both inside the service and in
    isolated environments (e.g., Cloud Functions).
    """
    global _LOGGER
    if _LOGGER is not None:
        return _LOGGER

    try:
        from roomsync.config.config_loader import load_config

        log_config = load_config().get("log", {}) or {}
    except Exception as exc:
        _LOGGER = _configure_fallback(exc)
        return _LOGGER

    level = os.environ.get("LOG_LEVEL") or log_config.get("log_level", "INFO")
    log_format = os.environ.get("LOG_FORMAT") or log_config.get(
        "log_format", DEFAULT_LOG_FORMAT
    )
    log_file = None
    if log_config.get("log_dir") and log_config.get("log_file"):
        log_file = os.path.join(log_config["log_dir"], log_config["log_file"])
    try:
        _LOGGER = _configure(level, log_format, log_file)
    except Exception as exc:
        _LOGGER = _configure_fallback(exc)
    return _LOGGER
