"""Logging for the OpenRouter relay: a main rotating log plus an optional raw traffic log."""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler

import colorlog

LOGGER_NAME = "openrouter_relay"
TRAFFIC_LOGGER_NAME = "openrouter_relay.traffic"

DEFAULT_LOG_PATH = "/var/log/openrouter-relay/relay.log"
MAIN_LOG_MAX_BYTES = 1_048_576
MAIN_LOG_BACKUPS = 3

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s - %(message)s"
LEVEL_COLORS = {
    "DEBUG": "cyan",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "red,bg_white",
}


def setup_logging(log_path: str | None = None, level_name: str | None = None) -> logging.Logger:
    """
    Configure the main relay logger.

    Output goes to a rotating file (1 MB, 3 backups). If the file cannot be
    opened the logger writes to stderr instead and says so once.
    LOG_LEVEL=DISABLE silences everything.
    """
    level_name = (level_name or os.getenv("LOG_LEVEL", "INFO")).upper().strip()
    logger = logging.getLogger(LOGGER_NAME)
    logger.handlers.clear()
    logger.propagate = False

    if level_name == "DISABLE":
        logging.disable(logging.CRITICAL)
        logger.addHandler(logging.NullHandler())
        return logger

    logging.disable(logging.NOTSET)
    logger.setLevel(getattr(logging, level_name, logging.INFO))

    path = log_path or DEFAULT_LOG_PATH
    handler, open_err = _rotating_handler(path, MAIN_LOG_MAX_BYTES, MAIN_LOG_BACKUPS)
    handler.setFormatter(_formatter(colored=_color_enabled()))
    logger.addHandler(handler)
    if open_err is not None:
        logger.warning("Cannot write log file %r (%s); logging to stderr", path, open_err)
    return logger


def setup_traffic_logging(log_path: str, max_bytes: int = 100_000_000, backup_count: int = 3) -> logging.Logger:
    """Route raw upstream chunks to their own file so they never flood the main log."""
    traffic = logging.getLogger(TRAFFIC_LOGGER_NAME)
    traffic.handlers.clear()
    traffic.setLevel(logging.DEBUG)
    traffic.propagate = False

    handler, open_err = _rotating_handler(log_path, max_bytes, backup_count)
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(_formatter(colored=False))
    traffic.addHandler(handler)
    if open_err is not None:
        logging.getLogger(LOGGER_NAME).warning(
            "Cannot write traffic log %r (%s); traffic goes to stderr", log_path, open_err
        )
    traffic.debug("Traffic logger enabled path=%s", log_path)
    return traffic


def _rotating_handler(path: str, max_bytes: int, backup_count: int) -> tuple[logging.Handler, OSError | None]:
    try:
        return RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"), None
    except OSError as e:
        return logging.StreamHandler(), e


def _color_enabled() -> bool:
    return os.getenv("LOG_COLOR", "true").strip().lower() in ("true", "1", "yes", "on")


def _formatter(colored: bool) -> logging.Formatter:
    if not colored:
        return logging.Formatter(LOG_FORMAT)
    return colorlog.ColoredFormatter(
        "%(log_color)s%(asctime)s %(levelname)-8s%(reset)s %(name)s - %(message)s",
        reset=True,
        log_colors=LEVEL_COLORS,
    )


def mask_secret(s: str, keep_start: int = 6, keep_end: int = 4) -> str:
    """Mask a secret string, keeping only start and end characters."""
    s = (s or "").strip()
    if not s:
        return ""
    if len(s) <= keep_start + keep_end:
        return "*" * len(s)
    return f"{s[:keep_start]}...{s[-keep_end:]}"
