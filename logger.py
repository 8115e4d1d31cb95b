"""Logging configuration for the chat relay service."""

from __future__ import annotations

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from typing import List

import colorlog

LOGGER_NAME = "chat_relay"
DEFAULT_LOG_PATH = "/var/log/chat-relay/chat-relay.log"

LOG_COLORS = {
    "DEBUG": "cyan",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "red,bg_white",
}

_TRUTHY = ("true", "1", "yes", "on")


def setup_logging(log_path: str | None = None) -> logging.Logger:
    """
    Configure the relay logger.

    Records go to a rotating file (LOG_PATH, 1 MB x 3 backups). If the file
    cannot be opened the relay logs to stderr instead. LOG_STDOUT=true mirrors
    records to stdout as well, and LOG_LEVEL=DISABLE silences everything.
    """
    level_name = os.getenv("LOG_LEVEL", "INFO").upper().strip()
    logger = logging.getLogger(LOGGER_NAME)
    logger.handlers.clear()
    logger.propagate = False

    if level_name == "DISABLE":
        logging.disable(logging.CRITICAL)
        logger.addHandler(logging.NullHandler())
        return logger

    logging.disable(logging.NOTSET)
    level = getattr(logging, level_name, logging.INFO)
    logger.setLevel(level)

    handlers: List[logging.Handler] = []
    file_error = None
    try:
        handlers.append(
            RotatingFileHandler(
                log_path or DEFAULT_LOG_PATH,
                maxBytes=1_048_576,
                backupCount=3,
                encoding="utf-8",
            )
        )
    except OSError as e:
        file_error = e
        handlers.append(logging.StreamHandler(sys.stderr))

    if file_error is None and _env_flag("LOG_STDOUT", False):
        handlers.append(logging.StreamHandler(sys.stdout))

    formatter = _formatter(colored=_env_flag("LOG_COLOR", True))
    for h in handlers:
        h.setFormatter(formatter)
        logger.addHandler(h)

    if file_error is not None:
        logger.warning(
            "Cannot open log file %r (%s); logging to stderr",
            log_path or DEFAULT_LOG_PATH,
            file_error,
        )

    # httpx/httpcore only get chatty when the relay itself is at DEBUG
    transport_level = logging.DEBUG if level <= logging.DEBUG else logging.WARNING
    for name in ("httpx", "httpcore"):
        logging.getLogger(name).setLevel(transport_level)
    return logger


def _env_flag(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    return v.strip().lower() in _TRUTHY


def _formatter(colored: bool) -> logging.Formatter:
    if colored:
        return colorlog.ColoredFormatter(
            "%(log_color)s%(asctime)s %(levelname)-8s%(reset)s %(name)s - %(message)s",
            reset=True,
            log_colors=LOG_COLORS,
        )
    return logging.Formatter("%(asctime)s %(levelname)-8s %(name)s - %(message)s")


def mask_secret(s: str, keep_start: int = 6, keep_end: int = 4) -> str:
    """Mask a secret string, keeping only start and end characters."""
    s = (s or "").strip()
    if not s:
        return ""
    if len(s) <= keep_start + keep_end:
        return "*" * len(s)
    return f"{s[:keep_start]}...{s[-keep_end:]}"
