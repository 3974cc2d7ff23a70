"""Logging configuration module."""

from __future__ import annotations

import logging.config
import os
from typing import Any, Mapping

from .config import DEFAULT_LOG_LEVEL

LOG_LEVEL_ENV = "KUBE_BACKUP_LOG_LEVEL"
LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


def get_log_level(environ: Mapping[str, str] | None = None, default: str = DEFAULT_LOG_LEVEL) -> str:
    """Get the log level from the environment, falling back to ``default``."""
    environ = os.environ if environ is None else environ
    value = environ.get(LOG_LEVEL_ENV, default).strip().upper()
    if value not in LOG_LEVELS:
        return default
    return value


def get_logging_config(log_level: str) -> dict[str, Any]:
    """Get logging config dict.

    Parameters
    ----------
    log_level : str
        The log level

    Returns
    -------
    dict[str, Any]
        The logging config dict
    """
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "stream": "ext://sys.stdout",
            },
        },
        "loggers": {
            "kube_backup": {
                "handlers": ["default"],
                "level": log_level,
                "propagate": False,
            },
            # skip spamming logs from the client libraries
            "kubernetes": {"handlers": ["default"], "level": "WARNING", "propagate": False},
            "urllib3": {"handlers": ["default"], "level": "WARNING", "propagate": False},
            "httpx": {"handlers": ["default"], "level": "WARNING", "propagate": False},
            "httpcore": {"handlers": ["default"], "level": "WARNING", "propagate": False},
        },
        "root": {"handlers": ["default"], "level": "WARNING"},
    }


def configure_logging(log_level: str) -> None:
    logging.config.dictConfig(get_logging_config(log_level.upper()))
