"""
Logging configuration for Shipyard.

Suppresses health check access logs so the API log stays readable while
pipeline runs are in flight, and lets single modules (``shipyard.executor``,
``shipyard.rollout``) be turned up or down without touching the rest.
"""

import logging
import logging.config
from typing import Any, Dict, Mapping, Optional

UVICORN_LOGGERS = ("uvicorn", "uvicorn.error")


class HealthCheckFilter(logging.Filter):
    """Filter to suppress health check endpoint logs."""

    def filter(self, record: logging.LogRecord) -> bool:
        """Filter out health check requests from uvicorn access logs."""
        if record.name == "uvicorn.access":
            message = record.getMessage()
            if "/health" in message and "GET" in message:
                return False
        return True


def parse_module_levels(value: Optional[str]) -> Dict[str, str]:
    """
    Parse ``LOG_LEVELS`` style overrides.

    ``"shipyard.executor=DEBUG, shipyard.rollout=warning"`` becomes
    ``{"shipyard.executor": "DEBUG", "shipyard.rollout": "WARNING"}``.
    Entries without ``=`` are ignored.
    """
    levels = {}
    for entry in (value or "").split(","):
        name, sep, level = entry.partition("=")
        if sep and name.strip() and level.strip():
            levels[name.strip()] = level.strip().upper()
    return levels


def get_logging_config(
    level: str = "INFO", module_levels: Optional[Mapping[str, str]] = None
) -> Dict[str, Any]:
    """
    Build the dictConfig for the API server and CLI.

    Args:
        level: Level for the ``shipyard`` logger and the root logger
        module_levels: Per-logger overrides, e.g. ``{"shipyard.executor": "DEBUG"}``
    """
    level = level.upper()
    loggers: Dict[str, Dict[str, Any]] = {
        name: {"handlers": ["default"], "level": "INFO", "propagate": False}
        for name in UVICORN_LOGGERS
    }
    loggers["uvicorn.access"] = {"handlers": ["access"], "level": "INFO", "propagate": False}
    loggers["shipyard"] = {"handlers": ["default"], "level": level, "propagate": False}
    # Children propagate to the "shipyard" handler; only their threshold changes
    for name, module_level in (module_levels or {}).items():
        loggers[name] = {"level": module_level.upper()}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {
            "health_check_filter": {"()": HealthCheckFilter},
        },
        "formatters": {
            "default": {"format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"},
            # uvicorn access lines already carry client, method and status
            "access": {"format": "%(message)s"},
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "stream": "ext://sys.stdout",
            },
            "access": {
                "class": "logging.StreamHandler",
                "formatter": "access",
                "stream": "ext://sys.stdout",
                "filters": ["health_check_filter"],
            },
        },
        "loggers": loggers,
        "root": {"level": level, "handlers": ["default"]},
    }


def configure_logging(level: str = "INFO", module_levels: Optional[Mapping[str, str]] = None) -> None:
    """Apply the Shipyard logging configuration."""
    logging.config.dictConfig(get_logging_config(level, module_levels))
