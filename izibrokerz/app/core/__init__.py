"""Core utilities for the rate-limit service."""

from izibrokerz.app.core.config import Settings, settings
from izibrokerz.app.core.logging import get_log_context, get_logger, setup_logging

__all__ = [
    "Settings",
    "settings",
    "get_log_context",
    "get_logger",
    "setup_logging",
]
