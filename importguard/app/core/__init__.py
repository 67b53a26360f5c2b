"""Core utilities for the import guard application."""

from importguard.app.core.config import Settings, settings
from importguard.app.core.logging import get_logger, setup_logging

__all__ = [
    "Settings",
    "settings",
    "get_logger",
    "setup_logging",
]
