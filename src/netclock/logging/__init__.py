"""Logging helpers for netclock."""

from .debug_logger import (
    debug_log_call,
    disable_debug,
    enable_debug,
    format_value,
    is_debug_enabled,
)

__all__ = [
    "debug_log_call",
    "disable_debug",
    "enable_debug",
    "format_value",
    "is_debug_enabled",
]
