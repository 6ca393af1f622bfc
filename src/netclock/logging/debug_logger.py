"""
Debug logging utility for netclock.

Traces calls of the statistics functions (inputs, outputs, duration).
Toggled with the NETCLOCK_DEBUG environment variable or enable_debug().
"""

import functools
import logging
import os
import time
from typing import Any, Callable

import numpy as np

DEBUG_ENABLED = os.environ.get('NETCLOCK_DEBUG', 'false').lower() == 'true'

logger = logging.getLogger('netclock.debug')
logger.setLevel(logging.DEBUG if DEBUG_ENABLED else logging.INFO)


def enable_debug():
    """Enable debug tracing globally."""
    global DEBUG_ENABLED
    DEBUG_ENABLED = True
    logger.setLevel(logging.DEBUG)
    logger.info("Debug tracing enabled")


def disable_debug():
    """Disable debug tracing globally."""
    global DEBUG_ENABLED
    DEBUG_ENABLED = False
    logger.setLevel(logging.INFO)
    logger.info("Debug tracing disabled")


def is_debug_enabled() -> bool:
    return DEBUG_ENABLED


def format_value(value: Any, max_len: int = 100) -> str:
    """
    Format a value for a trace line.

    numpy arrays and long sequences are summarised instead of printed in full.
    """
    if isinstance(value, np.ndarray):
        if value.size <= 8:
            return f"array({value.tolist()})"
        return (f"array(n={value.size}, min={value.min():.6f}, "
                f"max={value.max():.6f}, median={np.median(value):.6f})")

    if isinstance(value, (list, tuple)) and len(value) > 8:
        return f"{type(value).__name__}(len={len(value)}, first={value[0]!r}, last={value[-1]!r})"

    value_str = repr(value)
    if len(value_str) > max_len:
        return value_str[:max_len] + "..."
    return value_str


def debug_log_call(func: Callable) -> Callable:
    """
    Decorator that traces a function call when debug tracing is enabled.

    Usage:
        @debug_log_call
        def combine(offsets, weights):
            ...
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        if not DEBUG_ENABLED:
            return func(*args, **kwargs)

        name = f"{func.__module__}.{func.__qualname__}"
        logger.debug(f"-> CALL {name}")
        for i, arg in enumerate(args):
            logger.debug(f"    [{i}] {format_value(arg)}")
        for key, value in kwargs.items():
            logger.debug(f"    {key} = {format_value(value)}")

        start = time.perf_counter()
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            elapsed_ms = (time.perf_counter() - start) * 1000.0
            logger.debug(f"<- RAISE {name}: {type(e).__name__}: {e} ({elapsed_ms:.3f}ms)")
            raise

        elapsed_ms = (time.perf_counter() - start) * 1000.0
        logger.debug(f"<- RETURN {name}: {format_value(result)} ({elapsed_ms:.3f}ms)")
        return result

    return wrapper
