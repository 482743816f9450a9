"""
Timing instrumentation for device round-trips.

Slow operations (websocket connect, action round-trips) are logged with a
warning once they cross ``REMOOTIO_PERF_THRESHOLD_MS``.
"""

from __future__ import annotations

import functools
import time
from collections.abc import Callable, Coroutine
from typing import Any, ParamSpec, TypeVar

__all__ = [
    "measure_time",
    "timed_async",
]

P = ParamSpec("P")
T = TypeVar("T")


def measure_time(start_time: float) -> float:
    """Return milliseconds elapsed since ``start_time`` (a ``time.perf_counter()`` value)."""
    return (time.perf_counter() - start_time) * 1000


def timed_async(
    operation_name: str | None = None,
) -> Callable[[Callable[P, Coroutine[Any, Any, T]]], Callable[P, Coroutine[Any, Any, T]]]:
    """
    Decorator for timing coroutines with a threshold warning.

    Disabled entirely by ``REMOOTIO_PERF_TRACKING=false``.

    Args:
        operation_name: Name for the operation (defaults to function name)

    Example:
        @timed_async("ws_connect")
        async def connect(self) -> None: ...
    """

    def decorator(func: Callable[P, Coroutine[Any, Any, T]]) -> Callable[P, Coroutine[Any, Any, T]]:
        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            # Import here to avoid circular dependency
            from remootio_controller.const import (  # noqa: PLC0415
                REMOOTIO_PERF_THRESHOLD_MS,
                REMOOTIO_PERF_TRACKING,
            )
            from remootio_controller.logging_abstraction import get_logger  # noqa: PLC0415

            if not REMOOTIO_PERF_TRACKING:
                return await func(*args, **kwargs)

            logger = get_logger(__name__)
            op_name = operation_name or func.__name__

            start_time = time.perf_counter()
            try:
                return await func(*args, **kwargs)
            finally:
                _log_timing(logger, op_name, measure_time(start_time), REMOOTIO_PERF_THRESHOLD_MS)

        return wrapper

    return decorator


def _log_timing(logger: Any, operation_name: str, elapsed_ms: float, threshold_ms: int) -> None:
    exceeded = elapsed_ms > threshold_ms
    context = {
        "operation": operation_name,
        "duration_ms": round(elapsed_ms, 2),
        "threshold_ms": threshold_ms,
        "exceeded_threshold": exceeded,
    }
    if exceeded:
        logger.warning(
            "⏱️ [%s] completed in %.1fms (threshold: %dms)",
            operation_name,
            elapsed_ms,
            threshold_ms,
            extra=context,
        )
    else:
        logger.debug("⏱️ [%s] completed in %.1fms", operation_name, elapsed_ms, extra=context)
