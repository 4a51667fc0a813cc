"""
Timing for CPU-bound work on the reconnect path.

Token signing runs synchronously between a disconnect and the next connect
attempt, so a slow key (large RSA modulus, remote HSM shim) delays every
reconnect. ``timed`` makes that visible in the logs.
"""

from __future__ import annotations

import functools
import time
from collections.abc import Callable
from typing import ParamSpec, TypeVar

__all__ = [
    "measure_time",
    "timed",
]

P = ParamSpec("P")
T = TypeVar("T")


def measure_time(start_time: float) -> float:
    """Milliseconds elapsed since ``start_time`` (a time.perf_counter() value)."""
    return (time.perf_counter() - start_time) * 1000


def timed(operation_name: str | None = None) -> Callable[[Callable[P, T]], Callable[P, T]]:
    """
    Decorator that logs how long a synchronous call took.

    Logs at DEBUG, or WARNING above CLOUD_IOT_PERF_THRESHOLD_MS. Disabled when
    CLOUD_IOT_PERF_TRACKING is false.

    Example:
        @timed("token_sign")
        def issue_token(...): ...
    """

    def decorator(func: Callable[P, T]) -> Callable[P, T]:
        @functools.wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            from cloud_iot_mqtt.const import CLOUD_IOT_PERF_THRESHOLD_MS, CLOUD_IOT_PERF_TRACKING
            from cloud_iot_mqtt.logging_abstraction import get_logger

            if not CLOUD_IOT_PERF_TRACKING:
                return func(*args, **kwargs)

            op_name = operation_name or func.__name__
            start_time = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                elapsed_ms = measure_time(start_time)
                context: dict[str, object] = {
                    "operation": op_name,
                    "duration_ms": round(elapsed_ms, 2),
                    "threshold_ms": CLOUD_IOT_PERF_THRESHOLD_MS,
                }
                logger = get_logger(__name__)
                if elapsed_ms > CLOUD_IOT_PERF_THRESHOLD_MS:
                    logger.warning("[%s] took %.1fms", op_name, elapsed_ms, extra=context)
                else:
                    logger.debug("[%s] took %.1fms", op_name, elapsed_ms, extra=context)

        return wrapper

    return decorator
