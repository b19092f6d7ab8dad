"""
Latency tracking for hub and cloud HTTP calls.

``timed_async`` wraps a coroutine method, logs how long it took, and warns when
it exceeds ``POWERVIEW_PERF_THRESHOLD_MS``. Disabled with
``POWERVIEW_PERF_TRACKING=false``. When the wrapped method belongs to an
object with an ``address`` (a hub client), the address is logged too.
"""

from __future__ import annotations

import functools
import time
from collections.abc import Awaitable, Callable
from typing import Any, ParamSpec, TypeVar

from powerview_bridge.const import POWERVIEW_PERF_THRESHOLD_MS, POWERVIEW_PERF_TRACKING
from powerview_bridge.logging_abstraction import get_logger

__all__ = ["timed_async"]

P = ParamSpec("P")
T = TypeVar("T")

logger = get_logger(__name__)


def timed_async(operation: str) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """
    Time an async call and log the result under ``operation``.

    Example:
        @timed_async("hub_list_shades")
        async def list_shades(self) -> list[Shade]: ...
    """

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        if not POWERVIEW_PERF_TRACKING:
            return func

        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            started = time.perf_counter()
            failed = False
            try:
                return await func(*args, **kwargs)
            except BaseException:
                failed = True
                raise
            finally:
                elapsed_ms = (time.perf_counter() - started) * 1000
                target = getattr(args[0], "address", None) if args else None
                _report(operation, elapsed_ms, target, failed)

        return wrapper

    return decorator


def _report(operation: str, elapsed_ms: float, target: Any, failed: bool) -> None:
    context: dict[str, Any] = {
        "operation": operation,
        "duration_ms": round(elapsed_ms, 2),
        "failed": failed,
    }
    if isinstance(target, str):
        context["hub"] = target
    if elapsed_ms > POWERVIEW_PERF_THRESHOLD_MS:
        logger.warning(
            "%s took %.1fms (threshold %dms)",
            operation,
            elapsed_ms,
            POWERVIEW_PERF_THRESHOLD_MS,
            extra={**context, "threshold_ms": POWERVIEW_PERF_THRESHOLD_MS},
        )
    else:
        logger.debug("%s took %.1fms", operation, elapsed_ms, extra=context)
