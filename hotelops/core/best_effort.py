"""Helpers for side effects that must never fail the primary operation.

Audit writes and notification dispatch are observability side channels. Wrapping
them here makes the contract explicit: the wrapped coroutine returns ``True`` when
the side effect succeeded and ``False`` when it failed, and it never raises.
"""

from __future__ import annotations

import functools
import logging
from typing import Awaitable, Callable, ParamSpec

P = ParamSpec("P")

logger = logging.getLogger(__name__)


async def run_best_effort(
    operation: str,
    func: Callable[P, Awaitable[object]],
    *args: P.args,
    **kwargs: P.kwargs,
) -> bool:
    """Await ``func`` and swallow any exception after logging it."""

    try:
        await func(*args, **kwargs)
    except Exception:
        logger.exception("Best-effort operation %s failed", operation)
        return False
    return True


def best_effort(operation: str) -> Callable[[Callable[P, Awaitable[object]]], Callable[P, Awaitable[bool]]]:
    """Decorate an async callable so it reports failure instead of raising."""

    def decorator(func: Callable[P, Awaitable[object]]) -> Callable[P, Awaitable[bool]]:
        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> bool:
            return await run_best_effort(operation, func, *args, **kwargs)

        return wrapper

    return decorator
