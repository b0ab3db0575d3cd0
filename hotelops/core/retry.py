from __future__ import annotations

import logging
from typing import Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from hotelops.core.errors import TransientStoreError

T = TypeVar("T")

logger = logging.getLogger(__name__)


def transient_retrying(
    *,
    attempts: int = 3,
    min_wait: float = 0.1,
    max_wait: float = 2.0,
) -> AsyncRetrying:
    """Retry policy for operations that may hit lock contention or a dropped connection."""

    return AsyncRetrying(
        retry=retry_if_exception_type(TransientStoreError),
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_exponential(multiplier=min_wait, min=min_wait, max=max_wait),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


async def retry_transient(
    func: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    min_wait: float = 0.1,
    max_wait: float = 2.0,
) -> T:
    """Run ``func`` again with backoff while it raises ``TransientStoreError``."""

    async for attempt in transient_retrying(attempts=attempts, min_wait=min_wait, max_wait=max_wait):
        with attempt:
            return await func()
    raise AssertionError("unreachable")  # pragma: no cover
