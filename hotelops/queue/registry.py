from __future__ import annotations

import functools
import logging
from enum import Enum
from typing import Any, Mapping, Sequence

from hotelops.core.errors import ValidationError

from .base import BoundedBatchWorker, WorkQueue

logger = logging.getLogger(__name__)


class QueueKind(str, Enum):
    ASSIGNMENT = "assignment"
    IMPORTS = "imports"


class QueueRegistry:
    """Look up work queues by kind and hand out their claims.

    Workers built with :meth:`worker` claim through :meth:`claim_batch`, so every
    claim in the process goes through the same validation and logging.
    """

    def __init__(self, queues: Mapping[QueueKind, WorkQueue[Any]]) -> None:
        self._queues = dict(queues)

    def get(self, kind: QueueKind | str) -> WorkQueue[Any]:
        try:
            queue_kind = QueueKind(kind)
        except ValueError as exc:
            raise ValidationError(f"Unknown queue kind: {kind}") from exc
        queue = self._queues.get(queue_kind)
        if queue is None:
            raise ValidationError(f"Queue {queue_kind.value} is not configured")
        return queue

    async def claim_batch(self, kind: QueueKind | str, limit: int) -> Sequence[Any]:
        if limit <= 0:
            raise ValidationError("limit must be positive")
        queue = self.get(kind)
        items = await queue.claim(limit)
        logger.debug("Queue %s: claimed %d of %d requested", queue.name, len(items), limit)
        return items

    async def claim_work(self, kind: QueueKind | str, limit: int) -> list[str]:
        """Claim up to ``limit`` items and return their keys.

        The claims belong to the registered queue instance: they stay held until
        that queue processes or releases them, or until their lease lapses and
        the queue's recovery path returns them to the pool.
        """

        queue = self.get(kind)
        return [queue.item_key(item) for item in await self.claim_batch(kind, limit)]

    def worker(self, kind: QueueKind | str, **options: Any) -> BoundedBatchWorker[Any]:
        queue = self.get(kind)
        return BoundedBatchWorker(queue, claim=functools.partial(self.claim_batch, QueueKind(kind)), **options)
