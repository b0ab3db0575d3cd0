"""Claim-based work queues and the bounded batch loop that drains them.

A queue hands out work through ``claim(limit)``, which must select eligible items
and mark them claimed in one atomic store operation using lock-skipping reads, so
concurrent claimants never see the same item. ``process(item)`` runs the
specialization's side effects; a failing item is marked errored and the rest of
the batch carries on.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Generic, Protocol, Sequence, TypeVar

from opentelemetry import trace

from hotelops.core.best_effort import run_best_effort
from hotelops.core.errors import ItemProcessingError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

ItemT = TypeVar("ItemT")


class ItemOutcome(str, Enum):
    PROCESSED = "processed"
    SKIPPED = "skipped"


class WorkQueue(Protocol[ItemT]):
    name: str

    async def claim(self, limit: int) -> Sequence[ItemT]: ...

    async def process(self, item: ItemT) -> ItemOutcome: ...

    async def mark_failed(self, item: ItemT, error: ItemProcessingError) -> None: ...

    def item_key(self, item: ItemT) -> str: ...


@dataclass(slots=True)
class BatchReport:
    claimed: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    failures: list[ItemProcessingError] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "claimed": self.claimed,
            "processed": self.processed,
            "skipped": self.skipped,
            "failed": self.failed,
            "failures": [{"item": error.item_key, "error": str(error)} for error in self.failures],
        }


@dataclass(slots=True)
class WorkerRunReport:
    """Summary of one worker invocation.

    ``budget_exhausted`` means the loop stopped on its deadline with work possibly
    left; the next invocation resumes from the store, so it is not an error.
    """

    queue: str
    batches: int = 0
    totals: BatchReport = field(default_factory=BatchReport)
    drained: bool = False
    budget_exhausted: bool = False
    elapsed_seconds: float = 0.0

    def absorb(self, batch: BatchReport) -> None:
        self.batches += 1
        self.totals.claimed += batch.claimed
        self.totals.processed += batch.processed
        self.totals.skipped += batch.skipped
        self.totals.failed += batch.failed
        self.totals.failures.extend(batch.failures)

    def to_dict(self) -> dict[str, object]:
        return {
            "queue": self.queue,
            "batches": self.batches,
            "drained": self.drained,
            "budget_exhausted": self.budget_exhausted,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            **self.totals.to_dict(),
        }


class BatchRunner(Generic[ItemT]):
    """Claim one batch and process each item in isolation."""

    def __init__(
        self,
        queue: WorkQueue[ItemT],
        *,
        claim: Callable[[int], Awaitable[Sequence[ItemT]]] | None = None,
    ) -> None:
        self._queue = queue
        self._claim = claim or queue.claim

    async def run_once(self, limit: int) -> BatchReport:
        report = BatchReport()
        items = await self._claim(limit)
        report.claimed = len(items)
        for item in items:
            key = self._queue.item_key(item)
            try:
                outcome = await self._queue.process(item)
            except Exception as exc:
                error = exc if isinstance(exc, ItemProcessingError) else ItemProcessingError(str(exc), item_key=key)
                if error.item_key is None:
                    error.item_key = key
                logger.warning("Queue %s: item %s failed: %s", self._queue.name, key, error, exc_info=exc)
                report.failed += 1
                report.failures.append(error)
                await run_best_effort(f"{self._queue.name}.mark_failed", self._queue.mark_failed, item, error)
                continue
            if outcome is ItemOutcome.SKIPPED:
                report.skipped += 1
            else:
                report.processed += 1
        return report


class BoundedBatchWorker(Generic[ItemT]):
    """Drain a queue batch by batch until it is empty or the wall-clock budget runs out.

    The budget is checked between batches only; an item that has started runs to
    completion. Progress lives in the store, so an invocation that stops on its
    deadline is simply continued by the next externally triggered one.
    """

    def __init__(
        self,
        queue: WorkQueue[ItemT],
        *,
        batch_size: int = 20,
        budget_seconds: float = 50.0,
        delay_seconds: float = 0.2,
        max_batches: int | None = None,
        claim: Callable[[int], Awaitable[Sequence[ItemT]]] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        if budget_seconds <= 0:
            raise ValueError("budget_seconds must be positive")
        self._queue = queue
        self._runner = BatchRunner(queue, claim=claim)
        self._batch_size = batch_size
        self._budget = budget_seconds
        self._delay = delay_seconds
        self._max_batches = max_batches
        self._clock = clock
        self._sleep = sleep

    async def run(self) -> WorkerRunReport:
        report = WorkerRunReport(queue=self._queue.name)
        started = self._clock()

        def remaining() -> float:
            return self._budget - (self._clock() - started)

        with tracer.start_as_current_span(f"queue.{self._queue.name}.run") as span:
            while True:
                if remaining() <= 0:
                    report.budget_exhausted = True
                    break
                if self._max_batches is not None and report.batches >= self._max_batches:
                    break
                batch = await self._runner.run_once(self._batch_size)
                if batch.claimed == 0:
                    report.drained = True
                    break
                report.absorb(batch)
                logger.info(
                    "Queue %s batch %d: claimed=%d processed=%d skipped=%d failed=%d",
                    self._queue.name,
                    report.batches,
                    batch.claimed,
                    batch.processed,
                    batch.skipped,
                    batch.failed,
                )
                if self._delay > 0 and remaining() > self._delay:
                    await self._sleep(self._delay)

            report.elapsed_seconds = self._clock() - started
            span.set_attribute("queue.batches", report.batches)
            span.set_attribute("queue.claimed", report.totals.claimed)
            span.set_attribute("queue.failed", report.totals.failed)

        logger.info(
            "Queue %s run finished: batches=%d drained=%s budget_exhausted=%s",
            self._queue.name,
            report.batches,
            report.drained,
            report.budget_exhausted,
        )
        return report
