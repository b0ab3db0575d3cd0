from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
from fakes import BASE_TIME, AssignmentClaimConnection, DummyPool, FakeClock, InMemoryTicketDatabase

from hotelops.core.errors import ItemProcessingError, ValidationError
from hotelops.queue import BatchRunner, BoundedBatchWorker, ItemOutcome, QueueKind, QueueRegistry
from hotelops.queue.assignment import AutoAssignmentQueue


class InMemoryClaimQueue:
    """Claims are select-and-mark under one lock, mirroring a single UPDATE ... SKIP LOCKED."""

    name = "memory"

    def __init__(self, items, *, failing=(), skipping=()):
        self.pending = list(items)
        self.claimed: list[str] = []
        self.processed: list[str] = []
        self.failed: dict[str, str] = {}
        self._failing = set(failing)
        self._skipping = set(skipping)
        self._lock = asyncio.Lock()

    async def claim(self, limit):
        async with self._lock:
            batch, self.pending = self.pending[:limit], self.pending[limit:]
            # yield while holding the claim so concurrent callers interleave
            await asyncio.sleep(0)
            self.claimed.extend(batch)
            return batch

    async def process(self, item):
        if item in self._failing:
            raise RuntimeError(f"cannot process {item}")
        if item in self._skipping:
            return ItemOutcome.SKIPPED
        self.processed.append(item)
        return ItemOutcome.PROCESSED

    async def mark_failed(self, item, error):
        self.failed[item] = str(error)

    def item_key(self, item):
        return item


class TickingClock:
    def __init__(self, step: float):
        self.now = 0.0
        self._step = step

    def __call__(self) -> float:
        value = self.now
        self.now += self._step
        return value


async def _no_sleep(_: float) -> None:
    return None


@pytest.mark.asyncio
async def test_failed_item_does_not_abort_batch():
    queue = InMemoryClaimQueue(["a", "b", "c"], failing={"b"}, skipping={"c"})

    report = await BatchRunner(queue).run_once(10)

    assert report.claimed == 3
    assert report.processed == 1
    assert report.skipped == 1
    assert report.failed == 1
    assert queue.processed == ["a"]
    assert queue.failed == {"b": "cannot process b"}
    assert isinstance(report.failures[0], ItemProcessingError)
    assert report.failures[0].item_key == "b"


@pytest.mark.asyncio
async def test_mark_failed_errors_are_swallowed():
    class BrokenMarkQueue(InMemoryClaimQueue):
        async def mark_failed(self, item, error):
            raise ConnectionError("store down")

    queue = BrokenMarkQueue(["x"], failing={"x"})

    report = await BatchRunner(queue).run_once(5)

    assert report.failed == 1


@pytest.mark.asyncio
async def test_worker_drains_queue():
    queue = InMemoryClaimQueue([f"item-{i}" for i in range(45)])
    sleeps: list[float] = []

    async def record_sleep(delay: float) -> None:
        sleeps.append(delay)

    worker = BoundedBatchWorker(queue, batch_size=20, budget_seconds=50, delay_seconds=0.2, sleep=record_sleep)
    report = await worker.run()

    assert report.drained
    assert not report.budget_exhausted
    assert report.batches == 3
    assert report.totals.processed == 45
    assert sleeps == [0.2, 0.2, 0.2]
    assert report.to_dict()["processed"] == 45


@pytest.mark.asyncio
async def test_worker_stops_on_budget_and_leaves_rest_for_next_run():
    queue = InMemoryClaimQueue([f"item-{i}" for i in range(100)])
    # every clock read advances 10s; the 50s budget allows a couple of batches
    worker = BoundedBatchWorker(
        queue,
        batch_size=10,
        budget_seconds=50,
        delay_seconds=0,
        clock=TickingClock(10),
        sleep=_no_sleep,
    )

    report = await worker.run()

    assert report.budget_exhausted
    assert not report.drained
    assert 0 < report.totals.processed < 100
    assert len(queue.pending) == 100 - report.totals.claimed

    second = await BoundedBatchWorker(queue, batch_size=100, budget_seconds=50, delay_seconds=0).run()
    assert second.drained
    assert sorted(queue.processed) == sorted(f"item-{i}" for i in range(100))


@pytest.mark.asyncio
async def test_worker_respects_max_batches():
    queue = InMemoryClaimQueue([str(i) for i in range(30)])

    report = await BoundedBatchWorker(queue, batch_size=5, delay_seconds=0, max_batches=1).run()

    assert report.batches == 1
    assert report.totals.claimed == 5
    assert not report.drained


@pytest.mark.asyncio
async def test_worker_reports_success_with_failures():
    queue = InMemoryClaimQueue(["ok", "bad"], failing={"bad"})

    report = await BoundedBatchWorker(queue, delay_seconds=0).run()

    assert report.drained
    assert report.totals.failed == 1
    assert report.to_dict()["failures"] == [{"item": "bad", "error": "cannot process bad"}]


def test_worker_rejects_bad_configuration():
    queue = InMemoryClaimQueue([])
    with pytest.raises(ValueError):
        BoundedBatchWorker(queue, batch_size=0)
    with pytest.raises(ValueError):
        BoundedBatchWorker(queue, budget_seconds=0)


@pytest.mark.asyncio
async def test_concurrent_claims_are_disjoint_and_complete():
    db, clock = InMemoryTicketDatabase(), FakeClock()
    hotel_id, department_id = uuid4(), uuid4()
    for minute in range(25):
        db.add_ticket(hotel_id, department_id, created_at=BASE_TIME.replace(minute=minute))

    def worker_registry():
        queue = AutoAssignmentQueue(DummyPool(AssignmentClaimConnection(db, clock)), AsyncMock(), AsyncMock())
        return QueueRegistry({QueueKind.ASSIGNMENT: queue})

    first, second = await asyncio.gather(
        worker_registry().claim_work("assignment", 20),
        worker_registry().claim_work(QueueKind.ASSIGNMENT, 20),
    )

    assert not set(first) & set(second)
    assert len(first) + len(second) == 25
    assert set(first) | set(second) == {str(ticket_id) for ticket_id in db.tables.tickets}
    assert await worker_registry().claim_work("assignment", 20) == []


@pytest.mark.asyncio
async def test_registry_validates_kind_and_limit():
    registry = QueueRegistry({QueueKind.ASSIGNMENT: InMemoryClaimQueue([])})

    with pytest.raises(ValidationError):
        await registry.claim_work("laundry", 5)
    with pytest.raises(ValidationError):
        await registry.claim_work("imports", 5)
    with pytest.raises(ValidationError):
        await registry.claim_work("assignment", 0)


@pytest.mark.asyncio
async def test_registry_workers_claim_through_the_registry():
    queue = InMemoryClaimQueue(["BK-1", "BK-2", "BK-3"])
    registry = QueueRegistry({QueueKind.IMPORTS: queue})
    claims = []
    claim_batch = registry.claim_batch

    async def recording_claim(kind, limit):
        claims.append((kind, limit))
        return await claim_batch(kind, limit)

    registry.claim_batch = recording_claim

    report = await registry.worker("imports", batch_size=2, delay_seconds=0).run()

    assert report.drained
    assert report.totals.processed == 3
    assert claims == [(QueueKind.IMPORTS, 2)] * 3
    assert queue.processed == ["BK-1", "BK-2", "BK-3"]
