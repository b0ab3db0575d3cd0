from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
from fakes import BASE_TIME, AssignmentClaimConnection, DummyPool, FakeClock, InMemoryTicketDatabase, make_connection

from hotelops.core.actors import ActorType
from hotelops.core.errors import ItemProcessingError, StaleStateError
from hotelops.queue import ItemOutcome
from hotelops.queue.assignment import (
    AUTO_ASSIGN_COMMENT,
    AssignmentCandidate,
    AutoAssignmentQueue,
    LeastLoadedStaffPolicy,
)
from hotelops.tickets import EventType, Location, TicketAction, TicketService, TicketStatus
from hotelops.tickets.models import TicketPriority


class StaticPolicy:
    def __init__(self, staff_id):
        self.staff_id = staff_id
        self.calls = []

    async def select(self, candidate):
        self.calls.append(candidate)
        return self.staff_id


def _candidate(**overrides) -> AssignmentCandidate:
    values = dict(
        ticket_id=uuid4(),
        hotel_id=uuid4(),
        department_id=uuid4(),
        zone_id=None,
        priority=TicketPriority.NORMAL,
        created_at=BASE_TIME,
    )
    values.update(overrides)
    return AssignmentCandidate(**values)


@pytest.mark.asyncio
async def test_claim_marks_rows_in_one_statement():
    connection = make_connection()
    ticket_id, hotel_id, department_id = uuid4(), uuid4(), uuid4()
    connection.fetch = AsyncMock(
        return_value=[
            {
                "id": ticket_id,
                "hotel_id": hotel_id,
                "department_id": department_id,
                "zone_id": None,
                "priority": "URGENT",
                "created_at": BASE_TIME,
            }
        ]
    )
    queue = AutoAssignmentQueue(DummyPool(connection), AsyncMock(), StaticPolicy(None), lease_seconds=600)

    claimed = await queue.claim(20)

    expected = _candidate(
        ticket_id=ticket_id,
        hotel_id=hotel_id,
        department_id=department_id,
        priority=TicketPriority.URGENT,
    )
    assert claimed == [expected]
    sql, limit, lease, token, max_attempts = connection.fetch.await_args.args
    assert "FOR UPDATE SKIP LOCKED" in sql
    assert "assignment_claim_token = $3" in sql
    assert "assignment_attempts < $4" in sql
    assert (limit, lease, token, max_attempts) == (20, 600.0, queue.claim_token, 5)
    connection.execute.assert_awaited_with("SET LOCAL lock_timeout = 5000")


@pytest.mark.asyncio
async def test_process_without_staff_releases_claim():
    connection = make_connection()
    tickets = AsyncMock()
    queue = AutoAssignmentQueue(DummyPool(connection), tickets, StaticPolicy(None))
    candidate = _candidate()

    outcome = await queue.process(candidate)

    assert outcome is ItemOutcome.SKIPPED
    tickets.transition_ticket.assert_not_awaited()
    sql, ticket_id, token = connection.execute.await_args.args
    assert "assignment_claim_token = NULL" in sql
    assert (ticket_id, token) == (candidate.ticket_id, queue.claim_token)


@pytest.mark.asyncio
async def test_process_assigns_as_system_with_guards():
    staff_id = uuid4()
    tickets = AsyncMock()
    queue = AutoAssignmentQueue(DummyPool(make_connection()), tickets, StaticPolicy(staff_id))
    candidate = _candidate()

    outcome = await queue.process(candidate)

    assert outcome is ItemOutcome.PROCESSED
    ticket_id, action, actor, params = tickets.transition_ticket.await_args.args
    assert ticket_id == candidate.ticket_id
    assert action is TicketAction.ASSIGN
    assert actor.actor_type is ActorType.SYSTEM
    assert params.staff_id == staff_id
    assert params.expected_status is TicketStatus.NEW
    assert params.only_if_unassigned
    assert params.comment == AUTO_ASSIGN_COMMENT


@pytest.mark.asyncio
async def test_process_skips_ticket_changed_since_claim():
    connection = make_connection()
    tickets = AsyncMock()
    tickets.transition_ticket.side_effect = StaleStateError("already assigned")
    queue = AutoAssignmentQueue(DummyPool(connection), tickets, StaticPolicy(uuid4()))

    outcome = await queue.process(_candidate())

    assert outcome is ItemOutcome.SKIPPED
    connection.execute.assert_awaited()


@pytest.mark.asyncio
async def test_mark_failed_records_attempt_and_truncates():
    connection = make_connection()
    queue = AutoAssignmentQueue(DummyPool(connection), AsyncMock(), StaticPolicy(None))
    candidate = _candidate()

    await queue.mark_failed(candidate, ItemProcessingError("x" * 2000))

    sql, ticket_id, token, message = connection.execute.await_args.args
    assert "assignment_attempts = assignment_attempts + 1" in sql
    assert ticket_id == candidate.ticket_id
    assert len(message) == 1000


@pytest.mark.asyncio
async def test_least_loaded_policy_passes_candidate_scope():
    connection = make_connection()
    staff_id = uuid4()
    connection.fetchval = AsyncMock(return_value=staff_id)
    policy = LeastLoadedStaffPolicy(DummyPool(connection), max_load=7)
    candidate = _candidate(zone_id=uuid4())

    assert await policy.select(candidate) == staff_id

    sql, hotel_id, department_id, zone_id, max_load = connection.fetchval.await_args.args
    assert "staff_shifts" in sql and "open_tickets < $4" in sql
    assert (hotel_id, department_id, zone_id, max_load) == (
        candidate.hotel_id,
        candidate.department_id,
        candidate.zone_id,
        7,
    )


@pytest.mark.asyncio
async def test_auto_assignment_updates_ticket_and_log():
    db = InMemoryTicketDatabase()
    clock = FakeClock()
    hotel_id, department_id = uuid4(), uuid4()
    catalog = db.add_service(hotel_id, department_id)
    db.add_policy(department_id, 30)
    staff_id = db.add_staff(hotel_id)
    service = TicketService(repository=db, clock=clock, retry_min_wait=0, retry_max_wait=0)
    created = await service.create_ticket(
        hotel_id=hotel_id,
        location=Location(zone_id=uuid4()),
        service_id=catalog.id,
        created_by_type=ActorType.SYSTEM,
    )
    queue = AutoAssignmentQueue(DummyPool(make_connection()), service, StaticPolicy(staff_id))

    outcome = await queue.process(_candidate(ticket_id=created.ticket_id, hotel_id=hotel_id, department_id=department_id))

    assert outcome is ItemOutcome.PROCESSED
    ticket = db.tables.tickets[created.ticket_id]
    assert ticket.current_assignee_id == staff_id
    assert ticket.status is TicketStatus.NEW
    assigned = db.events_for(created.ticket_id)[-1]
    assert assigned.event_type is EventType.ASSIGNED
    assert assigned.actor_type is ActorType.SYSTEM
    assert assigned.comment == AUTO_ASSIGN_COMMENT

    # a second pass over the same stale candidate must not reassign
    again = await queue.process(_candidate(ticket_id=created.ticket_id, hotel_id=hotel_id, department_id=department_id))
    assert again is ItemOutcome.SKIPPED


def _claiming_workers(count, *, tickets=25, lease_seconds=900, max_attempts=5):
    db, clock = InMemoryTicketDatabase(), FakeClock()
    hotel_id, department_id = uuid4(), uuid4()
    for minute in range(tickets):
        db.add_ticket(hotel_id, department_id, created_at=BASE_TIME.replace(minute=minute))
    workers = [
        AutoAssignmentQueue(
            DummyPool(AssignmentClaimConnection(db, clock)),
            AsyncMock(),
            StaticPolicy(None),
            lease_seconds=lease_seconds,
            max_attempts=max_attempts,
        )
        for _ in range(count)
    ]
    return db, clock, workers


@pytest.mark.asyncio
async def test_concurrent_workers_claim_disjoint_tickets():
    db, _, (first, second, third) = _claiming_workers(3)

    batches = await asyncio.gather(first.claim(20), second.claim(20))

    claimed = [candidate.ticket_id for batch in batches for candidate in batch]
    assert sorted(len(batch) for batch in batches) == [5, 20]
    assert len(set(claimed)) == 25
    assert set(claimed) == set(db.tables.tickets)
    assert await third.claim(20) == []


@pytest.mark.asyncio
async def test_claims_come_back_after_the_lease_lapses():
    _, clock, (first, second) = _claiming_workers(2, tickets=3, lease_seconds=600)
    claimed = await first.claim(20)

    clock.advance(seconds=599)
    assert await second.claim(20) == []
    clock.advance(seconds=2)
    reclaimed = await second.claim(20)

    assert [c.ticket_id for c in reclaimed] == [c.ticket_id for c in claimed]


@pytest.mark.asyncio
async def test_ticket_is_not_reclaimed_once_attempts_are_exhausted():
    db, _, (worker,) = _claiming_workers(1, tickets=1, max_attempts=2)

    for _ in range(2):
        (candidate,) = await worker.claim(20)
        await worker.mark_failed(candidate, ItemProcessingError("staff member inactive"))

    assert await worker.claim(20) == []
    claim = db.tables.assignment_claims[candidate.ticket_id]
    assert claim["attempts"] == 2
    assert claim["error"] == "staff member inactive"
