from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol, Sequence
from uuid import UUID, uuid4

import asyncpg

from hotelops.core.actors import Actor
from hotelops.core.errors import ItemProcessingError, StaleStateError
from hotelops.services.postgres import store_errors, transaction
from hotelops.tickets.models import TicketPriority
from hotelops.tickets.service import TicketService, TransitionParams
from hotelops.tickets.state import TicketAction, TicketStatus

from .base import ItemOutcome

logger = logging.getLogger(__name__)

AUTO_ASSIGN_COMMENT = "Auto-assigned by scheduler"


@dataclass(frozen=True, slots=True)
class AssignmentCandidate:
    """An unassigned ticket claimed for auto-assignment."""

    ticket_id: UUID
    hotel_id: UUID
    department_id: UUID
    zone_id: UUID | None
    priority: TicketPriority
    created_at: datetime


class StaffSelectionPolicy(Protocol):
    async def select(self, candidate: AssignmentCandidate) -> UUID | None: ...


class LeastLoadedStaffPolicy:
    """Pick the on-shift department member with the fewest open tickets.

    Ties go to staff covering the ticket's zone, then to whoever was assigned
    least recently.
    """

    _SELECT_STAFF_SQL = """
    WITH eligible AS (
        SELECT s.id, s.last_assigned_at, s.created_at
        FROM staff_members s
        JOIN staff_departments sd ON sd.staff_id = s.id AND sd.department_id = $2
        WHERE s.hotel_id = $1
          AND s.is_active
          AND EXISTS (
              SELECT 1 FROM staff_shifts sh
              WHERE sh.staff_id = s.id AND sh.starts_at <= now() AND sh.ends_at > now()
          )
    ),
    workload AS (
        SELECT e.id, COUNT(t.id) AS open_tickets
        FROM eligible e
        LEFT JOIN tickets t
          ON t.current_assignee_id = e.id
         AND t.status IN ('NEW', 'IN_PROGRESS', 'BLOCKED')
        GROUP BY e.id
    )
    SELECT e.id
    FROM eligible e
    JOIN workload w ON w.id = e.id
    WHERE w.open_tickets < $4
    ORDER BY
        CASE
            WHEN $3::uuid IS NOT NULL AND EXISTS (
                SELECT 1 FROM staff_zones z WHERE z.staff_id = e.id AND z.zone_id = $3::uuid
            ) THEN 0
            ELSE 1
        END,
        w.open_tickets ASC,
        e.last_assigned_at ASC NULLS FIRST,
        e.created_at ASC
    LIMIT 1
    """

    def __init__(self, pool: asyncpg.Pool, *, max_load: int = 20) -> None:
        self._pool = pool
        self._max_load = max_load

    async def select(self, candidate: AssignmentCandidate) -> UUID | None:
        async with store_errors():
            async with self._pool.acquire() as connection:
                return await connection.fetchval(
                    self._SELECT_STAFF_SQL,
                    candidate.hotel_id,
                    candidate.department_id,
                    candidate.zone_id,
                    self._max_load,
                )


class AutoAssignmentQueue:
    """Claim-based queue over tickets that are NEW and unassigned.

    A ticket whose assignment has failed ``max_attempts`` times is left for a
    human dispatcher.
    """

    name = "assignment"

    _CLAIM_SQL = """
    WITH picked AS (
        SELECT t.id
        FROM tickets t
        WHERE t.status = 'NEW'
          AND t.current_assignee_id IS NULL
          AND t.assignment_attempts < $4
          AND (t.assignment_claimed_at IS NULL OR t.assignment_claimed_at < now() - make_interval(secs => $2))
        ORDER BY
            CASE t.priority WHEN 'URGENT' THEN 0 WHEN 'HIGH' THEN 1 WHEN 'NORMAL' THEN 2 ELSE 3 END,
            t.created_at ASC
        LIMIT $1
        FOR UPDATE SKIP LOCKED
    )
    UPDATE tickets t
    SET assignment_claimed_at = now(),
        assignment_claim_token = $3
    FROM picked
    WHERE t.id = picked.id
    RETURNING t.id, t.hotel_id, t.department_id, t.zone_id, t.priority, t.created_at
    """

    _RELEASE_SQL = """
    UPDATE tickets
    SET assignment_claimed_at = NULL,
        assignment_claim_token = NULL
    WHERE id = $1 AND assignment_claim_token = $2
    """

    _MARK_FAILED_SQL = """
    UPDATE tickets
    SET assignment_claimed_at = NULL,
        assignment_claim_token = NULL,
        assignment_attempts = assignment_attempts + 1,
        assignment_error = $3
    WHERE id = $1 AND assignment_claim_token = $2
    """

    def __init__(
        self,
        pool: asyncpg.Pool,
        ticket_service: TicketService,
        policy: StaffSelectionPolicy,
        *,
        lease_seconds: int = 900,
        max_attempts: int = 5,
        lock_timeout_ms: int = 5000,
    ) -> None:
        self._pool = pool
        self._tickets = ticket_service
        self._policy = policy
        self._lease_seconds = lease_seconds
        self._max_attempts = max_attempts
        self._lock_timeout_ms = lock_timeout_ms
        self.claim_token = uuid4()

    def item_key(self, item: AssignmentCandidate) -> str:
        return str(item.ticket_id)

    async def claim(self, limit: int) -> Sequence[AssignmentCandidate]:
        async with transaction(self._pool, lock_timeout_ms=self._lock_timeout_ms) as connection:
            rows = await connection.fetch(
                self._CLAIM_SQL, limit, float(self._lease_seconds), self.claim_token, self._max_attempts
            )
        return [self._row_to_candidate(row) for row in rows]

    async def process(self, item: AssignmentCandidate) -> ItemOutcome:
        staff_id = await self._policy.select(item)
        if staff_id is None:
            logger.info("No available staff for ticket %s in department %s", item.ticket_id, item.department_id)
            await self.release(item)
            return ItemOutcome.SKIPPED

        try:
            await self._tickets.transition_ticket(
                item.ticket_id,
                TicketAction.ASSIGN,
                Actor.system(),
                TransitionParams(
                    staff_id=staff_id,
                    comment=AUTO_ASSIGN_COMMENT,
                    expected_status=TicketStatus.NEW,
                    only_if_unassigned=True,
                ),
            )
        except StaleStateError:
            # picked up, assigned or cancelled since the claim
            await self.release(item)
            return ItemOutcome.SKIPPED
        logger.info("Auto-assigned ticket %s to staff %s", item.ticket_id, staff_id)
        return ItemOutcome.PROCESSED

    async def release(self, item: AssignmentCandidate) -> None:
        async with store_errors():
            async with self._pool.acquire() as connection:
                await connection.execute(self._RELEASE_SQL, item.ticket_id, self.claim_token)

    async def mark_failed(self, item: AssignmentCandidate, error: ItemProcessingError) -> None:
        async with store_errors():
            async with self._pool.acquire() as connection:
                await connection.execute(self._MARK_FAILED_SQL, item.ticket_id, self.claim_token, str(error)[:1000])

    @staticmethod
    def _row_to_candidate(row: Any) -> AssignmentCandidate:
        return AssignmentCandidate(
            ticket_id=row["id"],
            hotel_id=row["hotel_id"],
            department_id=row["department_id"],
            zone_id=row["zone_id"],
            priority=TicketPriority(str(row["priority"])),
            created_at=row["created_at"],
        )
