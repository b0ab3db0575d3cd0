from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Protocol, Sequence
from uuid import UUID

import asyncpg

from hotelops.core.actors import ActorType
from hotelops.services.postgres import transaction
from hotelops.sla.policies import fetch_active_policy, fetch_policy
from hotelops.sla.timer import SLAPolicy, SLAState

from .models import (
    EventType,
    ServiceRef,
    StayRef,
    Ticket,
    TicketAttachment,
    TicketEvent,
    TicketPriority,
)
from .state import TicketStatus


class TicketStore(Protocol):
    """Operations available inside one ticket transaction."""

    async def get_service(self, service_id: UUID) -> ServiceRef | None: ...

    async def get_stay(self, stay_id: UUID) -> StayRef | None: ...

    async def get_active_policy(self, department_id: UUID) -> SLAPolicy | None: ...

    async def get_policy(self, policy_id: UUID) -> SLAPolicy | None: ...

    async def insert_ticket(self, ticket: Ticket) -> Ticket: ...

    async def get_ticket(self, ticket_id: UUID) -> Ticket | None: ...

    async def lock_ticket(self, ticket_id: UUID) -> Ticket | None: ...

    async def update_ticket(self, ticket: Ticket, *, expected_status: TicketStatus) -> bool: ...

    async def insert_sla_state(self, state: SLAState) -> None: ...

    async def get_sla_state(self, ticket_id: UUID) -> SLAState | None: ...

    async def update_sla_state(self, state: SLAState) -> None: ...

    async def append_event(self, event: TicketEvent) -> None: ...

    async def list_events(self, ticket_id: UUID) -> list[TicketEvent]: ...

    async def add_attachments(self, attachments: Sequence[TicketAttachment]) -> None: ...

    async def is_active_staff(self, hotel_id: UUID, staff_id: UUID) -> bool: ...

    async def mark_staff_assigned(self, staff_id: UUID, assigned_at: datetime) -> None: ...


class TicketTransactions(Protocol):
    def transaction(self) -> Any:
        """Return an async context manager yielding a ``TicketStore``."""


_TICKET_COLUMNS = (
    "id, display_code, hotel_id, department_id, service_id, stay_id, room_id, zone_id, title, description, "
    "priority, status, created_by_type, created_by_id, current_assignee_id, created_at, updated_at, "
    "completed_at, cancelled_at"
)

_EVENT_COLUMNS = (
    "id, ticket_id, event_type, actor_type, actor_id, previous_status, new_status, reason_code, comment, media, created_at"
)

_SLA_COLUMNS = "ticket_id, sla_policy_id, sla_started_at, sla_paused_at, total_paused_seconds, breached"


class PostgresTicketStore:
    """Ticket data access bound to a connection that is inside a transaction."""

    _SELECT_SERVICE_SQL = """
    SELECT id, hotel_id, department_id, label, is_active
    FROM services
    WHERE id = $1
    """

    _SELECT_STAY_SQL = """
    SELECT id, hotel_id, guest_id, room_id
    FROM stays
    WHERE id = $1
    """

    _INSERT_TICKET_SQL = f"""
    INSERT INTO tickets (
        id, hotel_id, department_id, service_id, stay_id, room_id, zone_id, title, description,
        priority, status, created_by_type, created_by_id, current_assignee_id, created_at, updated_at
    )
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $15)
    RETURNING {_TICKET_COLUMNS}
    """

    _SELECT_TICKET_SQL = f"""
    SELECT {_TICKET_COLUMNS}
    FROM tickets
    WHERE id = $1
    """

    _LOCK_TICKET_SQL = f"""
    SELECT {_TICKET_COLUMNS}
    FROM tickets
    WHERE id = $1
    FOR UPDATE
    """

    _UPDATE_TICKET_SQL = """
    UPDATE tickets
    SET status = $3,
        current_assignee_id = $4,
        completed_at = $5,
        cancelled_at = $6,
        updated_at = $7,
        assignment_claimed_at = CASE WHEN $4::uuid IS NULL THEN assignment_claimed_at END,
        assignment_claim_token = CASE WHEN $4::uuid IS NULL THEN assignment_claim_token END,
        assignment_error = CASE WHEN $4::uuid IS NULL THEN assignment_error END
    WHERE id = $1 AND status = $2
    """

    _INSERT_SLA_SQL = f"""
    INSERT INTO ticket_sla_state ({_SLA_COLUMNS})
    VALUES ($1, $2, $3, $4, $5, $6)
    """

    _SELECT_SLA_SQL = f"""
    SELECT {_SLA_COLUMNS}
    FROM ticket_sla_state
    WHERE ticket_id = $1
    """

    _UPDATE_SLA_SQL = """
    UPDATE ticket_sla_state
    SET sla_policy_id = $2,
        sla_started_at = $3,
        sla_paused_at = $4,
        total_paused_seconds = $5,
        breached = $6
    WHERE ticket_id = $1
    """

    _INSERT_EVENT_SQL = f"""
    INSERT INTO ticket_events ({_EVENT_COLUMNS})
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
    """

    _SELECT_EVENTS_SQL = f"""
    SELECT {_EVENT_COLUMNS}
    FROM ticket_events
    WHERE ticket_id = $1
    ORDER BY seq ASC
    """

    _INSERT_ATTACHMENT_SQL = """
    INSERT INTO ticket_attachments (id, ticket_id, event_id, storage_path, created_at)
    VALUES ($1, $2, $3, $4, $5)
    """

    _ACTIVE_STAFF_SQL = """
    SELECT 1
    FROM staff_members
    WHERE id = $1 AND hotel_id = $2 AND is_active
    """

    _TOUCH_STAFF_SQL = """
    UPDATE staff_members
    SET last_assigned_at = $2
    WHERE id = $1
    """

    def __init__(self, connection: asyncpg.Connection) -> None:
        self._connection = connection

    async def get_service(self, service_id: UUID) -> ServiceRef | None:
        row = await self._connection.fetchrow(self._SELECT_SERVICE_SQL, service_id)
        if row is None:
            return None
        return ServiceRef(
            id=row["id"],
            hotel_id=row["hotel_id"],
            department_id=row["department_id"],
            label=str(row["label"]),
            is_active=bool(row["is_active"]),
        )

    async def get_stay(self, stay_id: UUID) -> StayRef | None:
        row = await self._connection.fetchrow(self._SELECT_STAY_SQL, stay_id)
        if row is None:
            return None
        return StayRef(id=row["id"], hotel_id=row["hotel_id"], guest_id=row["guest_id"], room_id=row["room_id"])

    async def get_active_policy(self, department_id: UUID) -> SLAPolicy | None:
        return await fetch_active_policy(self._connection, department_id)

    async def get_policy(self, policy_id: UUID) -> SLAPolicy | None:
        return await fetch_policy(self._connection, policy_id)

    async def insert_ticket(self, ticket: Ticket) -> Ticket:
        row = await self._connection.fetchrow(
            self._INSERT_TICKET_SQL,
            ticket.id,
            ticket.hotel_id,
            ticket.department_id,
            ticket.service_id,
            ticket.stay_id,
            ticket.room_id,
            ticket.zone_id,
            ticket.title,
            ticket.description,
            ticket.priority.value,
            ticket.status.value,
            ticket.created_by_type.value,
            ticket.created_by_id,
            ticket.current_assignee_id,
            ticket.created_at,
        )
        if row is None:
            raise RuntimeError("Failed to insert ticket")
        return self._row_to_ticket(row)

    async def get_ticket(self, ticket_id: UUID) -> Ticket | None:
        row = await self._connection.fetchrow(self._SELECT_TICKET_SQL, ticket_id)
        return self._row_to_ticket(row) if row is not None else None

    async def lock_ticket(self, ticket_id: UUID) -> Ticket | None:
        row = await self._connection.fetchrow(self._LOCK_TICKET_SQL, ticket_id)
        return self._row_to_ticket(row) if row is not None else None

    async def update_ticket(self, ticket: Ticket, *, expected_status: TicketStatus) -> bool:
        result = await self._connection.execute(
            self._UPDATE_TICKET_SQL,
            ticket.id,
            expected_status.value,
            ticket.status.value,
            ticket.current_assignee_id,
            ticket.completed_at,
            ticket.cancelled_at,
            ticket.updated_at,
        )
        return result.endswith(" 1")

    async def insert_sla_state(self, state: SLAState) -> None:
        await self._connection.execute(
            self._INSERT_SLA_SQL,
            state.ticket_id,
            state.sla_policy_id,
            state.sla_started_at,
            state.sla_paused_at,
            state.total_paused_seconds,
            state.breached,
        )

    async def get_sla_state(self, ticket_id: UUID) -> SLAState | None:
        row = await self._connection.fetchrow(self._SELECT_SLA_SQL, ticket_id)
        return self._row_to_sla_state(row) if row is not None else None

    async def update_sla_state(self, state: SLAState) -> None:
        await self._connection.execute(
            self._UPDATE_SLA_SQL,
            state.ticket_id,
            state.sla_policy_id,
            state.sla_started_at,
            state.sla_paused_at,
            state.total_paused_seconds,
            state.breached,
        )

    async def append_event(self, event: TicketEvent) -> None:
        await self._connection.execute(
            self._INSERT_EVENT_SQL,
            event.id,
            event.ticket_id,
            event.event_type.value,
            event.actor_type.value,
            event.actor_id,
            event.previous_status.value if event.previous_status else None,
            event.new_status.value if event.new_status else None,
            event.reason_code,
            event.comment,
            list(event.media),
            event.created_at,
        )

    async def list_events(self, ticket_id: UUID) -> list[TicketEvent]:
        rows = await self._connection.fetch(self._SELECT_EVENTS_SQL, ticket_id)
        return [self._row_to_event(row) for row in rows]

    async def add_attachments(self, attachments: Sequence[TicketAttachment]) -> None:
        if not attachments:
            return
        await self._connection.executemany(
            self._INSERT_ATTACHMENT_SQL,
            [(item.id, item.ticket_id, item.event_id, item.storage_path, item.created_at) for item in attachments],
        )

    async def is_active_staff(self, hotel_id: UUID, staff_id: UUID) -> bool:
        return await self._connection.fetchval(self._ACTIVE_STAFF_SQL, staff_id, hotel_id) is not None

    async def mark_staff_assigned(self, staff_id: UUID, assigned_at: datetime) -> None:
        await self._connection.execute(self._TOUCH_STAFF_SQL, staff_id, assigned_at)

    @staticmethod
    def _row_to_ticket(row: Any) -> Ticket:
        return Ticket(
            id=row["id"],
            display_code=str(row["display_code"]),
            hotel_id=row["hotel_id"],
            department_id=row["department_id"],
            service_id=row["service_id"],
            stay_id=row["stay_id"],
            room_id=row["room_id"],
            zone_id=row["zone_id"],
            title=str(row["title"]),
            description=str(row["description"] or ""),
            priority=TicketPriority(str(row["priority"])),
            status=TicketStatus(str(row["status"])),
            created_by_type=ActorType(str(row["created_by_type"])),
            created_by_id=row["created_by_id"],
            current_assignee_id=row["current_assignee_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            completed_at=row["completed_at"],
            cancelled_at=row["cancelled_at"],
        )

    @staticmethod
    def _row_to_event(row: Any) -> TicketEvent:
        previous = row["previous_status"]
        new = row["new_status"]
        return TicketEvent(
            id=row["id"],
            ticket_id=row["ticket_id"],
            event_type=EventType(str(row["event_type"])),
            actor_type=ActorType(str(row["actor_type"])),
            actor_id=row["actor_id"],
            previous_status=TicketStatus(str(previous)) if previous else None,
            new_status=TicketStatus(str(new)) if new else None,
            reason_code=row["reason_code"],
            comment=row["comment"],
            media=tuple(row["media"] or ()),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_sla_state(row: Any) -> SLAState:
        return SLAState(
            ticket_id=row["ticket_id"],
            sla_policy_id=row["sla_policy_id"],
            sla_started_at=row["sla_started_at"],
            sla_paused_at=row["sla_paused_at"],
            total_paused_seconds=int(row["total_paused_seconds"]),
            breached=bool(row["breached"]),
        )


class TicketRepository:
    """Hands out transaction-scoped ticket stores backed by the asyncpg pool."""

    def __init__(self, pool: asyncpg.Pool, *, lock_timeout_ms: int = 5000) -> None:
        self._pool = pool
        self._lock_timeout_ms = lock_timeout_ms

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[PostgresTicketStore]:
        async with transaction(self._pool, lock_timeout_ms=self._lock_timeout_ms) as connection:
            yield PostgresTicketStore(connection)
