from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from uuid import UUID

from hotelops.core.actors import ActorType
from hotelops.sla.timer import SLAReading

from .state import TicketStatus


class TicketPriority(str, Enum):
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    URGENT = "URGENT"


class EventType(str, Enum):
    CREATED = "CREATED"
    ASSIGNED = "ASSIGNED"
    STATUS_CHANGED = "STATUS_CHANGED"
    COMMENT_ADDED = "COMMENT_ADDED"


@dataclass(frozen=True, slots=True)
class Location:
    """Where the request is served: a room or a zone, never both."""

    room_id: UUID | None = None
    zone_id: UUID | None = None

    @property
    def is_valid(self) -> bool:
        return (self.room_id is None) != (self.zone_id is None)


@dataclass(slots=True)
class Ticket:
    """Current state of a guest or staff service request."""

    id: UUID
    display_code: str
    hotel_id: UUID
    department_id: UUID
    service_id: UUID
    stay_id: UUID | None
    room_id: UUID | None
    zone_id: UUID | None
    title: str
    description: str
    priority: TicketPriority
    status: TicketStatus
    created_by_type: ActorType
    created_by_id: UUID | None
    current_assignee_id: UUID | None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None

    @property
    def stopped_at(self) -> datetime | None:
        if self.status is TicketStatus.COMPLETED:
            return self.completed_at
        if self.status is TicketStatus.CANCELLED:
            return self.cancelled_at
        return None


@dataclass(slots=True)
class TicketEvent:
    """Append-only history entry for a ticket."""

    id: UUID
    ticket_id: UUID
    event_type: EventType
    actor_type: ActorType
    actor_id: UUID | None
    previous_status: TicketStatus | None
    new_status: TicketStatus | None
    comment: str | None
    created_at: datetime
    reason_code: str | None = None
    media: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_reopen(self) -> bool:
        return (
            self.event_type is EventType.STATUS_CHANGED
            and self.previous_status is TicketStatus.COMPLETED
            and self.new_status is TicketStatus.NEW
        )


@dataclass(slots=True)
class TicketAttachment:
    id: UUID
    ticket_id: UUID
    event_id: UUID
    storage_path: str
    created_at: datetime


@dataclass(slots=True)
class ServiceRef:
    """Catalog entry a ticket is raised against."""

    id: UUID
    hotel_id: UUID
    department_id: UUID
    label: str
    is_active: bool


@dataclass(slots=True)
class StayRef:
    id: UUID
    hotel_id: UUID
    guest_id: UUID
    room_id: UUID | None = None


@dataclass(slots=True)
class CreatedTicket:
    ticket_id: UUID
    display_code: str


@dataclass(slots=True)
class TicketView:
    """Read model returned to callers; SLA numbers are computed at read time."""

    ticket: Ticket
    sla: SLAReading | None
    reopen_count: int
    events: list[TicketEvent] = field(default_factory=list)


def reopen_count(events: list[TicketEvent]) -> int:
    """Number of times the ticket went back from COMPLETED to NEW."""

    return sum(1 for event in events if event.is_reopen)


def status_walk(events: list[TicketEvent]) -> list[TicketStatus]:
    """Statuses visited by the ticket, in order, according to its log."""

    walk: list[TicketStatus] = []
    for event in events:
        if event.new_status is None:
            continue
        if event.event_type in (EventType.CREATED, EventType.STATUS_CHANGED):
            walk.append(event.new_status)
    return walk
