from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from hotelops.core.actors import ActorType
from hotelops.sla import SLAClockState
from hotelops.tickets import EventType, TicketAction, TicketPriority, TicketStatus


class TicketCreateRequest(BaseModel):
    service_id: UUID
    room_id: UUID | None = None
    zone_id: UUID | None = None
    stay_id: UUID | None = None
    description: str = Field(default="", max_length=2000)
    priority: TicketPriority = TicketPriority.NORMAL
    # only honoured for SYSTEM callers creating on behalf of someone else
    hotel_id: UUID | None = None


class TicketCreatedResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    ticket_id: UUID
    display_code: str


class TransitionRequest(BaseModel):
    action: TicketAction
    staff_id: UUID | None = None
    reason: str | None = Field(default=None, max_length=500)
    reason_code: str | None = Field(default=None, max_length=64)
    comment: str | None = Field(default=None, max_length=500)
    expected_status: TicketStatus | None = None


class CommentRequest(BaseModel):
    text: str = Field(default="")
    media: list[str] = Field(default_factory=list)


class SLAReadingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    policy_id: UUID
    target_minutes: int
    state: SLAClockState
    started_at: datetime | None
    paused_at: datetime | None
    total_paused_seconds: int
    elapsed_seconds: int
    remaining_seconds: int
    breached: bool


class TicketResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

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
    completed_at: datetime | None
    cancelled_at: datetime | None


class TicketEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    ticket_id: UUID
    event_type: EventType
    actor_type: ActorType
    actor_id: UUID | None
    previous_status: TicketStatus | None
    new_status: TicketStatus | None
    comment: str | None
    reason_code: str | None
    media: list[str]
    created_at: datetime


class TicketViewResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    ticket: TicketResponse
    sla: SLAReadingResponse | None
    reopen_count: int
    events: list[TicketEventResponse] = Field(default_factory=list)


class SLAPolicyRequest(BaseModel):
    target_minutes: int = Field(..., gt=0)


class SLAPolicyResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    department_id: UUID
    target_minutes: int
    is_active: bool
    created_at: datetime
    deactivated_at: datetime | None


class BookingImportRequest(BaseModel):
    booking_reference: str = Field(..., min_length=1, max_length=128)
    rows: list[dict[str, Any]] = Field(..., min_length=1)
    hotel_id: UUID | None = None


class BookingImportResponse(BaseModel):
    queued: bool
