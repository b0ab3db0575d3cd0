from __future__ import annotations

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Header, status
from fastapi.responses import Response

from hotelops.api.schemas import (
    CommentRequest,
    TicketCreatedResponse,
    TicketCreateRequest,
    TicketEventResponse,
    TicketViewResponse,
    TransitionRequest,
)
from hotelops.core.actors import Actor, ActorType
from hotelops.core.errors import AuthorizationError, ValidationError
from hotelops.dependencies.auth import CurrentActor
from hotelops.dependencies.services import MutationGuardDep, RequestContextDep, TicketServiceDep
from hotelops.guard import GuardedResponse
from hotelops.tickets import Location, TicketEvent, TicketView, TransitionParams

router = APIRouter(prefix="/tickets", tags=["tickets"])

IdempotencyKey = Annotated[str | None, Header(alias="Idempotency-Key")]

REPLAY_HEADER = "Idempotent-Replayed"


def _to_view_response(view: TicketView) -> dict:
    return TicketViewResponse.model_validate(view).model_dump(mode="json")


def _to_event_response(event: TicketEvent) -> dict:
    return TicketEventResponse.model_validate(event).model_dump(mode="json")


def guarded_response(result: GuardedResponse) -> Response:
    """Send the stored body as-is so replays are byte-identical."""

    response = Response(content=result.body, media_type="application/json", status_code=result.status_code)
    response.headers[REPLAY_HEADER] = "true" if result.replayed else "false"
    return response


def _creator_type(actor: Actor) -> ActorType:
    # supervisors raise requests as staff members
    if actor.actor_type is ActorType.SUPERVISOR:
        return ActorType.STAFF
    return actor.actor_type


def _creation_hotel(actor: Actor, payload: TicketCreateRequest) -> UUID:
    if actor.actor_type in (ActorType.SYSTEM, ActorType.GUEST):
        hotel_id = actor.hotel_id or payload.hotel_id
    else:
        if payload.hotel_id is not None and payload.hotel_id != actor.hotel_id:
            raise AuthorizationError("Cannot create tickets for another hotel")
        hotel_id = actor.hotel_id
    if hotel_id is None:
        raise ValidationError("hotel_id is required")
    return hotel_id


@router.post("", status_code=status.HTTP_201_CREATED, response_model=TicketCreatedResponse)
async def create_ticket(
    payload: TicketCreateRequest,
    actor: CurrentActor,
    service: TicketServiceDep,
    guard: MutationGuardDep,
    context: RequestContextDep,
    idempotency_key: IdempotencyKey = None,
) -> Response:
    hotel_id = _creation_hotel(actor, payload)
    if actor.is_guest and payload.stay_id is None:
        raise ValidationError("stay_id is required for guest requests")

    async def operation() -> dict:
        created = await service.create_ticket(
            hotel_id=hotel_id,
            location=Location(room_id=payload.room_id, zone_id=payload.zone_id),
            service_id=payload.service_id,
            created_by_type=_creator_type(actor),
            created_by_id=actor.actor_id,
            description=payload.description,
            stay_id=payload.stay_id,
            priority=payload.priority,
        )
        return TicketCreatedResponse.model_validate(created).model_dump(mode="json")

    result = await guard.run(
        route="POST /tickets",
        action="ticket.create",
        actor=actor,
        entity_type="ticket",
        operation=operation,
        idempotency_key=idempotency_key,
        entity_id_from=lambda body: body.get("ticket_id"),
        metadata={"service_id": str(payload.service_id)},
        context=context,
        status_code=status.HTTP_201_CREATED,
        tenant_scope=str(hotel_id),
    )
    return guarded_response(result)


@router.get("/{ticket_id}", response_model=TicketViewResponse)
async def get_ticket(ticket_id: UUID, actor: CurrentActor, service: TicketServiceDep) -> dict:
    view = await service.get_ticket_view(ticket_id, actor=actor)
    return _to_view_response(view)


@router.get("/{ticket_id}/events", response_model=list[TicketEventResponse])
async def list_ticket_events(ticket_id: UUID, actor: CurrentActor, service: TicketServiceDep) -> list[dict]:
    events = await service.list_events(ticket_id, actor=actor)
    return [_to_event_response(event) for event in events]


@router.post("/{ticket_id}/transitions", response_model=TicketViewResponse)
async def transition_ticket(
    ticket_id: UUID,
    payload: TransitionRequest,
    actor: CurrentActor,
    service: TicketServiceDep,
    guard: MutationGuardDep,
    context: RequestContextDep,
    idempotency_key: IdempotencyKey = None,
) -> Response:
    params = TransitionParams(
        staff_id=payload.staff_id,
        reason=payload.reason,
        reason_code=payload.reason_code,
        comment=payload.comment,
        expected_status=payload.expected_status,
    )

    async def operation() -> dict:
        view = await service.transition_ticket(ticket_id, payload.action, actor, params)
        return _to_view_response(view)

    result = await guard.run(
        route=f"POST /tickets/{ticket_id}/transitions",
        action=f"ticket.{payload.action.value}",
        actor=actor,
        entity_type="ticket",
        entity_id=str(ticket_id),
        operation=operation,
        idempotency_key=idempotency_key,
        metadata={"reason_code": payload.reason_code} if payload.reason_code else None,
        context=context,
    )
    return guarded_response(result)


@router.post("/{ticket_id}/comments", status_code=status.HTTP_201_CREATED, response_model=TicketEventResponse)
async def add_comment(
    ticket_id: UUID,
    payload: CommentRequest,
    actor: CurrentActor,
    service: TicketServiceDep,
    guard: MutationGuardDep,
    context: RequestContextDep,
    idempotency_key: IdempotencyKey = None,
) -> Response:
    async def operation() -> dict:
        event = await service.append_comment(ticket_id, actor, payload.text, payload.media)
        return _to_event_response(event)

    result = await guard.run(
        route=f"POST /tickets/{ticket_id}/comments",
        action="ticket.comment",
        actor=actor,
        entity_type="ticket",
        entity_id=str(ticket_id),
        operation=operation,
        idempotency_key=idempotency_key,
        metadata={"media_count": len(payload.media)},
        context=context,
        status_code=status.HTTP_201_CREATED,
    )
    return guarded_response(result)
