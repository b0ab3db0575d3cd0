from __future__ import annotations

from fastapi import APIRouter, status

from hotelops.api.schemas import BookingImportRequest, BookingImportResponse
from hotelops.core.actors import ActorType
from hotelops.core.errors import AuthorizationError, ValidationError
from hotelops.dependencies.auth import CurrentActor
from hotelops.dependencies.services import MutationGuardDep, RequestContextDep, ServicesDep

from .tickets import IdempotencyKey, guarded_response

router = APIRouter(prefix="/imports", tags=["imports"])

_IMPORTERS = frozenset({ActorType.SYSTEM, ActorType.FRONT_DESK, ActorType.SUPERVISOR})


@router.post("/bookings", status_code=status.HTTP_202_ACCEPTED, response_model=BookingImportResponse)
async def import_booking(
    payload: BookingImportRequest,
    actor: CurrentActor,
    services: ServicesDep,
    guard: MutationGuardDep,
    context: RequestContextDep,
    idempotency_key: IdempotencyKey = None,
):
    if actor.actor_type not in _IMPORTERS:
        raise AuthorizationError(f"{actor.actor_type.value} cannot import bookings")
    hotel_id = payload.hotel_id if actor.is_system else actor.hotel_id
    if hotel_id is None:
        raise ValidationError("hotel_id is required")
    if not actor.is_system and payload.hotel_id not in (None, actor.hotel_id):
        raise AuthorizationError("Cannot import bookings for another hotel")

    async def operation() -> dict:
        queued = await services.import_queue().ingest_booking(hotel_id, payload.booking_reference, payload.rows)
        return {"queued": queued}

    result = await guard.run(
        route="POST /imports/bookings",
        action="booking.import",
        actor=actor,
        entity_type="booking",
        entity_id=payload.booking_reference,
        operation=operation,
        idempotency_key=idempotency_key,
        metadata={"rows": len(payload.rows)},
        context=context,
        status_code=status.HTTP_202_ACCEPTED,
        tenant_scope=str(hotel_id),
    )
    return guarded_response(result)
