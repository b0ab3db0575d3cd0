from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Annotated
from uuid import UUID

from fastapi import Depends, HTTPException, Request

from hotelops.core.actors import Actor, ActorType

ACTOR_TYPE_HEADER = "X-Actor-Type"
ACTOR_ID_HEADER = "X-Actor-Id"
HOTEL_ID_HEADER = "X-Hotel-Id"


def _parse_uuid(value: str | None, header: str) -> UUID | None:
    if not value:
        return None
    try:
        return UUID(value)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=f"Invalid {header} header") from exc


def resolve_actor_from_headers(headers: Mapping[str, str]) -> Actor:
    """Build the caller identity forwarded by the authenticating gateway."""

    raw_type = headers.get(ACTOR_TYPE_HEADER)
    if not raw_type:
        raise HTTPException(status_code=401, detail="Missing actor identity")
    try:
        actor_type = ActorType(raw_type.strip().upper())
    except ValueError as exc:
        raise HTTPException(status_code=401, detail="Invalid actor type") from exc

    actor_id = _parse_uuid(headers.get(ACTOR_ID_HEADER), ACTOR_ID_HEADER)
    hotel_id = _parse_uuid(headers.get(HOTEL_ID_HEADER), HOTEL_ID_HEADER)
    if actor_type is not ActorType.SYSTEM and actor_id is None:
        raise HTTPException(status_code=401, detail="Missing actor id")
    if actor_type not in (ActorType.SYSTEM, ActorType.GUEST) and hotel_id is None:
        raise HTTPException(status_code=401, detail="Missing hotel scope")
    return Actor(actor_type=actor_type, actor_id=actor_id, hotel_id=hotel_id)


async def get_current_actor(request: Request) -> Actor:
    actor = getattr(request.state, "actor", None)
    if actor is None:
        actor = resolve_actor_from_headers(request.headers)
        request.state.actor = actor
    return actor


def actor_types_required(*allowed: ActorType) -> Callable[..., Actor]:
    """Dependency factory ensuring the caller is one of ``allowed``."""

    async def dependency(actor: Annotated[Actor, Depends(get_current_actor)]) -> Actor:
        if actor.actor_type not in allowed:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return actor

    return dependency


require_system = actor_types_required(ActorType.SYSTEM)
require_supervisor = actor_types_required(ActorType.SUPERVISOR, ActorType.SYSTEM)

CurrentActor = Annotated[Actor, Depends(get_current_actor)]
SystemActor = Annotated[Actor, Depends(require_system)]
SupervisorActor = Annotated[Actor, Depends(require_supervisor)]
