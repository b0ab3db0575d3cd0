from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter

from hotelops.api.schemas import SLAPolicyRequest, SLAPolicyResponse
from hotelops.core.actors import Actor
from hotelops.dependencies.auth import SupervisorActor
from hotelops.dependencies.services import MutationGuardDep, PolicyRepositoryDep, RequestContextDep

from .tickets import IdempotencyKey, guarded_response

router = APIRouter(prefix="/departments", tags=["departments"])


def _hotel_boundary(actor: Actor) -> UUID | None:
    # system callers act across hotels
    return None if actor.is_system else actor.hotel_id


@router.get("/{department_id}/sla-policies", response_model=list[SLAPolicyResponse])
async def list_sla_policies(
    department_id: UUID, actor: SupervisorActor, policies: PolicyRepositoryDep
) -> list[SLAPolicyResponse]:
    listed = await policies.list_policies(department_id, hotel_id=_hotel_boundary(actor))
    return [SLAPolicyResponse.model_validate(policy) for policy in listed]


@router.put("/{department_id}/sla-policy", response_model=SLAPolicyResponse)
async def set_sla_policy(
    department_id: UUID,
    payload: SLAPolicyRequest,
    actor: SupervisorActor,
    policies: PolicyRepositoryDep,
    guard: MutationGuardDep,
    context: RequestContextDep,
    idempotency_key: IdempotencyKey = None,
):
    """Replace the department's active policy; running tickets keep their bound one."""

    async def operation() -> dict:
        policy = await policies.activate_policy(
            department_id, payload.target_minutes, hotel_id=_hotel_boundary(actor)
        )
        return SLAPolicyResponse.model_validate(policy).model_dump(mode="json")

    result = await guard.run(
        route=f"PUT /departments/{department_id}/sla-policy",
        action="sla_policy.activate",
        actor=actor,
        entity_type="department",
        entity_id=str(department_id),
        operation=operation,
        idempotency_key=idempotency_key,
        metadata={"target_minutes": payload.target_minutes},
        context=context,
    )
    return guarded_response(result)
