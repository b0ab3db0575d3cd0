from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from hotelops.guard import MutationGuard, RequestContext
from hotelops.services.container import AppServices
from hotelops.sla import SLAPolicyRepository
from hotelops.tickets import TicketService


async def get_services(request: Request) -> AppServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Services are not configured")
    return services


async def get_ticket_service(services: Annotated[AppServices, Depends(get_services)]) -> TicketService:
    return services.tickets


async def get_mutation_guard(services: Annotated[AppServices, Depends(get_services)]) -> MutationGuard:
    return services.guard


async def get_policy_repository(services: Annotated[AppServices, Depends(get_services)]) -> SLAPolicyRepository:
    return services.policies


def get_request_context(request: Request) -> RequestContext:
    forwarded = request.headers.get("X-Forwarded-For")
    ip_address = forwarded.split(",")[0].strip() if forwarded else (request.client.host if request.client else None)
    return RequestContext(ip_address=ip_address, user_agent=request.headers.get("User-Agent"))


ServicesDep = Annotated[AppServices, Depends(get_services)]
TicketServiceDep = Annotated[TicketService, Depends(get_ticket_service)]
MutationGuardDep = Annotated[MutationGuard, Depends(get_mutation_guard)]
PolicyRepositoryDep = Annotated[SLAPolicyRepository, Depends(get_policy_repository)]
RequestContextDep = Annotated[RequestContext, Depends(get_request_context)]
