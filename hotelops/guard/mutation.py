from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from hotelops.core.actors import Actor

from .audit import AuditEntry, AuditTrail
from .idempotency import GuardedResponse, IdempotencyGuard


@dataclass(frozen=True, slots=True)
class RequestContext:
    ip_address: str | None = None
    user_agent: str | None = None


class MutationGuard:
    """Bracket an externally triggered mutation with idempotency and audit."""

    def __init__(self, idempotency: IdempotencyGuard, audit: AuditTrail) -> None:
        self._idempotency = idempotency
        self._audit = audit

    async def run(
        self,
        *,
        route: str,
        action: str,
        actor: Actor,
        entity_type: str,
        operation: Callable[[], Awaitable[Any]],
        idempotency_key: str | None = None,
        entity_id: str | None = None,
        entity_id_from: Callable[[Any], str | None] | None = None,
        metadata: dict[str, Any] | None = None,
        context: RequestContext | None = None,
        status_code: int = 200,
        tenant_scope: str | None = None,
    ) -> GuardedResponse:
        """Run ``operation`` once per key within ``tenant_scope``.

        The scope defaults to the actor's own; routes that resolve the target
        hotel from the request pass it explicitly.
        """

        scope = actor.tenant_scope if tenant_scope is None else tenant_scope
        response = await self._idempotency.execute(
            route=route,
            tenant_scope=scope,
            key=idempotency_key,
            operation=operation,
            status_code=status_code,
        )

        resolved_id = entity_id
        if resolved_id is None and entity_id_from is not None:
            resolved_id = entity_id_from(response.json())
        details = dict(metadata or {})
        if idempotency_key:
            details["idempotency_key"] = idempotency_key
            details["replayed"] = response.replayed
        ctx = context or RequestContext()
        await self._audit.record(
            AuditEntry(
                action=action,
                actor_type=actor.actor_type.value,
                actor_id=actor.actor_id,
                tenant_scope=scope,
                entity_type=entity_type,
                entity_id=resolved_id,
                metadata=details,
                ip_address=ctx.ip_address,
                user_agent=ctx.user_agent,
            )
        )
        return response
