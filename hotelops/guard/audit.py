from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol
from uuid import UUID, uuid4

import asyncpg

from hotelops.core.best_effort import best_effort

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AuditEntry:
    """Forensic record of one mutation."""

    action: str
    actor_type: str
    actor_id: UUID | None
    tenant_scope: str
    entity_type: str
    entity_id: str | None
    metadata: dict[str, Any] = field(default_factory=dict)
    ip_address: str | None = None
    user_agent: str | None = None
    id: UUID = field(default_factory=uuid4)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class AuditSink(Protocol):
    async def write(self, entry: AuditEntry) -> None: ...


class PostgresAuditSink:
    _INSERT_SQL = """
    INSERT INTO audit_log (
        id, created_at, action, actor_type, actor_id, tenant_scope,
        entity_type, entity_id, metadata, ip_address, user_agent
    )
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9::jsonb, $10, $11)
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def write(self, entry: AuditEntry) -> None:
        async with self._pool.acquire() as connection:
            await connection.execute(
                self._INSERT_SQL,
                entry.id,
                entry.created_at,
                entry.action,
                entry.actor_type,
                entry.actor_id,
                entry.tenant_scope,
                entry.entity_type,
                entry.entity_id,
                json.dumps(entry.metadata, default=str),
                entry.ip_address,
                entry.user_agent,
            )


class AuditTrail:
    """Write-only audit log; a failed write is logged, never raised."""

    def __init__(self, sink: AuditSink) -> None:
        self._sink = sink

    @best_effort("audit.record")
    async def record(self, entry: AuditEntry) -> None:
        await self._sink.write(entry)
        logger.debug("Audited %s on %s %s", entry.action, entry.entity_type, entry.entity_id)
