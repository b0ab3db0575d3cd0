"""Idempotency keys for mutating entry points.

A key is scoped to (route, tenant). The first request reserves the key, runs the
operation and stores the serialized response; any later request with the same
scope and key gets the stored bytes back without running anything. A request
that arrives while the first one is still running is rejected with a conflict
rather than executed twice.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol

import asyncpg

from hotelops.core.best_effort import run_best_effort
from hotelops.core.errors import IdempotencyConflictError, ValidationError
from hotelops.core.retry import retry_transient
from hotelops.services.postgres import store_errors

logger = logging.getLogger(__name__)

MAX_KEY_LENGTH = 255


class IdempotencyStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


@dataclass(slots=True)
class IdempotencyRecord:
    route: str
    tenant_scope: str
    idempotency_key: str
    status: IdempotencyStatus
    created_at: datetime
    response_status: int | None = None
    response_body: str | None = None


@dataclass(frozen=True, slots=True)
class GuardedResponse:
    status_code: int
    body: str
    replayed: bool = False

    def json(self) -> Any:
        return json.loads(self.body)


class IdempotencyStore(Protocol):
    async def reserve(self, route: str, tenant_scope: str, key: str) -> IdempotencyRecord | None:
        """Reserve the key; return ``None`` if newly reserved, else the existing record."""

    async def take_over(self, route: str, tenant_scope: str, key: str, stale_before: datetime) -> bool: ...

    async def complete(self, route: str, tenant_scope: str, key: str, status_code: int, body: str) -> None: ...

    async def release(self, route: str, tenant_scope: str, key: str) -> None: ...


class PostgresIdempotencyStore:
    _RESERVE_SQL = """
    INSERT INTO idempotency_keys (route, tenant_scope, idempotency_key, status)
    VALUES ($1, $2, $3, 'in_progress')
    ON CONFLICT (route, tenant_scope, idempotency_key) DO NOTHING
    RETURNING idempotency_key
    """

    _SELECT_SQL = """
    SELECT route, tenant_scope, idempotency_key, status, created_at, response_status, response_body
    FROM idempotency_keys
    WHERE route = $1 AND tenant_scope = $2 AND idempotency_key = $3
    """

    _TAKE_OVER_SQL = """
    UPDATE idempotency_keys
    SET created_at = now()
    WHERE route = $1 AND tenant_scope = $2 AND idempotency_key = $3
      AND status = 'in_progress' AND created_at < $4
    RETURNING idempotency_key
    """

    _COMPLETE_SQL = """
    UPDATE idempotency_keys
    SET status = 'completed',
        response_status = $4,
        response_body = $5,
        completed_at = now()
    WHERE route = $1 AND tenant_scope = $2 AND idempotency_key = $3
    """

    _RELEASE_SQL = """
    DELETE FROM idempotency_keys
    WHERE route = $1 AND tenant_scope = $2 AND idempotency_key = $3 AND status = 'in_progress'
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def reserve(self, route: str, tenant_scope: str, key: str) -> IdempotencyRecord | None:
        async with store_errors():
            async with self._pool.acquire() as connection:
                inserted = await connection.fetchval(self._RESERVE_SQL, route, tenant_scope, key)
                if inserted is not None:
                    return None
                row = await connection.fetchrow(self._SELECT_SQL, route, tenant_scope, key)
        if row is None:
            # released between our insert attempt and the read
            return await self.reserve(route, tenant_scope, key)
        return IdempotencyRecord(
            route=row["route"],
            tenant_scope=row["tenant_scope"],
            idempotency_key=row["idempotency_key"],
            status=IdempotencyStatus(str(row["status"])),
            created_at=row["created_at"],
            response_status=row["response_status"],
            response_body=row["response_body"],
        )

    async def take_over(self, route: str, tenant_scope: str, key: str, stale_before: datetime) -> bool:
        async with store_errors():
            async with self._pool.acquire() as connection:
                return await connection.fetchval(self._TAKE_OVER_SQL, route, tenant_scope, key, stale_before) is not None

    async def complete(self, route: str, tenant_scope: str, key: str, status_code: int, body: str) -> None:
        async with store_errors():
            async with self._pool.acquire() as connection:
                await connection.execute(self._COMPLETE_SQL, route, tenant_scope, key, status_code, body)

    async def release(self, route: str, tenant_scope: str, key: str) -> None:
        async with store_errors():
            async with self._pool.acquire() as connection:
                await connection.execute(self._RELEASE_SQL, route, tenant_scope, key)


def serialize_response(payload: Any) -> str:
    return json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IdempotencyGuard:
    def __init__(
        self,
        store: IdempotencyStore,
        *,
        stale_after_seconds: int = 1200,
        complete_attempts: int = 3,
        retry_min_wait: float = 0.1,
        retry_max_wait: float = 2.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._stale_after = timedelta(seconds=stale_after_seconds)
        self._complete_attempts = complete_attempts
        self._retry_min_wait = retry_min_wait
        self._retry_max_wait = retry_max_wait
        self._clock = clock

    async def execute(
        self,
        *,
        route: str,
        tenant_scope: str,
        key: str | None,
        operation: Callable[[], Awaitable[Any]],
        status_code: int = 200,
    ) -> GuardedResponse:
        if key is None:
            result = await operation()
            return GuardedResponse(status_code=status_code, body=serialize_response(result))

        key = key.strip()
        if not key or len(key) > MAX_KEY_LENGTH:
            raise ValidationError(f"Idempotency key must be 1-{MAX_KEY_LENGTH} characters")

        existing = await self._store.reserve(route, tenant_scope, key)
        if existing is not None:
            if existing.status is IdempotencyStatus.COMPLETED and existing.response_body is not None:
                logger.info("Replaying stored response for %s key %s", route, key)
                return GuardedResponse(
                    status_code=existing.response_status or status_code,
                    body=existing.response_body,
                    replayed=True,
                )
            stale_before = self._clock() - self._stale_after
            if not await self._store.take_over(route, tenant_scope, key, stale_before):
                raise IdempotencyConflictError(f"A request with idempotency key {key} is still in progress")
            logger.warning("Taking over stale idempotency reservation for %s key %s", route, key)

        try:
            result = await operation()
        except Exception:
            # a reservation left behind here is taken over once stale
            await run_best_effort("idempotency.release", self._store.release, route, tenant_scope, key)
            raise

        body = serialize_response(result)
        # the operation has committed; until this lands a stale takeover would run it again
        await retry_transient(
            lambda: self._store.complete(route, tenant_scope, key, status_code, body),
            attempts=self._complete_attempts,
            min_wait=self._retry_min_wait,
            max_wait=self._retry_max_wait,
        )
        return GuardedResponse(status_code=status_code, body=body)
