from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from fakes import BASE_TIME, DummyPool, FakeClock, InMemoryIdempotencyStore, make_connection

from hotelops.core.errors import IdempotencyConflictError, TransientStoreError, ValidationError
from hotelops.guard.idempotency import IdempotencyGuard, IdempotencyStatus, PostgresIdempotencyStore

ROUTE = "POST /tickets"
TENANT = "hotel-1"


class CountingOperation:
    def __init__(self, result=None, error: Exception | None = None):
        self.calls = 0
        self._result = result if result is not None else {"ticket_id": "t-1", "display_code": "REQ-000001"}
        self._error = error

    async def __call__(self):
        self.calls += 1
        if self._error is not None:
            raise self._error
        return self._result


@pytest.mark.asyncio
async def test_without_key_operation_always_runs():
    store = InMemoryIdempotencyStore()
    guard = IdempotencyGuard(store)
    operation = CountingOperation()

    first = await guard.execute(route=ROUTE, tenant_scope=TENANT, key=None, operation=operation, status_code=201)
    second = await guard.execute(route=ROUTE, tenant_scope=TENANT, key=None, operation=operation, status_code=201)

    assert operation.calls == 2
    assert first.status_code == 201
    assert not second.replayed
    assert store.records == {}


@pytest.mark.asyncio
async def test_repeated_key_replays_identical_body():
    store = InMemoryIdempotencyStore()
    guard = IdempotencyGuard(store)
    operation = CountingOperation()

    first = await guard.execute(route=ROUTE, tenant_scope=TENANT, key="abc", operation=operation, status_code=201)
    second = await guard.execute(route=ROUTE, tenant_scope=TENANT, key="abc", operation=operation, status_code=201)

    assert operation.calls == 1
    assert store.completed_calls == 1
    assert second.replayed and not first.replayed
    assert second.body == first.body
    assert second.status_code == 201
    assert second.json()["display_code"] == "REQ-000001"


@pytest.mark.asyncio
async def test_key_is_scoped_by_route_and_tenant():
    guard = IdempotencyGuard(InMemoryIdempotencyStore())
    operation = CountingOperation()

    await guard.execute(route=ROUTE, tenant_scope=TENANT, key="abc", operation=operation)
    await guard.execute(route=ROUTE, tenant_scope="hotel-2", key="abc", operation=operation)
    await guard.execute(route="POST /tickets/x/comments", tenant_scope=TENANT, key="abc", operation=operation)

    assert operation.calls == 3


@pytest.mark.asyncio
@pytest.mark.parametrize("key", ["", "   ", "k" * 256])
async def test_malformed_key_is_rejected(key):
    operation = CountingOperation()
    with pytest.raises(ValidationError):
        await IdempotencyGuard(InMemoryIdempotencyStore()).execute(
            route=ROUTE, tenant_scope=TENANT, key=key, operation=operation
        )
    assert operation.calls == 0


@pytest.mark.asyncio
async def test_in_flight_key_conflicts():
    store = InMemoryIdempotencyStore()
    await store.reserve(ROUTE, TENANT, "abc")
    clock = FakeClock(BASE_TIME + timedelta(minutes=5))
    operation = CountingOperation()

    with pytest.raises(IdempotencyConflictError):
        await IdempotencyGuard(store, clock=clock).execute(
            route=ROUTE, tenant_scope=TENANT, key="abc", operation=operation
        )
    assert operation.calls == 0


@pytest.mark.asyncio
async def test_stale_reservation_is_taken_over():
    store = InMemoryIdempotencyStore()
    await store.reserve(ROUTE, TENANT, "abc")
    clock = FakeClock(BASE_TIME + timedelta(minutes=30))
    operation = CountingOperation()

    response = await IdempotencyGuard(store, stale_after_seconds=1200, clock=clock).execute(
        route=ROUTE, tenant_scope=TENANT, key="abc", operation=operation
    )

    assert operation.calls == 1
    assert not response.replayed
    assert store.records[(ROUTE, TENANT, "abc")].status is IdempotencyStatus.COMPLETED


@pytest.mark.asyncio
async def test_failed_operation_releases_key_for_retry():
    store = InMemoryIdempotencyStore()
    guard = IdempotencyGuard(store)

    with pytest.raises(RuntimeError):
        await guard.execute(
            route=ROUTE, tenant_scope=TENANT, key="abc", operation=CountingOperation(error=RuntimeError("boom"))
        )
    assert store.records == {}

    retry = CountingOperation()
    response = await guard.execute(route=ROUTE, tenant_scope=TENANT, key="abc", operation=retry)
    assert retry.calls == 1
    assert not response.replayed


@pytest.mark.asyncio
async def test_postgres_store_returns_existing_record():
    connection = make_connection()
    connection.fetchval = AsyncMock(return_value=None)
    connection.fetchrow = AsyncMock(
        return_value={
            "route": ROUTE,
            "tenant_scope": TENANT,
            "idempotency_key": "abc",
            "status": "completed",
            "created_at": BASE_TIME,
            "response_status": 201,
            "response_body": '{"ticket_id":"t-1"}',
        }
    )
    store = PostgresIdempotencyStore(DummyPool(connection))

    record = await store.reserve(ROUTE, TENANT, "abc")

    assert record.status is IdempotencyStatus.COMPLETED
    assert record.response_body == '{"ticket_id":"t-1"}'
    sql, *params = connection.fetchval.await_args.args
    assert "ON CONFLICT (route, tenant_scope, idempotency_key) DO NOTHING" in sql
    assert params == [ROUTE, TENANT, "abc"]


@pytest.mark.asyncio
async def test_postgres_store_reserves_new_key():
    connection = make_connection()
    connection.fetchval = AsyncMock(return_value="abc")
    store = PostgresIdempotencyStore(DummyPool(connection))

    assert await store.reserve(ROUTE, TENANT, "abc") is None
    connection.fetchrow.assert_not_awaited()


class FlakyCompleteStore(InMemoryIdempotencyStore):
    def __init__(self, failures: int):
        super().__init__()
        self._failures = failures

    async def complete(self, route, tenant_scope, key, status_code, body):
        if self._failures:
            self._failures -= 1
            raise TransientStoreError("connection reset")
        await super().complete(route, tenant_scope, key, status_code, body)


@pytest.mark.asyncio
async def test_stored_response_survives_transient_completion_failure():
    store = FlakyCompleteStore(failures=2)
    guard = IdempotencyGuard(store, complete_attempts=3, retry_min_wait=0, retry_max_wait=0)
    operation = CountingOperation()

    first = await guard.execute(route=ROUTE, tenant_scope=TENANT, key="abc", operation=operation, status_code=201)
    replay = await guard.execute(route=ROUTE, tenant_scope=TENANT, key="abc", operation=operation, status_code=201)

    assert operation.calls == 1
    assert replay.replayed
    assert replay.body == first.body
    assert store.records[(ROUTE, TENANT, "abc")].status is IdempotencyStatus.COMPLETED
