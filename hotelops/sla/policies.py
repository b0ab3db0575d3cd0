from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

import asyncpg

from hotelops.core.errors import AuthorizationError, NotFoundError, ValidationError
from hotelops.services.postgres import store_errors, transaction

from .timer import SLAPolicy

logger = logging.getLogger(__name__)

_POLICY_COLUMNS = "id, department_id, target_minutes, is_active, created_at, deactivated_at"

_SELECT_ACTIVE_SQL = f"""
SELECT {_POLICY_COLUMNS}
FROM sla_policies
WHERE department_id = $1 AND is_active
"""

_SELECT_POLICY_SQL = f"""
SELECT {_POLICY_COLUMNS}
FROM sla_policies
WHERE id = $1
"""

_LIST_POLICIES_SQL = f"""
SELECT {_POLICY_COLUMNS}
FROM sla_policies
WHERE department_id = $1
ORDER BY created_at DESC
"""

_LOCK_ACTIVE_SQL = f"""
SELECT {_POLICY_COLUMNS}
FROM sla_policies
WHERE department_id = $1 AND is_active
FOR UPDATE
"""

_DEPARTMENT_HOTEL_SQL = "SELECT hotel_id FROM departments WHERE id = $1"

# serialises activations per department, including the first one
_LOCK_DEPARTMENT_SQL = "SELECT hotel_id FROM departments WHERE id = $1 FOR UPDATE"

_DEACTIVATE_SQL = """
UPDATE sla_policies
SET is_active = FALSE, deactivated_at = now()
WHERE id = $1
"""

_INSERT_POLICY_SQL = f"""
INSERT INTO sla_policies (department_id, target_minutes, is_active)
VALUES ($1, $2, TRUE)
RETURNING {_POLICY_COLUMNS}
"""


def row_to_policy(row: Any) -> SLAPolicy:
    return SLAPolicy(
        id=row["id"],
        department_id=row["department_id"],
        target_minutes=int(row["target_minutes"]),
        is_active=bool(row["is_active"]),
        created_at=row["created_at"],
        deactivated_at=row["deactivated_at"],
    )


def _check_department(owner: UUID | None, department_id: UUID, hotel_id: UUID | None) -> None:
    if owner is None:
        raise NotFoundError(f"Department {department_id} not found")
    if hotel_id is not None and owner != hotel_id:
        raise AuthorizationError("Department belongs to another hotel")


async def fetch_active_policy(connection: asyncpg.Connection, department_id: UUID) -> SLAPolicy | None:
    row = await connection.fetchrow(_SELECT_ACTIVE_SQL, department_id)
    return row_to_policy(row) if row is not None else None


async def fetch_policy(connection: asyncpg.Connection, policy_id: UUID) -> SLAPolicy | None:
    row = await connection.fetchrow(_SELECT_POLICY_SQL, policy_id)
    return row_to_policy(row) if row is not None else None


class SLAPolicyRepository:
    """Reference data for department service targets.

    Policies are versioned rather than edited: changing a target retires the
    active row and inserts a new one, so tickets keep pointing at the policy
    that was active when their timer was bound.
    """

    def __init__(self, pool: asyncpg.Pool, *, lock_timeout_ms: int = 5000) -> None:
        self._pool = pool
        self._lock_timeout_ms = lock_timeout_ms

    async def get_active_policy(self, department_id: UUID) -> SLAPolicy | None:
        async with store_errors():
            async with self._pool.acquire() as connection:
                return await fetch_active_policy(connection, department_id)

    async def list_policies(self, department_id: UUID, *, hotel_id: UUID | None = None) -> list[SLAPolicy]:
        async with store_errors():
            async with self._pool.acquire() as connection:
                owner = await connection.fetchval(_DEPARTMENT_HOTEL_SQL, department_id)
                _check_department(owner, department_id, hotel_id)
                rows = await connection.fetch(_LIST_POLICIES_SQL, department_id)
        return [row_to_policy(row) for row in rows]

    async def activate_policy(
        self, department_id: UUID, target_minutes: int, *, hotel_id: UUID | None = None
    ) -> SLAPolicy:
        """Make ``target_minutes`` the department's active target.

        When ``hotel_id`` is given the department must belong to that hotel.
        """

        if target_minutes <= 0:
            raise ValidationError("target_minutes must be positive")

        async with transaction(self._pool, lock_timeout_ms=self._lock_timeout_ms) as connection:
            owner = await connection.fetchval(_LOCK_DEPARTMENT_SQL, department_id)
            _check_department(owner, department_id, hotel_id)
            current = await connection.fetchrow(_LOCK_ACTIVE_SQL, department_id)
            if current is not None:
                policy = row_to_policy(current)
                if policy.target_minutes == target_minutes:
                    return policy
                await connection.execute(_DEACTIVATE_SQL, policy.id)
            row = await connection.fetchrow(_INSERT_POLICY_SQL, department_id, target_minutes)
        if row is None:
            raise RuntimeError("Failed to insert SLA policy")
        created = row_to_policy(row)
        logger.info(
            "Activated SLA policy %s for department %s (%s minutes)",
            created.id,
            department_id,
            target_minutes,
        )
        return created
