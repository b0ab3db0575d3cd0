"""SLA timing computed from stored timer inputs.

Only four inputs are persisted per ticket: the bound policy, the start time, the
pause time (while paused) and the accumulated paused seconds. Everything a reader
sees (elapsed, remaining, breached) is derived here at read time.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from uuid import UUID


class SLAClockState(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


@dataclass(slots=True)
class SLAPolicy:
    """Department-level service target."""

    id: UUID
    department_id: UUID
    target_minutes: int
    is_active: bool
    created_at: datetime
    deactivated_at: datetime | None = None

    @property
    def target_seconds(self) -> int:
        return self.target_minutes * 60


@dataclass(slots=True)
class SLAState:
    """Persisted timer inputs for one ticket."""

    ticket_id: UUID
    sla_policy_id: UUID
    sla_started_at: datetime | None = None
    sla_paused_at: datetime | None = None
    total_paused_seconds: int = 0
    breached: bool = False

    @property
    def is_running(self) -> bool:
        return self.sla_started_at is not None and self.sla_paused_at is None

    @property
    def is_paused(self) -> bool:
        return self.sla_paused_at is not None


@dataclass(frozen=True, slots=True)
class SLAReading:
    policy_id: UUID
    target_minutes: int
    state: SLAClockState
    started_at: datetime | None
    paused_at: datetime | None
    total_paused_seconds: int
    elapsed_seconds: int
    remaining_seconds: int
    breached: bool


def elapsed_seconds(state: SLAState, as_of: datetime) -> int:
    """Active handling time; frozen at the pause instant while paused."""

    if state.sla_started_at is None:
        return 0
    end = state.sla_paused_at if state.sla_paused_at is not None else as_of
    active = (end - state.sla_started_at).total_seconds() - state.total_paused_seconds
    return max(0, int(active))


def is_breached(state: SLAState, policy: SLAPolicy, as_of: datetime) -> bool:
    return elapsed_seconds(state, as_of) > policy.target_seconds


def start(state: SLAState, now: datetime) -> SLAState:
    if state.sla_started_at is not None:
        return state
    return replace(state, sla_started_at=now)


def pause(state: SLAState, now: datetime) -> SLAState:
    if state.sla_started_at is None or state.sla_paused_at is not None:
        return state
    return replace(state, sla_paused_at=now)


def resume(state: SLAState, now: datetime) -> SLAState:
    """Fold the open pause interval into the accumulator."""

    if state.sla_paused_at is None:
        return state
    paused_for = max(0, int((now - state.sla_paused_at).total_seconds()))
    return replace(
        state,
        sla_paused_at=None,
        total_paused_seconds=state.total_paused_seconds + paused_for,
    )


def stop(state: SLAState, policy: SLAPolicy, now: datetime) -> SLAState:
    """Close any pause and freeze the breach outcome."""

    elapsed = elapsed_seconds(state, now)
    closed = resume(state, now)
    return replace(closed, breached=elapsed > policy.target_seconds)


def reset(state: SLAState, policy: SLAPolicy) -> SLAState:
    """Start a fresh work cycle bound to ``policy``."""

    return SLAState(ticket_id=state.ticket_id, sla_policy_id=policy.id)


def read(
    state: SLAState,
    policy: SLAPolicy,
    *,
    now: datetime,
    stopped_at: datetime | None = None,
) -> SLAReading:
    """Compute the live reading.

    ``stopped_at`` is the completion or cancellation instant; stopped tickets report
    the frozen breach flag instead of re-evaluating against the policy.
    """

    as_of = stopped_at or now
    elapsed = elapsed_seconds(state, as_of)
    if stopped_at is not None:
        clock = SLAClockState.STOPPED
        breached = state.breached
    else:
        if state.sla_started_at is None:
            clock = SLAClockState.NOT_STARTED
        elif state.sla_paused_at is not None:
            clock = SLAClockState.PAUSED
        else:
            clock = SLAClockState.RUNNING
        breached = elapsed > policy.target_seconds
    return SLAReading(
        policy_id=policy.id,
        target_minutes=policy.target_minutes,
        state=clock,
        started_at=state.sla_started_at,
        paused_at=state.sla_paused_at,
        total_paused_seconds=state.total_paused_seconds,
        elapsed_seconds=elapsed,
        remaining_seconds=policy.target_seconds - elapsed,
        breached=breached,
    )
