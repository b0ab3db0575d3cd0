from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from hotelops.core.errors import InvalidTransitionError


class TicketStatus(str, Enum):
    """Supported states for a ticket's lifecycle."""

    NEW = "NEW"
    IN_PROGRESS = "IN_PROGRESS"
    BLOCKED = "BLOCKED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class TicketAction(str, Enum):
    ASSIGN = "assign"
    START = "start"
    PAUSE = "pause"
    RESUME = "resume"
    RESOLVE = "resolve"
    CLOSE = "close"
    CANCEL = "cancel"
    REOPEN = "reopen"


class SLAEffect(str, Enum):
    """What a transition does to the ticket's SLA timer."""

    NONE = "none"
    START = "start"
    PAUSE = "pause"
    RESUME = "resume"
    STOP = "stop"
    CLOSE_PAUSE = "close_pause"
    RESET = "reset"


@dataclass(frozen=True, slots=True)
class Transition:
    action: TicketAction
    source: TicketStatus
    target: TicketStatus
    sla: SLAEffect = SLAEffect.NONE
    clears_assignee: bool = False
    sets_completed_at: bool = False
    sets_cancelled_at: bool = False
    clears_completed_at: bool = False

    @property
    def changes_status(self) -> bool:
        return self.source is not self.target


def _build(entries: Iterable[Transition]) -> dict[tuple[TicketStatus, TicketAction], Transition]:
    return {(entry.source, entry.action): entry for entry in entries}


_S = TicketStatus
_A = TicketAction

TRANSITIONS: dict[tuple[TicketStatus, TicketAction], Transition] = _build(
    [
        Transition(_A.ASSIGN, _S.NEW, _S.NEW),
        Transition(_A.START, _S.NEW, _S.IN_PROGRESS, sla=SLAEffect.START),
        Transition(_A.PAUSE, _S.IN_PROGRESS, _S.BLOCKED, sla=SLAEffect.PAUSE),
        Transition(_A.RESUME, _S.BLOCKED, _S.IN_PROGRESS, sla=SLAEffect.RESUME),
        *(
            Transition(action, source, _S.COMPLETED, sla=SLAEffect.STOP, sets_completed_at=True)
            for action in (_A.RESOLVE, _A.CLOSE)
            for source in (_S.IN_PROGRESS, _S.BLOCKED)
        ),
        *(
            Transition(_A.CANCEL, source, _S.CANCELLED, sla=SLAEffect.CLOSE_PAUSE, sets_cancelled_at=True)
            for source in (_S.NEW, _S.IN_PROGRESS, _S.BLOCKED)
        ),
        Transition(
            _A.REOPEN,
            _S.COMPLETED,
            _S.NEW,
            sla=SLAEffect.RESET,
            clears_assignee=True,
            clears_completed_at=True,
        ),
    ]
)

OPEN_STATUSES = frozenset({TicketStatus.NEW, TicketStatus.IN_PROGRESS, TicketStatus.BLOCKED})


class TicketStateMachine:
    """Look up and validate ticket lifecycle transitions."""

    _TRANSITIONS = TRANSITIONS

    @classmethod
    def initial_state(cls) -> TicketStatus:
        return TicketStatus.NEW

    @classmethod
    def lookup(cls, current: TicketStatus, action: TicketAction) -> Transition | None:
        return cls._TRANSITIONS.get((current, action))

    @classmethod
    def can_apply(cls, current: TicketStatus, action: TicketAction) -> bool:
        return (current, action) in cls._TRANSITIONS

    @classmethod
    def transition_for(cls, current: TicketStatus, action: TicketAction) -> Transition:
        transition = cls.lookup(current, action)
        if transition is None:
            raise InvalidTransitionError(f"Cannot {action.value} a ticket in status {current.value}")
        return transition

    @classmethod
    def can_reach(cls, current: TicketStatus, new: TicketStatus) -> bool:
        """Whether a single transition leads from ``current`` to ``new``."""

        return any(
            source is current and entry.target is new
            for (source, _), entry in cls._TRANSITIONS.items()
        )

    @classmethod
    def is_valid_walk(cls, statuses: Iterable[TicketStatus]) -> bool:
        """Check that a sequence of visited statuses follows the transition graph."""

        previous: TicketStatus | None = None
        for status in statuses:
            if previous is None:
                if status is not cls.initial_state():
                    return False
            elif status is not previous and not cls.can_reach(previous, status):
                return False
            previous = status
        return True
