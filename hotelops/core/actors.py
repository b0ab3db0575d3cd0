from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from uuid import UUID


class ActorType(str, Enum):
    """Kinds of callers that can act on tickets."""

    GUEST = "GUEST"
    STAFF = "STAFF"
    FRONT_DESK = "FRONT_DESK"
    SUPERVISOR = "SUPERVISOR"
    SYSTEM = "SYSTEM"


# Only these may appear as a ticket's creator type.
CREATOR_TYPES = frozenset({ActorType.GUEST, ActorType.STAFF, ActorType.FRONT_DESK, ActorType.SYSTEM})

# Creator identity is persisted only for these.
IDENTIFIED_CREATOR_TYPES = frozenset({ActorType.STAFF, ActorType.FRONT_DESK})


@dataclass(frozen=True, slots=True)
class Actor:
    """Caller identity resolved by the authentication layer."""

    actor_type: ActorType
    actor_id: UUID | None = None
    hotel_id: UUID | None = None

    @classmethod
    def system(cls) -> "Actor":
        return cls(actor_type=ActorType.SYSTEM)

    @property
    def is_guest(self) -> bool:
        return self.actor_type is ActorType.GUEST

    @property
    def is_system(self) -> bool:
        return self.actor_type is ActorType.SYSTEM

    @property
    def tenant_scope(self) -> str:
        if self.hotel_id is not None:
            return str(self.hotel_id)
        # unscoped guests must not share idempotency records with each other
        if self.actor_id is not None:
            return f"{self.actor_type.value.lower()}:{self.actor_id}"
        return ""
