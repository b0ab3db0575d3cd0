from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Sequence
from uuid import UUID, uuid4

from opentelemetry import trace

from hotelops.core.actors import CREATOR_TYPES, IDENTIFIED_CREATOR_TYPES, Actor, ActorType
from hotelops.core.errors import (
    AuthorizationError,
    InvalidTransitionError,
    NotFoundError,
    StaleStateError,
    ValidationError,
)
from hotelops.core.retry import retry_transient
from hotelops.notifications import Notification, NotificationDispatcher, send_best_effort
from hotelops.sla import timer
from hotelops.sla.timer import SLAPolicy, SLAState

from .models import (
    CreatedTicket,
    EventType,
    Location,
    Ticket,
    TicketAttachment,
    TicketEvent,
    TicketPriority,
    TicketView,
    reopen_count,
)
from .repository import TicketStore, TicketTransactions
from .state import OPEN_STATUSES, SLAEffect, TicketAction, TicketStateMachine, TicketStatus, Transition

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

_WORK_ACTIONS = frozenset(
    {TicketAction.START, TicketAction.PAUSE, TicketAction.RESUME, TicketAction.RESOLVE, TicketAction.CLOSE}
)
_ASSIGNERS = frozenset({ActorType.SUPERVISOR, ActorType.FRONT_DESK, ActorType.SYSTEM})
_GUEST_ACTIONS = frozenset({TicketAction.CANCEL, TicketAction.REOPEN})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class TransitionParams:
    """Optional inputs for a transition; which ones matter depends on the action."""

    staff_id: UUID | None = None
    reason: str | None = None
    reason_code: str | None = None
    comment: str | None = None
    expected_status: TicketStatus | None = None
    only_if_unassigned: bool = False


@dataclass(slots=True)
class _Outcome:
    view: TicketView
    transition: Transition
    previous_status: TicketStatus


@dataclass(slots=True)
class TicketService:
    """Ticket lifecycle operations; each call runs as one store transaction."""

    repository: TicketTransactions
    notifier: NotificationDispatcher | None = None
    clock: Callable[[], datetime] = utcnow
    max_reopens: int = 2
    comment_max_length: int = 500
    retry_attempts: int = 3
    retry_min_wait: float = 0.1
    retry_max_wait: float = 2.0

    async def _retrying(self, func):
        return await retry_transient(
            func,
            attempts=self.retry_attempts,
            min_wait=self.retry_min_wait,
            max_wait=self.retry_max_wait,
        )

    # -- creation -----------------------------------------------------------------

    async def create_ticket(
        self,
        *,
        hotel_id: UUID,
        location: Location,
        service_id: UUID,
        created_by_type: ActorType | str,
        created_by_id: UUID | None = None,
        description: str = "",
        stay_id: UUID | None = None,
        priority: TicketPriority | str = TicketPriority.NORMAL,
    ) -> CreatedTicket:
        if not location.is_valid:
            raise ValidationError("Exactly one of room_id or zone_id must be provided")
        creator_type = _parse_enum(ActorType, created_by_type, "created_by_type")
        if creator_type not in CREATOR_TYPES:
            raise ValidationError(f"Invalid created_by_type: {creator_type.value}")
        if creator_type in IDENTIFIED_CREATOR_TYPES:
            if created_by_id is None:
                raise ValidationError(f"created_by_id is required for {creator_type.value} requests")
        else:
            created_by_id = None
        ticket_priority = _parse_enum(TicketPriority, priority, "priority")

        async def attempt() -> Ticket:
            async with self.repository.transaction() as store:
                return await self._insert_ticket(
                    store,
                    hotel_id=hotel_id,
                    location=location,
                    service_id=service_id,
                    creator_type=creator_type,
                    created_by_id=created_by_id,
                    description=description.strip(),
                    stay_id=stay_id,
                    priority=ticket_priority,
                )

        with tracer.start_as_current_span("tickets.create") as span:
            span.set_attribute("hotel.id", str(hotel_id))
            ticket = await self._retrying(attempt)
            span.set_attribute("ticket.id", str(ticket.id))

        logger.info("Created ticket %s (%s) for hotel %s", ticket.id, ticket.display_code, hotel_id)
        await send_best_effort(
            self.notifier,
            Notification(
                kind="ticket.created",
                channel="internal",
                hotel_id=ticket.hotel_id,
                payload={
                    "ticket_id": str(ticket.id),
                    "display_code": ticket.display_code,
                    "department_id": str(ticket.department_id),
                    "priority": ticket.priority.value,
                },
            ),
        )
        return CreatedTicket(ticket_id=ticket.id, display_code=ticket.display_code)

    async def _insert_ticket(
        self,
        store: TicketStore,
        *,
        hotel_id: UUID,
        location: Location,
        service_id: UUID,
        creator_type: ActorType,
        created_by_id: UUID | None,
        description: str,
        stay_id: UUID | None,
        priority: TicketPriority,
    ) -> Ticket:
        service = await store.get_service(service_id)
        if service is None or not service.is_active or service.hotel_id != hotel_id:
            raise NotFoundError(f"Service {service_id} not found")

        policy = await store.get_active_policy(service.department_id)
        if policy is None:
            raise NotFoundError(f"No active SLA policy for department {service.department_id}")

        if stay_id is not None:
            stay = await store.get_stay(stay_id)
            if stay is None or stay.hotel_id != hotel_id:
                raise NotFoundError(f"Stay {stay_id} not found")

        now = self.clock()
        draft = Ticket(
            id=uuid4(),
            display_code="",
            hotel_id=hotel_id,
            department_id=service.department_id,
            service_id=service.id,
            stay_id=stay_id,
            room_id=location.room_id,
            zone_id=location.zone_id,
            title=service.label,
            description=description,
            priority=priority,
            status=TicketStateMachine.initial_state(),
            created_by_type=creator_type,
            created_by_id=created_by_id,
            current_assignee_id=None,
            created_at=now,
            updated_at=now,
        )
        ticket = await store.insert_ticket(draft)
        await store.append_event(
            TicketEvent(
                id=uuid4(),
                ticket_id=ticket.id,
                event_type=EventType.CREATED,
                actor_type=creator_type,
                actor_id=created_by_id,
                previous_status=None,
                new_status=ticket.status,
                comment="Service request created",
                created_at=now,
            )
        )
        await store.insert_sla_state(SLAState(ticket_id=ticket.id, sla_policy_id=policy.id))
        return ticket

    # -- transitions --------------------------------------------------------------

    async def transition_ticket(
        self,
        ticket_id: UUID,
        action: TicketAction | str,
        actor: Actor,
        params: TransitionParams | None = None,
    ) -> TicketView:
        ticket_action = _parse_enum(TicketAction, action, "action")
        options = params or TransitionParams()

        async def attempt() -> _Outcome:
            async with self.repository.transaction() as store:
                return await self._apply(store, ticket_id, ticket_action, actor, options)

        with tracer.start_as_current_span("tickets.transition") as span:
            span.set_attribute("ticket.id", str(ticket_id))
            span.set_attribute("ticket.action", ticket_action.value)
            outcome = await self._retrying(attempt)
            span.set_attribute("ticket.status", outcome.view.ticket.status.value)

        logger.info(
            "Ticket %s: %s %s -> %s by %s",
            ticket_id,
            ticket_action.value,
            outcome.previous_status.value,
            outcome.view.ticket.status.value,
            actor.actor_type.value,
        )
        await self._notify_transition(outcome, ticket_action)
        return outcome.view

    async def _apply(
        self,
        store: TicketStore,
        ticket_id: UUID,
        action: TicketAction,
        actor: Actor,
        params: TransitionParams,
    ) -> _Outcome:
        ticket = await store.lock_ticket(ticket_id)
        if ticket is None:
            raise NotFoundError(f"Ticket {ticket_id} not found")
        if params.expected_status is not None and params.expected_status is not ticket.status:
            raise StaleStateError(
                f"Ticket {ticket_id} is {ticket.status.value}, expected {params.expected_status.value}"
            )

        await self._authorize(store, ticket, action, actor)
        transition = TicketStateMachine.transition_for(ticket.status, action)

        sla_state = await store.get_sla_state(ticket.id)
        if sla_state is None:
            raise RuntimeError(f"Ticket {ticket.id} has no SLA state")
        policy = await _require_policy(store, sla_state.sla_policy_id)

        now = self.clock()
        previous = ticket.status
        events: list[TicketEvent] = []
        status_comment = params.comment

        if action is TicketAction.ASSIGN:
            staff_id = params.staff_id
            if staff_id is None:
                raise ValidationError("staff_id is required to assign a ticket")
            if params.only_if_unassigned and ticket.current_assignee_id is not None:
                raise StaleStateError(f"Ticket {ticket.id} was assigned by another process")
            await self._assign(store, ticket, staff_id, actor, now, events, params.comment or "Ticket assigned")
        elif action is TicketAction.START:
            await self._claim_for_start(store, ticket, actor, now, events)
        elif action is TicketAction.CANCEL:
            reason = (params.reason or "").strip()
            if not reason:
                raise ValidationError("A cancellation reason is required")
            status_comment = reason
        elif action is TicketAction.REOPEN:
            history = await store.list_events(ticket.id)
            count = reopen_count(history)
            if count >= self.max_reopens:
                raise InvalidTransitionError(
                    f"Ticket {ticket.id} has been reopened {count} times (max allowed: {self.max_reopens})"
                )
            policy = await store.get_active_policy(ticket.department_id)
            if policy is None:
                raise NotFoundError(f"No active SLA policy for department {ticket.department_id}")
            reason = (params.reason or "").strip()
            status_comment = f"Reopened (reopen #{count + 1})" + (f": {reason}" if reason else "")

        ticket.status = transition.target
        ticket.updated_at = now
        if transition.clears_assignee:
            ticket.current_assignee_id = None
        if transition.sets_completed_at:
            ticket.completed_at = now
        if transition.clears_completed_at:
            ticket.completed_at = None
        if transition.sets_cancelled_at:
            ticket.cancelled_at = now

        new_sla = _apply_sla_effect(transition.sla, sla_state, policy, now)

        if not await store.update_ticket(ticket, expected_status=previous):
            raise StaleStateError(f"Ticket {ticket.id} was modified by another process")
        if new_sla != sla_state:
            await store.update_sla_state(new_sla)

        if transition.changes_status:
            events.append(
                TicketEvent(
                    id=uuid4(),
                    ticket_id=ticket.id,
                    event_type=EventType.STATUS_CHANGED,
                    actor_type=actor.actor_type,
                    actor_id=actor.actor_id,
                    previous_status=previous,
                    new_status=ticket.status,
                    reason_code=params.reason_code,
                    comment=status_comment,
                    created_at=now,
                )
            )
        for event in events:
            await store.append_event(event)

        history = await store.list_events(ticket.id)
        view = TicketView(
            ticket=ticket,
            sla=timer.read(new_sla, policy, now=now, stopped_at=ticket.stopped_at),
            reopen_count=reopen_count(history),
        )
        return _Outcome(view=view, transition=transition, previous_status=previous)

    async def _assign(
        self,
        store: TicketStore,
        ticket: Ticket,
        staff_id: UUID,
        actor: Actor,
        now: datetime,
        events: list[TicketEvent],
        comment: str,
    ) -> None:
        if not await store.is_active_staff(ticket.hotel_id, staff_id):
            raise ValidationError(f"Staff member {staff_id} is not active in this hotel")
        ticket.current_assignee_id = staff_id
        await store.mark_staff_assigned(staff_id, now)
        events.append(
            TicketEvent(
                id=uuid4(),
                ticket_id=ticket.id,
                event_type=EventType.ASSIGNED,
                actor_type=actor.actor_type,
                actor_id=actor.actor_id,
                previous_status=ticket.status,
                new_status=ticket.status,
                comment=comment,
                created_at=now,
            )
        )

    async def _claim_for_start(
        self,
        store: TicketStore,
        ticket: Ticket,
        actor: Actor,
        now: datetime,
        events: list[TicketEvent],
    ) -> None:
        if actor.actor_type is ActorType.STAFF:
            if ticket.current_assignee_id is None:
                await self._assign(store, ticket, actor.actor_id, actor, now, events, "Self-assigned on start")
            elif ticket.current_assignee_id != actor.actor_id:
                raise AuthorizationError("Ticket is already assigned to another staff member")
        elif ticket.current_assignee_id is None:
            raise InvalidTransitionError("Ticket must be assigned before work can start")

    async def _authorize(self, store: TicketStore, ticket: Ticket, action: TicketAction, actor: Actor) -> None:
        if actor.is_guest:
            if action not in _GUEST_ACTIONS:
                raise AuthorizationError(f"Guests cannot {action.value} tickets")
            await self._require_stay_owner(store, ticket, actor)
            return

        if action is TicketAction.REOPEN:
            raise AuthorizationError("Only the guest of the owning stay may reopen a ticket")
        if actor.is_system:
            return
        if actor.hotel_id != ticket.hotel_id:
            raise AuthorizationError("Actor does not belong to the ticket's hotel")
        if action is TicketAction.ASSIGN and actor.actor_type not in _ASSIGNERS:
            raise AuthorizationError(f"{actor.actor_type.value} cannot assign tickets")
        if action in _WORK_ACTIONS:
            if actor.actor_type is ActorType.FRONT_DESK:
                raise AuthorizationError("Front desk cannot work on tickets")
            if actor.actor_id is None and actor.actor_type is ActorType.STAFF:
                raise AuthorizationError("Staff identity is required")
            # start is checked separately; an unassigned ticket may be picked up
            if (
                action is not TicketAction.START
                and actor.actor_type is ActorType.STAFF
                and ticket.current_assignee_id != actor.actor_id
            ):
                raise AuthorizationError("Only the assigned staff member can update this ticket")

    async def _require_stay_owner(self, store: TicketStore, ticket: Ticket, actor: Actor) -> None:
        if ticket.stay_id is None or actor.actor_id is None:
            raise AuthorizationError("Unauthorized attempt: ticket is not linked to the caller's stay")
        stay = await store.get_stay(ticket.stay_id)
        if stay is None or stay.guest_id != actor.actor_id or stay.hotel_id != ticket.hotel_id:
            raise AuthorizationError("Unauthorized attempt: ticket is not linked to the caller's stay")

    async def _require_visibility(self, store: TicketStore, ticket: Ticket, actor: Actor) -> None:
        if actor.is_guest:
            await self._require_stay_owner(store, ticket, actor)
        elif not actor.is_system and actor.hotel_id != ticket.hotel_id:
            raise AuthorizationError("Actor does not belong to the ticket's hotel")

    async def _notify_transition(self, outcome: _Outcome, action: TicketAction) -> None:
        ticket = outcome.view.ticket
        if action is TicketAction.ASSIGN and ticket.current_assignee_id is not None:
            kind, recipient = "ticket.assigned", str(ticket.current_assignee_id)
        elif ticket.status is TicketStatus.COMPLETED and outcome.previous_status is not TicketStatus.COMPLETED:
            kind, recipient = "ticket.completed", str(ticket.stay_id) if ticket.stay_id else None
        else:
            return
        await send_best_effort(
            self.notifier,
            Notification(
                kind=kind,
                channel="internal",
                hotel_id=ticket.hotel_id,
                recipient=recipient,
                payload={"ticket_id": str(ticket.id), "display_code": ticket.display_code},
            ),
        )

    # -- comments -----------------------------------------------------------------

    async def append_comment(
        self,
        ticket_id: UUID,
        actor: Actor,
        text: str,
        media: Sequence[str] = (),
    ) -> TicketEvent:
        body = (text or "").strip()
        paths = tuple(path.strip() for path in media)
        if not body and not paths:
            raise ValidationError("Comment must include text or media")
        if len(body) > self.comment_max_length:
            raise ValidationError(f"Comment exceeds {self.comment_max_length} characters")

        async def attempt() -> TicketEvent:
            async with self.repository.transaction() as store:
                ticket = await store.lock_ticket(ticket_id)
                if ticket is None:
                    raise NotFoundError(f"Ticket {ticket_id} not found")
                if ticket.status not in OPEN_STATUSES:
                    raise InvalidTransitionError(f"Cannot comment on a {ticket.status.value} ticket")
                await self._require_visibility(store, ticket, actor)
                validate_media_paths(ticket, paths)

                now = self.clock()
                event = TicketEvent(
                    id=uuid4(),
                    ticket_id=ticket.id,
                    event_type=EventType.COMMENT_ADDED,
                    actor_type=actor.actor_type,
                    actor_id=actor.actor_id,
                    previous_status=None,
                    new_status=None,
                    comment=body or None,
                    media=paths,
                    created_at=now,
                )
                await store.append_event(event)
                await store.add_attachments(
                    [
                        TicketAttachment(
                            id=uuid4(),
                            ticket_id=ticket.id,
                            event_id=event.id,
                            storage_path=path,
                            created_at=now,
                        )
                        for path in paths
                    ]
                )
                return event

        return await self._retrying(attempt)

    # -- reads --------------------------------------------------------------------

    async def get_ticket_view(
        self,
        ticket_id: UUID,
        *,
        include_events: bool = False,
        actor: Actor | None = None,
    ) -> TicketView:
        async def attempt() -> TicketView:
            async with self.repository.transaction() as store:
                ticket = await store.get_ticket(ticket_id)
                if ticket is None:
                    raise NotFoundError(f"Ticket {ticket_id} not found")
                if actor is not None:
                    await self._require_visibility(store, ticket, actor)
                events = await store.list_events(ticket.id)
                sla_state = await store.get_sla_state(ticket.id)
                reading = None
                if sla_state is not None:
                    policy = await _require_policy(store, sla_state.sla_policy_id)
                    reading = timer.read(sla_state, policy, now=self.clock(), stopped_at=ticket.stopped_at)
                return TicketView(
                    ticket=ticket,
                    sla=reading,
                    reopen_count=reopen_count(events),
                    events=events if include_events else [],
                )

        return await self._retrying(attempt)

    async def list_events(self, ticket_id: UUID, *, actor: Actor | None = None) -> list[TicketEvent]:
        view = await self.get_ticket_view(ticket_id, include_events=True, actor=actor)
        return view.events


def media_prefix(ticket: Ticket) -> str:
    return f"hotels/{ticket.hotel_id}/tickets/{ticket.id}/"


def validate_media_paths(ticket: Ticket, paths: Sequence[str]) -> None:
    """Reject storage references outside the ticket's own upload folder."""

    prefix = media_prefix(ticket)
    for path in paths:
        if not path.startswith(prefix) or len(path) == len(prefix):
            raise ValidationError(f"Invalid media path: {path}")
        if any(part in ("", ".", "..") for part in path[len(prefix):].split("/")):
            raise ValidationError(f"Invalid media path: {path}")


def _apply_sla_effect(effect: SLAEffect, state: SLAState, policy: SLAPolicy, now: datetime) -> SLAState:
    if effect is SLAEffect.START:
        return timer.start(state, now)
    if effect is SLAEffect.PAUSE:
        return timer.pause(state, now)
    if effect is SLAEffect.RESUME or effect is SLAEffect.CLOSE_PAUSE:
        return timer.resume(state, now)
    if effect is SLAEffect.STOP:
        return timer.stop(state, policy, now)
    if effect is SLAEffect.RESET:
        return timer.reset(state, policy)
    return state


async def _require_policy(store: TicketStore, policy_id: UUID) -> SLAPolicy:
    policy = await store.get_policy(policy_id)
    if policy is None:
        raise NotFoundError(f"SLA policy {policy_id} not found")
    return policy


def _parse_enum(enum_cls, value, name: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip())
    except ValueError as exc:
        raise ValidationError(f"Invalid {name}: {value}") from exc
