from .models import CreatedTicket, EventType, Location, Ticket, TicketEvent, TicketPriority, TicketView
from .repository import TicketRepository
from .service import TicketService, TransitionParams
from .state import TicketAction, TicketStateMachine, TicketStatus

__all__ = [
    "CreatedTicket",
    "EventType",
    "Location",
    "Ticket",
    "TicketAction",
    "TicketEvent",
    "TicketPriority",
    "TicketRepository",
    "TicketService",
    "TicketStateMachine",
    "TicketStatus",
    "TicketView",
    "TransitionParams",
]
