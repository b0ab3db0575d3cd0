from __future__ import annotations


class HotelOpsError(RuntimeError):
    """Base error for hotel operations failures."""

    code = "hotelops_error"


class ValidationError(HotelOpsError):
    """Raised for malformed input such as a location that is not room XOR zone."""

    code = "validation_error"


class NotFoundError(HotelOpsError):
    """Raised when a ticket, service, stay or SLA policy could not be located."""

    code = "not_found"


class InvalidTransitionError(HotelOpsError):
    """Raised when an action is not legal from the ticket's current state."""

    code = "invalid_transition"


class StaleStateError(InvalidTransitionError):
    """Raised when the ticket changed underneath the caller; re-fetch and retry."""

    code = "stale_state"


class AuthorizationError(HotelOpsError):
    """Raised when the actor is not entitled to the requested action."""

    code = "forbidden"


class IdempotencyConflictError(HotelOpsError):
    """Raised when a request with the same idempotency key is still executing."""

    code = "idempotency_conflict"


class TransientStoreError(HotelOpsError):
    """Raised for lock contention or connection failures; safe to retry."""

    code = "transient_store_error"


class ItemProcessingError(HotelOpsError):
    """Raised when a single work-queue item fails; isolated to that item."""

    code = "item_processing_error"

    def __init__(self, message: str, *, item_key: str | None = None) -> None:
        super().__init__(message)
        self.item_key = item_key
