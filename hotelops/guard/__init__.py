from .audit import AuditEntry, AuditTrail, PostgresAuditSink
from .idempotency import GuardedResponse, IdempotencyGuard, PostgresIdempotencyStore
from .mutation import MutationGuard, RequestContext

__all__ = [
    "AuditEntry",
    "AuditTrail",
    "GuardedResponse",
    "IdempotencyGuard",
    "MutationGuard",
    "PostgresAuditSink",
    "PostgresIdempotencyStore",
    "RequestContext",
]
