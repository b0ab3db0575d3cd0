from __future__ import annotations

from dataclasses import dataclass

from hotelops.core.config import Settings
from hotelops.guard import (
    AuditTrail,
    IdempotencyGuard,
    MutationGuard,
    PostgresAuditSink,
    PostgresIdempotencyStore,
)
from hotelops.notifications import (
    LoggingNotificationDispatcher,
    NotificationDispatcher,
    WebhookNotificationDispatcher,
)
from hotelops.queue import BoundedBatchWorker, QueueKind, QueueRegistry
from hotelops.queue.assignment import AutoAssignmentQueue, LeastLoadedStaffPolicy
from hotelops.queue.imports import BookingImportQueue
from hotelops.sla import SLAPolicyRepository
from hotelops.tickets import TicketRepository, TicketService

from .postgres import PostgresDatabase


@dataclass(slots=True)
class AppServices:
    """Everything request handlers and job runners need, built once per process."""

    settings: Settings
    database: PostgresDatabase
    notifier: NotificationDispatcher
    tickets: TicketService
    policies: SLAPolicyRepository
    guard: MutationGuard

    def assignment_queue(self) -> AutoAssignmentQueue:
        pool = self.database.pool
        return AutoAssignmentQueue(
            pool,
            self.tickets,
            LeastLoadedStaffPolicy(pool, max_load=self.settings.assignment_max_load),
            lease_seconds=self.settings.claim_lease_seconds,
            max_attempts=self.settings.assignment_max_attempts,
            lock_timeout_ms=self.settings.lock_timeout_ms,
        )

    def import_queue(self) -> BookingImportQueue:
        return BookingImportQueue(
            self.database.pool,
            notifier=self.notifier,
            lock_timeout_ms=self.settings.lock_timeout_ms,
        )

    def queue_registry(self) -> QueueRegistry:
        return QueueRegistry(
            {
                QueueKind.ASSIGNMENT: self.assignment_queue(),
                QueueKind.IMPORTS: self.import_queue(),
            }
        )

    def assignment_worker(self, registry: QueueRegistry | None = None) -> BoundedBatchWorker:
        # one bounded batch per tick so a single run cannot monopolise staff selection
        return (registry or self.queue_registry()).worker(
            QueueKind.ASSIGNMENT,
            batch_size=self.settings.queue_batch_size,
            budget_seconds=self.settings.worker_budget_seconds,
            delay_seconds=0,
            max_batches=1,
        )

    def import_worker(self, registry: QueueRegistry | None = None) -> BoundedBatchWorker:
        return (registry or self.queue_registry()).worker(
            QueueKind.IMPORTS,
            batch_size=self.settings.queue_batch_size,
            budget_seconds=self.settings.worker_budget_seconds,
            delay_seconds=self.settings.queue_batch_delay_seconds,
        )

    async def close(self) -> None:
        if isinstance(self.notifier, WebhookNotificationDispatcher):
            await self.notifier.close()
        await self.database.close()


async def build_services(settings: Settings) -> AppServices:
    database = PostgresDatabase(
        dsn=settings.postgres_dsn,
        min_size=settings.postgres_pool_min_size,
        max_size=settings.postgres_pool_max_size,
    )
    pool = await database.connect()

    notifier: NotificationDispatcher
    if settings.notification_webhook_url:
        notifier = WebhookNotificationDispatcher(
            settings.notification_webhook_url,
            timeout=settings.notification_timeout_seconds,
        )
    else:
        notifier = LoggingNotificationDispatcher()

    tickets = TicketService(
        repository=TicketRepository(pool, lock_timeout_ms=settings.lock_timeout_ms),
        notifier=notifier,
        max_reopens=settings.max_reopens,
        comment_max_length=settings.comment_max_length,
        retry_attempts=settings.transient_retry_attempts,
        retry_min_wait=settings.transient_retry_min_wait_seconds,
        retry_max_wait=settings.transient_retry_max_wait_seconds,
    )
    guard = MutationGuard(
        IdempotencyGuard(
            PostgresIdempotencyStore(pool),
            stale_after_seconds=settings.idempotency_stale_after_seconds,
            complete_attempts=settings.transient_retry_attempts,
            retry_min_wait=settings.transient_retry_min_wait_seconds,
            retry_max_wait=settings.transient_retry_max_wait_seconds,
        ),
        AuditTrail(PostgresAuditSink(pool)),
    )
    return AppServices(
        settings=settings,
        database=database,
        notifier=notifier,
        tickets=tickets,
        policies=SLAPolicyRepository(pool, lock_timeout_ms=settings.lock_timeout_ms),
        guard=guard,
    )


async def run_import_job(services: AppServices):
    """One bounded pass over the booking import queue, watchdog first."""

    await services.import_queue().reset_stuck_rows(services.settings.import_stuck_minutes)
    return await services.import_worker().run()


async def run_assignment_job(services: AppServices):
    return await services.assignment_worker().run()
