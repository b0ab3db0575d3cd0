from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Mapping, Sequence
from uuid import UUID, uuid4

import asyncpg

from hotelops.core.best_effort import run_best_effort
from hotelops.core.errors import ItemProcessingError, ValidationError
from hotelops.notifications import Notification, NotificationDispatcher, send_best_effort
from hotelops.services.postgres import store_errors, transaction

from .base import ItemOutcome

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"[^0-9]")


class ImportRowStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    IMPORTED = "imported"
    NOTIFIED = "notified"
    ERROR = "error"


@dataclass(slots=True)
class ImportRow:
    id: int
    booking_reference: str
    hotel_id: UUID | None
    is_primary_guest: bool
    row_data: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class BookingSummary:
    """One booking aggregated from all rows that share a booking reference."""

    code: str
    hotel_id: UUID
    guest_name: str | None
    phone: str | None
    email: str | None
    check_in: date | None
    check_out: date | None
    adults_total: int
    children_total: int
    rooms_total: int
    status: str = "CONFIRMED"


def _parse_date(value: Any, *, field_name: str, reference: str) -> date | None:
    if value in (None, ""):
        return None
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError as exc:
        raise ItemProcessingError(f"Invalid {field_name} '{value}' for booking {reference}", item_key=reference) from exc


def _parse_int(value: Any, default: int, *, field_name: str, reference: str) -> int:
    if value in (None, ""):
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ItemProcessingError(f"Invalid {field_name} '{value}' for booking {reference}", item_key=reference) from exc


def normalize_phone(value: Any) -> str | None:
    digits = _NON_DIGITS.sub("", str(value or ""))
    return digits or None


def summarize_group(reference: str, rows: Sequence[ImportRow]) -> BookingSummary:
    """Fold a booking group into one booking.

    A group without a primary-guest row is rejected as a whole; the caller marks
    every row of the group as errored.
    """

    code = reference.strip()
    if not code:
        raise ItemProcessingError("booking_reference missing", item_key=reference)
    if not rows:
        raise ItemProcessingError(f"No rows found for booking {code}", item_key=code)

    hotels = {row.hotel_id for row in rows}
    if None in hotels:
        raise ItemProcessingError(f"Import row without hotel for booking {code}", item_key=code)
    if len(hotels) != 1:
        raise ItemProcessingError(f"Booking {code} spans more than one hotel", item_key=code)

    primaries = [row for row in rows if row.is_primary_guest]
    if not primaries:
        raise ItemProcessingError(f"No primary guest for booking {code}", item_key=code)
    primary = min(primaries, key=lambda row: row.id).row_data

    check_ins = [d for d in (_parse_date(r.row_data.get("check_in"), field_name="check_in", reference=code) for r in rows) if d]
    check_outs = [d for d in (_parse_date(r.row_data.get("check_out"), field_name="check_out", reference=code) for r in rows) if d]
    check_in = min(check_ins) if check_ins else None
    check_out = max(check_outs) if check_outs else None
    if check_in and check_out and check_out < check_in:
        raise ItemProcessingError(f"Booking {code} checks out before it checks in", item_key=code)

    rooms = {str(r.row_data.get("room_seq") or r.row_data.get("room_number") or 1) for r in rows}
    statuses = [str(r.row_data["booking_status"]) for r in rows if r.row_data.get("booking_status")]
    status = str(primary.get("booking_status") or (statuses[-1] if statuses else "CONFIRMED"))

    email = str(primary.get("guest_email") or primary.get("email") or "").strip() or None
    return BookingSummary(
        code=code,
        hotel_id=next(iter(hotels)),  # type: ignore[arg-type]
        guest_name=(str(primary.get("guest_name") or "").strip() or None),
        phone=normalize_phone(primary.get("guest_phone") or primary.get("phone")),
        email=email,
        check_in=check_in,
        check_out=check_out,
        adults_total=sum(_parse_int(r.row_data.get("adults"), 1, field_name="adults", reference=code) for r in rows),
        children_total=sum(_parse_int(r.row_data.get("children"), 0, field_name="children", reference=code) for r in rows),
        rooms_total=len(rooms),
        status=status.upper(),
    )


class BookingImportQueue:
    """Claim-based queue over pending import rows, one item per booking group."""

    name = "imports"

    _CLAIM_GROUPS_SQL = """
    WITH candidates AS (
        SELECT booking_reference, MIN(id) AS first_id
        FROM import_rows
        WHERE status = 'pending'
        GROUP BY booking_reference
        ORDER BY first_id
        LIMIT $1 * 4
    ),
    locked AS (
        SELECT booking_reference
        FROM candidates
        WHERE pg_try_advisory_xact_lock(hashtextextended('import:' || booking_reference, 0))
        ORDER BY first_id
        LIMIT $1
    )
    UPDATE import_rows AS r
    SET status = 'processing',
        claim_token = $2,
        claimed_at = now(),
        error_message = NULL
    FROM locked
    WHERE r.booking_reference = locked.booking_reference
      AND r.status = 'pending'
    RETURNING r.booking_reference
    """

    _SELECT_CLAIMED_ROWS_SQL = """
    SELECT id, booking_reference, hotel_id, is_primary_guest, row_data
    FROM import_rows
    WHERE booking_reference = $1 AND claim_token = $2 AND status = 'processing'
    ORDER BY id
    FOR UPDATE
    """

    _UPSERT_BOOKING_SQL = """
    INSERT INTO bookings (
        code, hotel_id, guest_name, phone, email, status, check_in, check_out,
        adults_total, children_total, rooms_total, source
    )
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, 'import')
    ON CONFLICT (code) DO UPDATE SET
        guest_name = EXCLUDED.guest_name,
        phone = EXCLUDED.phone,
        email = EXCLUDED.email,
        status = EXCLUDED.status,
        check_in = EXCLUDED.check_in,
        check_out = EXCLUDED.check_out,
        adults_total = EXCLUDED.adults_total,
        children_total = EXCLUDED.children_total,
        rooms_total = EXCLUDED.rooms_total,
        updated_at = now()
    WHERE bookings.hotel_id = EXCLUDED.hotel_id
    RETURNING id
    """

    _MARK_ROWS_SQL = """
    UPDATE import_rows
    SET status = $3,
        error_message = $4,
        processed_at = now()
    WHERE booking_reference = $1 AND claim_token = $2 AND status = $5
    """

    _INGEST_LOCK_SQL = "SELECT pg_advisory_xact_lock(hashtextextended('import:' || $1, 0))"

    _INGEST_OPEN_SQL = """
    SELECT 1
    FROM import_rows
    WHERE booking_reference = $1 AND status IN ('pending', 'processing')
    LIMIT 1
    """

    _INGEST_ROW_SQL = """
    INSERT INTO import_rows (hotel_id, booking_reference, is_primary_guest, row_data, source, status)
    VALUES ($1, $2, $3, $4::jsonb, $5, 'pending')
    """

    _RESET_STUCK_SQL = """
    UPDATE import_rows
    SET status = 'pending',
        claim_token = NULL,
        claimed_at = NULL
    WHERE status = 'processing'
      AND claimed_at < now() - make_interval(mins => $1)
    """

    def __init__(
        self,
        pool: asyncpg.Pool,
        *,
        notifier: NotificationDispatcher | None = None,
        lock_timeout_ms: int = 5000,
    ) -> None:
        self._pool = pool
        self._notifier = notifier
        self._lock_timeout_ms = lock_timeout_ms
        self.claim_token = uuid4()

    def item_key(self, item: str) -> str:
        return item

    async def claim(self, limit: int) -> Sequence[str]:
        async with transaction(self._pool, lock_timeout_ms=self._lock_timeout_ms) as connection:
            rows = await connection.fetch(self._CLAIM_GROUPS_SQL, limit, self.claim_token)
        return list(dict.fromkeys(str(row["booking_reference"]) for row in rows))

    async def process(self, item: str) -> ItemOutcome:
        async with transaction(self._pool, lock_timeout_ms=self._lock_timeout_ms) as connection:
            records = await connection.fetch(self._SELECT_CLAIMED_ROWS_SQL, item, self.claim_token)
            rows = [self._row_to_import_row(record) for record in records]
            if not rows:
                # reset by the watchdog and re-claimed elsewhere
                return ItemOutcome.SKIPPED
            summary = summarize_group(item, rows)
            booking_id = await connection.fetchval(
                self._UPSERT_BOOKING_SQL,
                summary.code,
                summary.hotel_id,
                summary.guest_name,
                summary.phone,
                summary.email,
                summary.status,
                summary.check_in,
                summary.check_out,
                summary.adults_total,
                summary.children_total,
                summary.rooms_total,
            )
            if booking_id is None:
                raise ItemProcessingError(f"Booking {summary.code} belongs to another hotel", item_key=item)
            await connection.execute(
                self._MARK_ROWS_SQL,
                item,
                self.claim_token,
                ImportRowStatus.IMPORTED.value,
                None,
                ImportRowStatus.PROCESSING.value,
            )

        delivered = await send_best_effort(
            self._notifier,
            Notification(
                kind="booking.imported",
                channel="whatsapp" if summary.phone else "email",
                hotel_id=summary.hotel_id,
                recipient=summary.phone or summary.email,
                payload={"booking_id": str(booking_id), "booking_code": summary.code},
            ),
        )
        if delivered:
            # the booking is committed; a lost status write must not fail the item
            await run_best_effort(
                "imports.mark_notified",
                self._mark_rows,
                item,
                ImportRowStatus.NOTIFIED,
                None,
                current=ImportRowStatus.IMPORTED,
            )
        return ItemOutcome.PROCESSED

    async def mark_failed(self, item: str, error: ItemProcessingError) -> None:
        await self._mark_rows(item, ImportRowStatus.ERROR, str(error)[:1000], current=ImportRowStatus.PROCESSING)

    async def _mark_rows(
        self,
        reference: str,
        status: ImportRowStatus,
        message: str | None,
        *,
        current: ImportRowStatus,
    ) -> None:
        async with store_errors():
            async with self._pool.acquire() as connection:
                await connection.execute(
                    self._MARK_ROWS_SQL, reference, self.claim_token, status.value, message, current.value
                )

    async def ingest_booking(
        self,
        hotel_id: UUID,
        booking_reference: str,
        rows: Sequence[Mapping[str, Any]],
        *,
        source: str = "api",
    ) -> bool:
        """Queue the rows of one booking unless that booking is already queued."""

        reference = (booking_reference or "").strip()
        if not reference:
            raise ValidationError("booking_reference is required")
        if not rows:
            raise ValidationError("At least one booking row is required")

        async with transaction(self._pool, lock_timeout_ms=self._lock_timeout_ms) as connection:
            await connection.execute(self._INGEST_LOCK_SQL, reference)
            if await connection.fetchval(self._INGEST_OPEN_SQL, reference) is not None:
                logger.info("Booking %s already queued; ignoring duplicate ingest", reference)
                return False
            await connection.executemany(
                self._INGEST_ROW_SQL,
                [
                    (
                        hotel_id,
                        reference,
                        bool(row.get("is_primary_guest", index == 0)),
                        json.dumps(dict(row), default=str),
                        source,
                    )
                    for index, row in enumerate(rows)
                ],
            )
        logger.info("Queued %d import rows for booking %s", len(rows), reference)
        return True

    async def reset_stuck_rows(self, older_than_minutes: int) -> int:
        """Return rows abandoned in ``processing`` to the pending pool."""

        async with store_errors():
            async with self._pool.acquire() as connection:
                result = await connection.execute(self._RESET_STUCK_SQL, older_than_minutes)
        count = int(result.split()[-1]) if result else 0
        if count:
            logger.warning("Re-queued %d import rows stuck in processing", count)
        return count

    @staticmethod
    def _row_to_import_row(row: Any) -> ImportRow:
        data = row["row_data"]
        if isinstance(data, str):
            data = json.loads(data)
        return ImportRow(
            id=int(row["id"]),
            booking_reference=str(row["booking_reference"]),
            hotel_id=row["hotel_id"],
            is_primary_guest=bool(row["is_primary_guest"]),
            row_data=dict(data or {}),
        )
