from __future__ import annotations

import json
from datetime import date
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
from fakes import DummyPool, RecordingDispatcher, make_connection

from hotelops.core.errors import ItemProcessingError, ValidationError
from hotelops.queue import BatchRunner, ItemOutcome
from hotelops.queue.imports import BookingImportQueue, ImportRow, normalize_phone, summarize_group

HOTEL = uuid4()


def _row(row_id: int, *, primary: bool = False, hotel=HOTEL, **data) -> ImportRow:
    return ImportRow(id=row_id, booking_reference="BK-1", hotel_id=hotel, is_primary_guest=primary, row_data=data)


def _record(row: ImportRow, *, as_text: bool = False) -> dict:
    return {
        "id": row.id,
        "booking_reference": row.booking_reference,
        "hotel_id": row.hotel_id,
        "is_primary_guest": row.is_primary_guest,
        "row_data": json.dumps(row.row_data) if as_text else row.row_data,
    }


def test_normalize_phone_keeps_digits():
    assert normalize_phone("+34 (600) 123-456") == "34600123456"
    assert normalize_phone("n/a") is None
    assert normalize_phone(None) is None


def test_summarize_group_folds_rows():
    rows = [
        _row(2, room_seq=2, adults="2", children=1, check_in="2026-05-02", check_out="2026-05-06"),
        _row(
            1,
            primary=True,
            guest_name=" Ana Ruiz ",
            guest_phone="+34 600 111 222",
            guest_email="ana@example.com",
            room_seq=1,
            adults=2,
            check_in="2026-05-01",
            check_out="2026-05-05",
        ),
    ]

    summary = summarize_group(" BK-1 ", rows)

    assert summary.code == "BK-1"
    assert summary.hotel_id == HOTEL
    assert summary.guest_name == "Ana Ruiz"
    assert summary.phone == "34600111222"
    assert summary.email == "ana@example.com"
    assert summary.check_in == date(2026, 5, 1)
    assert summary.check_out == date(2026, 5, 6)
    assert summary.adults_total == 4
    assert summary.children_total == 1
    assert summary.rooms_total == 2
    assert summary.status == "CONFIRMED"


def test_summarize_group_uses_primary_booking_status():
    rows = [_row(1, primary=True, booking_status="cancelled"), _row(2, booking_status="CONFIRMED")]
    assert summarize_group("BK-1", rows).status == "CANCELLED"


@pytest.mark.parametrize(
    ("rows", "message"),
    [
        ([], "No rows"),
        ([_row(1)], "No primary guest for booking BK-1"),
        ([_row(1, primary=True, hotel=None)], "without hotel"),
        ([_row(1, primary=True), _row(2, hotel=uuid4())], "more than one hotel"),
        ([_row(1, primary=True, check_in="May 1st")], "Invalid check_in"),
        ([_row(1, primary=True, adults="two")], "Invalid adults"),
        ([_row(1, primary=True, check_in="2026-05-05", check_out="2026-05-01")], "checks out before"),
    ],
)
def test_summarize_group_rejects_bad_groups(rows, message):
    with pytest.raises(ItemProcessingError) as excinfo:
        summarize_group("BK-1", rows)
    assert message in str(excinfo.value)
    assert excinfo.value.item_key == "BK-1"


@pytest.mark.asyncio
async def test_claim_returns_distinct_references():
    connection = make_connection()
    connection.fetch = AsyncMock(
        return_value=[{"booking_reference": "BK-1"}, {"booking_reference": "BK-1"}, {"booking_reference": "BK-2"}]
    )
    queue = BookingImportQueue(DummyPool(connection))

    assert await queue.claim(5) == ["BK-1", "BK-2"]
    sql, limit, token = connection.fetch.await_args.args
    assert "pg_try_advisory_xact_lock" in sql
    assert (limit, token) == (5, queue.claim_token)


@pytest.mark.asyncio
async def test_process_upserts_booking_and_marks_rows_notified():
    connection = make_connection()
    booking_id = uuid4()
    primary = _row(1, primary=True, guest_name="Ana", guest_phone="600 111 222")
    connection.fetch = AsyncMock(return_value=[_record(primary, as_text=True)])
    connection.fetchval = AsyncMock(return_value=booking_id)
    notifier = RecordingDispatcher()
    queue = BookingImportQueue(DummyPool(connection), notifier=notifier)

    outcome = await queue.process("BK-1")

    assert outcome is ItemOutcome.PROCESSED
    upsert_args = connection.fetchval.await_args.args
    assert "ON CONFLICT (code)" in upsert_args[0]
    assert upsert_args[1:4] == ("BK-1", HOTEL, "Ana")
    marked = [call.args[3] for call in connection.execute.await_args_list if "UPDATE import_rows" in call.args[0]]
    assert marked == ["imported", "notified"]
    assert notifier.sent[0].channel == "whatsapp"
    assert notifier.sent[0].recipient == "600111222"
    assert notifier.sent[0].payload["booking_id"] == str(booking_id)


@pytest.mark.asyncio
async def test_failed_notification_leaves_rows_imported():
    connection = make_connection()
    primary = _row(1, primary=True, guest_email="ana@example.com")
    connection.fetch = AsyncMock(return_value=[_record(primary)])
    connection.fetchval = AsyncMock(return_value=uuid4())
    queue = BookingImportQueue(DummyPool(connection), notifier=RecordingDispatcher(fail=True))

    outcome = await queue.process("BK-1")

    assert outcome is ItemOutcome.PROCESSED
    marked = [call.args[3] for call in connection.execute.await_args_list if "UPDATE import_rows" in call.args[0]]
    assert marked == ["imported"]


@pytest.mark.asyncio
async def test_lost_notified_write_keeps_booking_imported():
    connection = make_connection()
    primary = _row(1, primary=True, guest_name="Ana", guest_phone="600 111 222")
    connection.fetch = AsyncMock(side_effect=[[{"booking_reference": "BK-1"}], [_record(primary)]])
    connection.fetchval = AsyncMock(return_value=uuid4())
    written = []

    async def execute(sql, *args):
        if "UPDATE import_rows" in sql:
            written.append(args[2])
            if args[2] == "notified":
                raise ConnectionResetError("connection lost")
        return "UPDATE 1"

    connection.execute = AsyncMock(side_effect=execute)
    queue = BookingImportQueue(DummyPool(connection), notifier=RecordingDispatcher())

    report = await BatchRunner(queue).run_once(10)

    assert (report.processed, report.failed) == (1, 0)
    assert written == ["imported", "notified"]
    notified = [call.args for call in connection.execute.await_args_list if call.args[3:4] == ("notified",)]
    # only rows already imported may move on to notified
    assert notified[0][5] == "imported"


@pytest.mark.asyncio
async def test_process_skips_group_reclaimed_elsewhere():
    connection = make_connection()
    connection.fetch = AsyncMock(return_value=[])
    queue = BookingImportQueue(DummyPool(connection))

    assert await queue.process("BK-9") is ItemOutcome.SKIPPED
    connection.fetchval.assert_not_awaited()


@pytest.mark.asyncio
async def test_group_without_primary_is_marked_error_as_a_whole():
    connection = make_connection()
    connection.fetch = AsyncMock(side_effect=[[{"booking_reference": "BK-1"}], [_record(_row(1)), _record(_row(2))]])
    queue = BookingImportQueue(DummyPool(connection))

    report = await BatchRunner(queue).run_once(10)

    assert report.failed == 1
    error_updates = [call.args for call in connection.execute.await_args_list if "UPDATE import_rows" in call.args[0]]
    assert len(error_updates) == 1
    _, reference, token, status, message, current = error_updates[0]
    assert (reference, token, status, current) == ("BK-1", queue.claim_token, "error", "processing")
    assert "No primary guest" in message
    # marks by reference and claim token, so every row of the group flips together
    assert "WHERE booking_reference = $1 AND claim_token = $2" in error_updates[0][0]


@pytest.mark.asyncio
async def test_booking_owned_by_other_hotel_fails_item():
    connection = make_connection()
    connection.fetch = AsyncMock(return_value=[_record(_row(1, primary=True))])
    connection.fetchval = AsyncMock(return_value=None)
    queue = BookingImportQueue(DummyPool(connection))

    with pytest.raises(ItemProcessingError):
        await queue.process("BK-1")


@pytest.mark.asyncio
async def test_ingest_booking_queues_rows():
    connection = make_connection()
    connection.fetchval = AsyncMock(return_value=None)
    queue = BookingImportQueue(DummyPool(connection))

    queued = await queue.ingest_booking(HOTEL, " BK-7 ", [{"guest_name": "Ana"}, {"guest_name": "Luis"}])

    assert queued
    sql, params = connection.executemany.await_args.args
    assert "INSERT INTO import_rows" in sql
    assert [p[2] for p in params] == [True, False]
    assert params[0][1] == "BK-7"
    assert json.loads(params[1][3]) == {"guest_name": "Luis"}


@pytest.mark.asyncio
async def test_ingest_booking_ignores_duplicate_open_group():
    connection = make_connection()
    connection.fetchval = AsyncMock(return_value=1)
    queue = BookingImportQueue(DummyPool(connection))

    assert not await queue.ingest_booking(HOTEL, "BK-7", [{"guest_name": "Ana"}])
    connection.executemany.assert_not_awaited()


@pytest.mark.asyncio
async def test_ingest_booking_validates_input():
    queue = BookingImportQueue(DummyPool(make_connection()))
    with pytest.raises(ValidationError):
        await queue.ingest_booking(HOTEL, "  ", [{"guest_name": "Ana"}])
    with pytest.raises(ValidationError):
        await queue.ingest_booking(HOTEL, "BK-1", [])


@pytest.mark.asyncio
async def test_reset_stuck_rows_reports_count():
    connection = make_connection()
    connection.execute = AsyncMock(return_value="UPDATE 3")
    queue = BookingImportQueue(DummyPool(connection))

    assert await queue.reset_stuck_rows(15) == 3
    sql, minutes = connection.execute.await_args.args
    assert "status = 'pending'" in sql
    assert minutes == 15
