"""Sync tracking and spreadsheet export."""

import json
import re
from datetime import timedelta
from decimal import Decimal

import httpx
import pytest

from docportal.models import SyncStatus, utcnow
from docportal.schemas import ExportMode, TransactionUpdate
from docportal.services.errors import ValidationError
from docportal.services.export import (
    CSV,
    EXPORT_COLUMNS,
    GOOGLE_SHEETS,
    SHEET_COLUMNS,
    ExportService,
    GoogleSheetsExporter,
    build_csv,
    sheet_row,
)
from docportal.services.sync import SyncTracker, aggregate
from docportal.services.transactions import TransactionStore
from tests.factories import BankAccountFactory, JobFactory, TransactionFactory


@pytest.mark.parametrize(
    ("statuses", "expected"),
    [
        ([], SyncStatus.NONE),
        ([SyncStatus.NONE, SyncStatus.NONE], SyncStatus.NONE),
        ([SyncStatus.SYNCED, SyncStatus.SYNCED], SyncStatus.SYNCED),
        ([SyncStatus.SYNCED, SyncStatus.PENDING], SyncStatus.PENDING),
        ([SyncStatus.SYNCED, SyncStatus.FAILED], SyncStatus.PENDING),
        ([SyncStatus.NONE, SyncStatus.SYNCED], SyncStatus.PENDING),
    ],
)
def test_aggregate(statuses, expected):
    assert aggregate(statuses) == expected


def test_mark_dirty_only_touches_synced_rows():
    synced = TransactionFactory.build(sync_status=SyncStatus.SYNCED)
    never = TransactionFactory.build(sync_status=SyncStatus.NONE)

    assert SyncTracker.mark_dirty(synced) is True
    assert synced.sync_status == SyncStatus.PENDING
    assert SyncTracker.mark_dirty(never) is False
    assert never.sync_status == SyncStatus.NONE


def test_build_csv():
    rows = [
        TransactionFactory.build(original_description="Coffee, large", amount=Decimal("-3.50"), user_confirmed=True),
        TransactionFactory.build(original_description="Refund", amount=Decimal("12.00"), is_debit=False),
    ]
    lines = build_csv(rows).splitlines()

    assert lines[0] == ",".join(EXPORT_COLUMNS)
    assert lines[1] == '2025-01-15,"Coffee, large",-3.50,Debit,Uncategorized,,Yes,,'
    assert lines[2].startswith("2025-01-15,Refund,12.00,Credit,")


class TestSyncTracker:
    """Test suite for per-row sync state and job aggregates."""

    @pytest.mark.asyncio
    async def test_export_stamps_never_move_backwards(self, db, user_id):
        job = await JobFactory.create_async(db, user_id=user_id)
        future = utcnow() + timedelta(hours=1)
        ahead = await TransactionFactory.create_async(db, user_id=user_id, job_id=job.id, last_synced_at=future)
        fresh = await TransactionFactory.create_async(db, user_id=user_id, job_id=job.id)

        stamp = await SyncTracker(db).mark_exported([ahead.id, fresh.id])

        assert stamp > future
        assert ahead.sync_status == fresh.sync_status == SyncStatus.SYNCED

    @pytest.mark.asyncio
    async def test_mark_exported_with_nothing_to_mark(self, db):
        assert await SyncTracker(db).mark_exported([]) is None

    @pytest.mark.asyncio
    async def test_job_status_counts(self, db, user_id):
        job = await JobFactory.create_async(db, user_id=user_id)
        for status in (SyncStatus.SYNCED, SyncStatus.SYNCED, SyncStatus.FAILED):
            await TransactionFactory.create_async(db, user_id=user_id, job_id=job.id, sync_status=status)

        result = await SyncTracker(db).job_status(job.id)

        assert result.status == SyncStatus.PENDING
        assert result.counts == {
            SyncStatus.NONE: 0,
            SyncStatus.PENDING: 0,
            SyncStatus.SYNCED: 2,
            SyncStatus.FAILED: 1,
        }
        assert result.last_synced_at is None


class FakeSheet:
    """MockTransport handler backed by an in-memory grid of sheet rows."""

    def __init__(self, status_code: int = 200) -> None:
        self.status_code = status_code
        self.rows: list[list[str]] = []
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status_code >= 400:
            return httpx.Response(self.status_code, json={"error": {"message": "backend error"}})
        if request.method == "GET":
            return httpx.Response(200, json={"values": [[row[-1]] for row in self.rows]})

        body = json.loads(request.content)
        path = request.url.path
        if path.endswith(":append"):
            self.rows.extend(body["values"])
            return httpx.Response(200, json={"updates": {"updatedRows": len(body["values"])}})
        if path.endswith(":batchUpdate"):
            for entry in body["data"]:
                number = int(re.search(r"!A(\d+):", entry["range"]).group(1))
                self.rows[number - 1] = entry["values"][0]
            return httpx.Response(200, json={"totalUpdatedRows": len(body["data"])})
        if path.endswith(":clear"):
            self.rows.clear()
            return httpx.Response(200, json={})
        return httpx.Response(404, json={"error": {"message": f"unexpected {path}"}})

    def row_ids(self) -> list[str]:
        return [row[-1] for row in self.rows[1:]]


def _sheets(handler: FakeSheet, access_token: str = "sheets-token") -> dict:
    return {GOOGLE_SHEETS: GoogleSheetsExporter(access_token=access_token, transport=httpx.MockTransport(handler))}


async def _exportable_job(db, user_id, *, spreadsheet_id: str | None = "sheet-123", rows: int = 2):
    account = await BankAccountFactory.create_async(
        db, user_id=user_id, default_spreadsheet_id=spreadsheet_id, spreadsheet_tab_name="Ledger"
    )
    job = await JobFactory.create_async(db, user_id=user_id, bank_account_id=account.id)
    txns = [
        await TransactionFactory.create_async(db, user_id=user_id, job_id=job.id, position=n) for n in range(rows)
    ]
    return job, txns


class TestIncrementalExport:
    """Test suite for Google Sheets exports keyed by Row ID."""

    @pytest.mark.asyncio
    async def test_first_export_writes_header_and_rows(self, db, user_id):
        """GIVEN: A job with two never-synced rows and an empty sheet
        WHEN: The job is exported to Google Sheets
        THEN: A header and both rows are appended to the account's tab and the rows become synced"""
        job, txns = await _exportable_job(db, user_id)
        sheet = FakeSheet()

        result = await ExportService(db, _sheets(sheet)).export_job(job.id, user_id, GOOGLE_SHEETS)

        assert result.success is True
        assert result.fallback is False
        assert result.mode == ExportMode.INCREMENTAL
        assert (result.exported_count, result.updated_count, result.appended_count) == (2, 0, 2)
        assert result.url == "https://docs.google.com/spreadsheets/d/sheet-123"

        assert sheet.rows[0] == SHEET_COLUMNS
        assert sheet.rows[1] == sheet_row(txns[0])
        assert sheet.row_ids() == [str(txn.id) for txn in txns]

        read, append = sheet.requests
        assert read.method == "GET"
        assert "sheet-123" in str(append.url)
        assert "Ledger" in append.url.path
        assert append.headers["Authorization"] == "Bearer sheets-token"
        assert append.url.params["valueInputOption"] == "USER_ENTERED"

        assert all(txn.sync_status == SyncStatus.SYNCED for txn in txns)
        assert job.spreadsheet_id == "sheet-123"
        assert job.last_exported_at is not None

    @pytest.mark.asyncio
    async def test_re_export_without_changes_writes_nothing(self, db, user_id):
        """GIVEN: A job whose rows were all exported
        WHEN: It is exported again with nothing edited
        THEN: The sheet is left alone and no row is duplicated"""
        job, _ = await _exportable_job(db, user_id)
        sheet = FakeSheet()
        service = ExportService(db, _sheets(sheet))
        await service.export_job(job.id, user_id, GOOGLE_SHEETS)
        calls = len(sheet.requests)

        again = await service.export_job(job.id, user_id, GOOGLE_SHEETS)

        assert again.success is True
        assert again.exported_count == 0
        assert again.message == "All transactions are already synced"
        assert len(sheet.requests) == calls
        assert len(sheet.rows) == 3

    @pytest.mark.asyncio
    async def test_edited_row_replaces_its_sheet_row(self, db, user_id):
        """GIVEN: An exported job where one row is then edited
        WHEN: The job is exported again
        THEN: Only the edited row is rewritten, in place, and the sheet keeps one row per transaction"""
        job, txns = await _exportable_job(db, user_id)
        sheet = FakeSheet()
        service = ExportService(db, _sheets(sheet))
        await service.export_job(job.id, user_id, GOOGLE_SHEETS)

        edited = await TransactionStore(db).update(
            txns[1].id, user_id, TransactionUpdate(category="Travel", amount=Decimal("-42.00"))
        )
        assert edited.sync_status == SyncStatus.PENDING

        result = await service.export_job(job.id, user_id, GOOGLE_SHEETS)

        assert (result.exported_count, result.updated_count, result.appended_count) == (1, 1, 0)
        assert sheet.row_ids() == [str(txn.id) for txn in txns]
        assert sheet.rows[2][2] == "-42.00"
        assert sheet.rows[2][4] == "Travel"
        assert sheet.rows[1] == sheet_row(txns[0])

        update = sheet.requests[-1]
        assert update.url.path.endswith("/sheet-123/values:batchUpdate")
        assert json.loads(update.content)["data"][0]["range"] == "'Ledger'!A3:J3"
        assert edited.sync_status == SyncStatus.SYNCED

    @pytest.mark.asyncio
    async def test_rows_added_later_are_appended_below(self, db, user_id):
        """GIVEN: An exported job that gains a new row afterwards
        WHEN: The job is exported again
        THEN: Only the new row is appended and no second header is written"""
        job, txns = await _exportable_job(db, user_id)
        sheet = FakeSheet()
        service = ExportService(db, _sheets(sheet))
        await service.export_job(job.id, user_id, GOOGLE_SHEETS)
        late = await TransactionFactory.create_async(db, user_id=user_id, job_id=job.id, position=5)

        result = await service.export_job(job.id, user_id, GOOGLE_SHEETS)

        assert (result.updated_count, result.appended_count) == (0, 1)
        assert sheet.row_ids() == [str(txns[0].id), str(txns[1].id), str(late.id)]
        assert sum(row == SHEET_COLUMNS for row in sheet.rows) == 1

    @pytest.mark.asyncio
    async def test_full_refresh_rewrites_the_tab(self, db, user_id):
        """GIVEN: A synced job whose tab also holds stale rows
        WHEN: It is exported in full refresh mode
        THEN: The tab is cleared first and then holds exactly the header and every row"""
        job, txns = await _exportable_job(db, user_id)
        sheet = FakeSheet()
        service = ExportService(db, _sheets(sheet))
        await service.export_job(job.id, user_id, GOOGLE_SHEETS)
        sheet.rows.append(["stale"] * len(SHEET_COLUMNS))
        first_refresh_call = len(sheet.requests)

        result = await service.export_job(job.id, user_id, GOOGLE_SHEETS, mode=ExportMode.FULL_REFRESH)

        assert result.mode == ExportMode.FULL_REFRESH
        assert (result.exported_count, result.appended_count) == (2, 2)
        assert sheet.requests[first_refresh_call].url.path.endswith(":clear")
        assert sheet.rows == [SHEET_COLUMNS, *(sheet_row(txn) for txn in txns)]


class TestExportFallback:
    """Test suite for export failures and the CSV fallback."""

    @pytest.mark.asyncio
    async def test_http_failure_marks_rows_failed_and_offers_csv(self, db, user_id):
        """GIVEN: A Sheets backend answering HTTP 500
        WHEN: A job is exported
        THEN: Its rows are marked failed and a CSV payload is returned instead"""
        job, txns = await _exportable_job(db, user_id)

        result = await ExportService(db, _sheets(FakeSheet(status_code=500))).export_job(
            job.id, user_id, GOOGLE_SHEETS
        )

        assert result.success is False
        assert result.fallback is True
        assert result.csv_available is True
        assert result.csv_content.startswith("Date,Description")
        assert all(txn.sync_status == SyncStatus.FAILED for txn in txns)
        assert all(txn.sync_error for txn in txns)
        assert job.last_exported_at is None

    @pytest.mark.asyncio
    async def test_failed_rows_are_retried_on_the_next_export(self, db, user_id):
        """GIVEN: An export that failed mid-way
        WHEN: The backend recovers and the job is exported again
        THEN: The failed rows are written and become synced"""
        job, txns = await _exportable_job(db, user_id)
        sheet = FakeSheet(status_code=500)
        service = ExportService(db, _sheets(sheet))
        await service.export_job(job.id, user_id, GOOGLE_SHEETS)

        sheet.status_code = 200
        result = await service.export_job(job.id, user_id, GOOGLE_SHEETS)

        assert result.exported_count == 2
        assert sheet.row_ids() == [str(txn.id) for txn in txns]
        assert all(txn.sync_status == SyncStatus.SYNCED for txn in txns)
        assert all(txn.sync_error is None for txn in txns)

    @pytest.mark.asyncio
    async def test_unconfigured_target_falls_back_without_touching_rows(self, db, user_id):
        job, txns = await _exportable_job(db, user_id)
        sheet = FakeSheet()

        result = await ExportService(db, _sheets(sheet, access_token="")).export_job(job.id, user_id, GOOGLE_SHEETS)

        assert result.fallback is True
        assert "not configured" in result.message
        assert sheet.requests == []
        assert all(txn.sync_status == SyncStatus.NONE for txn in txns)

    @pytest.mark.asyncio
    async def test_missing_spreadsheet_falls_back(self, db, user_id):
        job, _ = await _exportable_job(db, user_id, spreadsheet_id=None)

        result = await ExportService(db, _sheets(FakeSheet())).export_job(job.id, user_id, GOOGLE_SHEETS)

        assert result.fallback is True
        assert result.filename == f"{job.original_filename.rsplit('.', 1)[0]}-transactions.csv"

    @pytest.mark.asyncio
    async def test_csv_target(self, db, user_id):
        job, _ = await _exportable_job(db, user_id, rows=3)

        result = await ExportService(db, {}).export_job(job.id, user_id, CSV)

        assert result.success is True
        assert result.exported_count == 3
        assert len(result.csv_content.splitlines()) == 4

    @pytest.mark.asyncio
    async def test_unknown_target(self, db, user_id):
        job, _ = await _exportable_job(db, user_id)
        with pytest.raises(ValidationError):
            await ExportService(db, {}).export_job(job.id, user_id, "dropbox")
