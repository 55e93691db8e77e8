"""Export job transactions to a spreadsheet target, degrading to CSV."""

from __future__ import annotations

import csv
import io
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Protocol
from urllib.parse import quote
from uuid import UUID

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from docportal.config import settings
from docportal.logger import get_logger, log_external_api
from docportal.models import BankAccount, Job, SyncStatus, Transaction
from docportal.schemas.export import ExportMode
from docportal.services.errors import ValidationError
from docportal.services.jobs import JobStateMachine
from docportal.services.sync import SyncTracker
from docportal.services.transactions import TransactionStore

logger = get_logger(__name__)

GOOGLE_SHEETS = "google_sheets"
CSV = "csv"
EXPORT_TARGETS = (GOOGLE_SHEETS, CSV)


EXPORT_COLUMNS = [
    "Date",
    "Description",
    "Amount",
    "Type",
    "Category",
    "Subcategory",
    "Confirmed",
    "Notes",
    "Invoice Number",
]

# The sheet carries one extra column keying each row to its transaction
SHEET_COLUMNS = [*EXPORT_COLUMNS, "Row ID"]
LAST_COLUMN = chr(ord("A") + len(SHEET_COLUMNS) - 1)


def export_row(txn: Transaction) -> list[str]:
    return [
        txn.txn_date.isoformat() if txn.txn_date else "",
        txn.original_description,
        f"{txn.amount:.2f}",
        "Debit" if txn.signed_is_debit else "Credit",
        txn.category or "",
        txn.subcategory or "",
        "Yes" if txn.user_confirmed else "No",
        txn.user_notes or "",
        txn.invoice_number or "",
    ]


def sheet_row(txn: Transaction) -> list[str]:
    return [*export_row(txn), str(txn.id)]


def build_csv(rows: Sequence[Transaction]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(EXPORT_COLUMNS)
    for txn in rows:
        writer.writerow(export_row(txn))
    return buffer.getvalue()


class ExportUnavailableError(Exception):
    """The target cannot be used right now (not configured, nothing to write to)."""


class SpreadsheetExporter(Protocol):
    @property
    def is_configured(self) -> bool: ...

    async def read_row_keys(self, spreadsheet_id: str, tab: str) -> list[str]: ...

    async def update_rows(self, spreadsheet_id: str, tab: str, rows: Mapping[int, list[str]]) -> dict[str, Any]: ...

    async def append_rows(self, spreadsheet_id: str, tab: str, rows: list[list[str]]) -> dict[str, Any]: ...

    async def clear(self, spreadsheet_id: str, tab: str) -> dict[str, Any]: ...

    def spreadsheet_url(self, spreadsheet_id: str) -> str: ...


def _a1(tab: str, cells: str) -> str:
    escaped = tab.replace("'", "''")
    return f"'{escaped}'!{cells}"


class GoogleSheetsExporter:
    """Small client for the Google Sheets v4 ``values`` API.

    Rows are addressed by the ``Row ID`` column so a changed transaction overwrites
    its earlier row instead of being appended again.
    """

    def __init__(
        self,
        *,
        access_token: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.access_token = settings.google_sheets_access_token if access_token is None else access_token
        self.base_url = (base_url or settings.google_sheets_base_url).rstrip("/")
        self.timeout = timeout or settings.google_sheets_timeout_seconds
        self.transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.access_token)

    def _client(self) -> httpx.AsyncClient:
        if not self.is_configured:
            raise ExportUnavailableError("Google Sheets access token not configured")
        return httpx.AsyncClient(
            timeout=self.timeout,
            transport=self.transport,
            headers={"Authorization": f"Bearer {self.access_token}"},
        )

    def _values_url(self, spreadsheet_id: str, a1_range: str, action: str = "") -> str:
        return f"{self.base_url}/{spreadsheet_id}/values/{quote(a1_range, safe='')}{action}"

    @log_external_api("google_sheets")
    async def read_row_keys(self, spreadsheet_id: str, tab: str) -> list[str]:
        """Row ID cells from the top of the tab; index 0 is sheet row 1."""
        key_column = _a1(tab, f"{LAST_COLUMN}:{LAST_COLUMN}")
        async with self._client() as client:
            response = await client.get(self._values_url(spreadsheet_id, key_column))
            response.raise_for_status()
            values = response.json().get("values") or []
        return [str(cells[0]) if cells else "" for cells in values]

    @log_external_api("google_sheets")
    async def update_rows(self, spreadsheet_id: str, tab: str, rows: Mapping[int, list[str]]) -> dict[str, Any]:
        data = [
            {"range": _a1(tab, f"A{number}:{LAST_COLUMN}{number}"), "values": [row]}
            for number, row in sorted(rows.items())
        ]
        async with self._client() as client:
            response = await client.post(
                f"{self.base_url}/{spreadsheet_id}/values:batchUpdate",
                json={"valueInputOption": "USER_ENTERED", "data": data},
            )
            response.raise_for_status()
            return response.json()

    @log_external_api("google_sheets")
    async def append_rows(self, spreadsheet_id: str, tab: str, rows: list[list[str]]) -> dict[str, Any]:
        async with self._client() as client:
            response = await client.post(
                self._values_url(spreadsheet_id, _a1(tab, "A1"), ":append"),
                params={"valueInputOption": "USER_ENTERED", "insertDataOption": "INSERT_ROWS"},
                json={"values": rows},
            )
            response.raise_for_status()
            return response.json()

    @log_external_api("google_sheets")
    async def clear(self, spreadsheet_id: str, tab: str) -> dict[str, Any]:
        async with self._client() as client:
            response = await client.post(
                self._values_url(spreadsheet_id, _a1(tab, f"A:{LAST_COLUMN}"), ":clear"), json={}
            )
            response.raise_for_status()
            return response.json()

    def spreadsheet_url(self, spreadsheet_id: str) -> str:
        return f"https://docs.google.com/spreadsheets/d/{spreadsheet_id}"


@dataclass
class ExportResult:
    target: str
    success: bool
    mode: ExportMode | None = None
    fallback: bool = False
    csv_available: bool = False
    url: str | None = None
    filename: str | None = None
    csv_content: str | None = None
    exported_count: int = 0
    updated_count: int = 0
    appended_count: int = 0
    message: str | None = None


class ExportService:
    def __init__(self, db: AsyncSession, exporters: Mapping[str, SpreadsheetExporter]) -> None:
        self.db = db
        self.exporters = exporters
        self.sync = SyncTracker(db)

    async def _destination(self, job: Job) -> tuple[str | None, str]:
        spreadsheet_id = job.spreadsheet_id
        tab = settings.google_sheets_default_tab
        if job.bank_account_id is not None:
            account = (
                await self.db.execute(select(BankAccount).where(BankAccount.id == job.bank_account_id))
            ).scalar_one_or_none()
            if account is not None:
                spreadsheet_id = spreadsheet_id or account.default_spreadsheet_id
                tab = account.spreadsheet_tab_name or tab
        return spreadsheet_id, tab

    @staticmethod
    def _csv_result(
        target: str, job: Job, rows: Sequence[Transaction], *, fallback: bool, message: str
    ) -> ExportResult:
        stem = job.original_filename.rsplit(".", 1)[0] or "transactions"
        return ExportResult(
            target=target,
            success=not fallback,
            fallback=fallback,
            csv_available=True,
            filename=f"{stem}-transactions.csv",
            csv_content=build_csv(rows),
            exported_count=0 if fallback else len(rows),
            message=message,
        )

    async def export_job(
        self,
        job_id: UUID,
        owner_id: UUID,
        target: str,
        *,
        mode: ExportMode = ExportMode.INCREMENTAL,
    ) -> ExportResult:
        """Export the job's transactions; spreadsheet trouble yields a CSV payload instead.

        Incremental exports only write rows that are not ``synced``. A row already on
        the sheet is overwritten in place, found by its Row ID. Full refresh clears the
        tab and writes every row. Flushes sync state changes; the caller commits.
        """
        if target not in EXPORT_TARGETS:
            raise ValidationError(f"Unknown export target: {target}. Supported: {', '.join(EXPORT_TARGETS)}")

        job = await JobStateMachine(self.db).get(job_id, owner_id)
        rows = await TransactionStore(self.db).list_for_job(job_id, owner_id)
        if target == CSV:
            return self._csv_result(target, job, rows, fallback=False, message="CSV export ready")

        exporter = self.exporters.get(target)
        spreadsheet_id, tab = await self._destination(job)
        if exporter is None or not exporter.is_configured:
            return self._fallback(target, job, rows, "Google Sheets is not configured")
        if not spreadsheet_id:
            return self._fallback(target, job, rows, "No spreadsheet is linked to this job or its bank account")

        if mode == ExportMode.FULL_REFRESH:
            batch = list(rows)
        else:
            batch = [txn for txn in rows if txn.sync_status != SyncStatus.SYNCED]
        if not batch:
            return ExportResult(
                target=target,
                success=True,
                mode=mode,
                url=exporter.spreadsheet_url(spreadsheet_id),
                message="All transactions are already synced",
            )

        ids = [txn.id for txn in batch]
        try:
            if mode == ExportMode.FULL_REFRESH:
                await exporter.clear(spreadsheet_id, tab)
                await exporter.append_rows(spreadsheet_id, tab, [SHEET_COLUMNS, *(sheet_row(txn) for txn in batch)])
                updated, appended = 0, len(batch)
            else:
                updated, appended = await self._write_incremental(exporter, spreadsheet_id, tab, batch)
        except ExportUnavailableError as exc:
            return self._fallback(target, job, rows, str(exc))
        except httpx.HTTPError as exc:
            await self.sync.mark_failed(ids, str(exc) or type(exc).__name__)
            return self._fallback(target, job, rows, "Spreadsheet export failed")

        stamp = await self.sync.mark_exported(ids)
        job.spreadsheet_id = spreadsheet_id
        job.last_exported_at = stamp or job.last_exported_at
        await self.db.flush()
        logger.info(
            "Job exported",
            job_id=str(job_id),
            target=target,
            mode=mode.value,
            updated=updated,
            appended=appended,
        )
        return ExportResult(
            target=target,
            success=True,
            mode=mode,
            url=exporter.spreadsheet_url(spreadsheet_id),
            exported_count=len(batch),
            updated_count=updated,
            appended_count=appended,
            message=f"Exported {len(batch)} transactions",
        )

    @staticmethod
    async def _write_incremental(
        exporter: SpreadsheetExporter, spreadsheet_id: str, tab: str, batch: Sequence[Transaction]
    ) -> tuple[int, int]:
        keys = await exporter.read_row_keys(spreadsheet_id, tab)
        row_numbers = {key: number for number, key in enumerate(keys, start=1) if key}

        updates: dict[int, list[str]] = {}
        appends: list[list[str]] = [] if keys else [SHEET_COLUMNS]
        for txn in batch:
            number = row_numbers.get(str(txn.id))
            if number is None:
                appends.append(sheet_row(txn))
            else:
                updates[number] = sheet_row(txn)

        if updates:
            await exporter.update_rows(spreadsheet_id, tab, updates)
        if appends:
            await exporter.append_rows(spreadsheet_id, tab, appends)
        return len(updates), len(batch) - len(updates)

    def _fallback(self, target: str, job: Job, rows: Sequence[Transaction], reason: str) -> ExportResult:
        logger.warning(
            "Export target unavailable, falling back to CSV", job_id=str(job.id), target=target, reason=reason
        )
        message = f"{reason}. CSV download is available instead."
        return self._csv_result(target, job, rows, fallback=True, message=message)
