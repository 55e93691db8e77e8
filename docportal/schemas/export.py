"""Pydantic schemas for export and sync status."""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel

from docportal.models import SyncStatus


class ExportMode(str, Enum):
    """How a spreadsheet export treats rows already on the sheet."""

    INCREMENTAL = "incremental"  # write unsynced rows, replacing their earlier copy in place
    FULL_REFRESH = "full_refresh"  # clear the tab and rewrite every row


class ExportResponse(BaseModel):
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


class SyncStatusResponse(BaseModel):
    job_id: UUID
    status: SyncStatus
    counts: dict[SyncStatus, int]
    last_synced_at: datetime | None
