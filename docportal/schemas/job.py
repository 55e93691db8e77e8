"""Pydantic schemas for ingestion jobs."""

from datetime import date, datetime
from uuid import UUID

from pydantic import BaseModel, Field

from docportal.models import JobStatus, JobType
from docportal.schemas.base import BaseResponse, ListResponse
from docportal.services.deduplication import MatchType


class JobResponse(BaseResponse):
    """Job status snapshot; polling it has no side effects."""

    id: UUID
    job_type: JobType
    status: JobStatus
    status_message: str | None
    original_filename: str
    file_type: str
    bank_account_id: UUID | None
    total_items: int | None
    processed_items: int
    failed_items: int
    error_code: str | None
    error_message: str | None
    suggested_action: str | None = None
    retryable: bool | None = None
    forced: bool
    force_reason: str | None
    duplicate_of_job_id: UUID | None
    period_start: date | None
    period_end: date | None
    spreadsheet_id: str | None
    last_exported_at: datetime | None
    created_at: datetime
    updated_at: datetime


JobListResponse = ListResponse[JobResponse]


class JobAcceptedResponse(BaseModel):
    job_id: UUID
    status: JobStatus
    message: str = "Upload accepted; poll the job for progress"


class DuplicateResponse(BaseModel):
    """Body of a 409 returned when the duplicate gate stops an upload."""

    is_duplicate: bool = True
    match_type: MatchType
    existing_job_id: UUID | None = None
    existing_document_id: UUID | None = None
    similarity_score: float | None = None
    matching_count: int | None = None
    total_transactions_in_candidate: int | None = None
    message: str


class BulkDeleteRequest(BaseModel):
    job_ids: list[UUID] = Field(min_length=1, max_length=100)


class BulkDeleteResponse(BaseModel):
    deleted: list[UUID]
    not_found: list[UUID]
