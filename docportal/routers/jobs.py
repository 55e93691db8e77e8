"""Ingestion job API router."""

from pathlib import Path
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, File, Form, Query, Response, UploadFile, status
from fastapi.responses import JSONResponse

from docportal.database import create_session_maker_from_db
from docportal.deps import AdapterFactoryDep, CurrentTenantId, CurrentUserId, DbSession, Exporters, Storage
from docportal.logger import get_logger
from docportal.models import Job, JobStatus, JobType
from docportal.schemas import (
    BulkDeleteRequest,
    BulkDeleteResponse,
    DeleteGroupResponse,
    DuplicateResponse,
    ExportMode,
    ExportResponse,
    JobAcceptedResponse,
    JobListResponse,
    JobResponse,
    RecategorizeResponse,
    SyncStatusResponse,
    TransactionGroupResponse,
    TransactionResponse,
)
from docportal.services.deduplication import DuplicateCandidate, DuplicateDetector
from docportal.services.errors import (
    DuplicateDetected,
    JobErrorCode,
    NotFoundError,
    ValidationError,
    map_error_to_code,
)
from docportal.services.export import ExportService
from docportal.services.extraction import KeywordCategorizer, UploadedFile
from docportal.services.jobs import JobSnapshot, JobStateMachine, SubmitRequest
from docportal.services.processing import IngestionPipeline
from docportal.services.storage import StorageError
from docportal.services.sync import SyncTracker
from docportal.services.transactions import TransactionStore, group_by_document
from docportal.utils import raise_bad_request, raise_job_error, raise_not_found, raise_too_large

router = APIRouter(prefix="/jobs", tags=["jobs"])
logger = get_logger(__name__)


def _job_response(job: Job) -> JobResponse:
    snapshot = JobSnapshot.from_job(job)
    return JobResponse.model_validate(job).model_copy(
        update={"suggested_action": snapshot.suggested_action, "retryable": snapshot.retryable}
    )


def _duplicate_response(candidate: DuplicateCandidate) -> JSONResponse:
    body = DuplicateResponse(
        match_type=candidate.match_type,
        existing_job_id=candidate.existing_job_id,
        existing_document_id=candidate.existing_document_id,
        similarity_score=candidate.similarity_score,
        matching_count=candidate.matching_count,
        total_transactions_in_candidate=candidate.total_transactions_in_candidate,
        message=candidate.message,
    )
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=body.model_dump(mode="json"))


async def _read_upload(upload: UploadFile) -> UploadedFile:
    content = await upload.read()
    return UploadedFile(
        filename=Path(upload.filename or "upload").name,
        content=content,
        content_type=upload.content_type,
    )


@router.post(
    "",
    response_model=JobAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={status.HTTP_409_CONFLICT: {"model": DuplicateResponse}},
)
async def submit_job(
    db: DbSession,
    user_id: CurrentUserId,
    tenant_id: CurrentTenantId,
    storage: Storage,
    adapter_factory: AdapterFactoryDep,
    files: Annotated[list[UploadFile], File(description="Bank export or invoice files")],
    job_type: Annotated[JobType, Form()] = JobType.SPREADSHEET,
    bank_account_id: Annotated[UUID | None, Form()] = None,
    force_reason: Annotated[str | None, Form(max_length=500)] = None,
    force: Annotated[bool, Query(description="Bypass the duplicate gate")] = False,
) -> JobAcceptedResponse | JSONResponse:
    """Accept an upload and start extraction in the background.

    Returns as soon as the job is queued; poll ``GET /jobs/{id}`` for progress.
    """
    logger.info(
        "Upload received",
        job_type=job_type.value,
        files=len(files),
        bank_account_id=str(bank_account_id) if bank_account_id else None,
        force=force,
    )
    uploaded = [await _read_upload(upload) for upload in files]
    adapter = adapter_factory(job_type)
    pipeline = IngestionPipeline(create_session_maker_from_db(db), adapter)
    request = SubmitRequest(
        owner_id=user_id,
        job_type=job_type,
        files=uploaded,
        bank_account_id=bank_account_id,
        tenant_id=tenant_id,
        force=force,
        force_reason=force_reason,
    )

    try:
        job = await JobStateMachine(db).submit(
            request,
            storage=storage,
            detector=DuplicateDetector(db),
            adapter=adapter,
            pipeline=pipeline,
        )
    except ValidationError as exc:
        if exc.code == JobErrorCode.FILE_TOO_LARGE:
            raise_too_large(str(exc), cause=exc)
        raise_bad_request(str(exc), cause=exc)
    except DuplicateDetected as exc:
        logger.info("Upload rejected as duplicate", match_type=exc.candidate.match_type.value)
        return _duplicate_response(exc.candidate)
    except NotFoundError as exc:
        raise_not_found(exc.resource, cause=exc)
    except StorageError as exc:
        raise_job_error(map_error_to_code(exc), cause=exc)

    return JobAcceptedResponse(job_id=job.id, status=job.status)


@router.get("", response_model=JobListResponse)
async def list_jobs(
    db: DbSession,
    user_id: CurrentUserId,
    status_filter: Annotated[JobStatus | None, Query(alias="status")] = None,
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> JobListResponse:
    jobs, total = await JobStateMachine(db).list_jobs(user_id, status=status_filter, limit=limit, offset=offset)
    return JobListResponse(items=[_job_response(job) for job in jobs], total=total)


@router.post("/bulk-delete", response_model=BulkDeleteResponse)
async def bulk_delete_jobs(
    payload: BulkDeleteRequest,
    db: DbSession,
    user_id: CurrentUserId,
    storage: Storage,
) -> BulkDeleteResponse:
    deleted, not_found = await JobStateMachine(db).bulk_delete(payload.job_ids, user_id, storage)
    return BulkDeleteResponse(deleted=deleted, not_found=not_found)


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(job_id: UUID, db: DbSession, user_id: CurrentUserId) -> JobResponse:
    try:
        job = await JobStateMachine(db).get(job_id, user_id)
    except NotFoundError as exc:
        raise_not_found("Job", cause=exc)
    return _job_response(job)


@router.delete("/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_job(job_id: UUID, db: DbSession, user_id: CurrentUserId, storage: Storage) -> Response:
    try:
        await JobStateMachine(db).delete(job_id, user_id, storage)
    except NotFoundError as exc:
        raise_not_found("Job", cause=exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/{job_id}/transactions",
    response_model=list[TransactionResponse] | list[TransactionGroupResponse],
)
async def list_job_transactions(
    job_id: UUID,
    db: DbSession,
    user_id: CurrentUserId,
    grouped: Annotated[bool, Query(description="Collapse invoice line items into one row")] = False,
) -> list[TransactionResponse] | list[TransactionGroupResponse]:
    try:
        rows = await TransactionStore(db).list_for_job(job_id, user_id)
    except NotFoundError as exc:
        raise_not_found("Job", cause=exc)
    if grouped:
        return [TransactionGroupResponse.model_validate(group) for group in group_by_document(rows)]
    return [TransactionResponse.model_validate(txn) for txn in rows]


@router.delete("/{job_id}/transactions", response_model=DeleteGroupResponse)
async def delete_transaction_group(
    job_id: UUID,
    db: DbSession,
    user_id: CurrentUserId,
    document_id: Annotated[UUID, Query()],
) -> DeleteGroupResponse:
    try:
        deleted = await TransactionStore(db).delete_group(job_id, document_id, user_id)
    except NotFoundError as exc:
        raise_not_found(exc.resource, cause=exc)
    await db.commit()
    return DeleteGroupResponse(deleted=deleted)


@router.post("/{job_id}/recategorize", response_model=RecategorizeResponse)
async def recategorize_job(job_id: UUID, db: DbSession, user_id: CurrentUserId) -> RecategorizeResponse:
    try:
        updated = await TransactionStore(db).recategorize(job_id, user_id, KeywordCategorizer())
    except NotFoundError as exc:
        raise_not_found("Job", cause=exc)
    await db.commit()
    logger.info("Job recategorized", job_id=str(job_id), updated=updated)
    return RecategorizeResponse(updated=updated)


@router.post("/{job_id}/export/{target}", response_model=ExportResponse)
async def export_job(
    job_id: UUID,
    target: str,
    db: DbSession,
    user_id: CurrentUserId,
    exporters: Exporters,
    mode: Annotated[ExportMode, Query(description="Write unsynced rows only, or rewrite the whole tab")] = (
        ExportMode.INCREMENTAL
    ),
) -> ExportResponse:
    """Export to the target; an unavailable target answers with a CSV payload instead."""
    try:
        result = await ExportService(db, exporters).export_job(job_id, user_id, target, mode=mode)
    except ValidationError as exc:
        raise_bad_request(str(exc), cause=exc)
    except NotFoundError as exc:
        raise_not_found("Job", cause=exc)
    await db.commit()
    return ExportResponse.model_validate(result, from_attributes=True)


@router.get("/{job_id}/sync-status", response_model=SyncStatusResponse)
async def get_sync_status(job_id: UUID, db: DbSession, user_id: CurrentUserId) -> SyncStatusResponse:
    try:
        await JobStateMachine(db).get(job_id, user_id)
    except NotFoundError as exc:
        raise_not_found("Job", cause=exc)
    summary = await SyncTracker(db).job_status(job_id)
    return SyncStatusResponse.model_validate(summary, from_attributes=True)
