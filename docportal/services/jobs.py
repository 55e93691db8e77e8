"""Ingestion job state machine.

``received -> queued -> processing -> {reviewing | completed | failed}``

``reviewing``, ``completed`` and ``failed`` are terminal. The single exception is
``reviewing -> completed`` once every transaction of the job is confirmed.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, replace
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from fastapi.concurrency import run_in_threadpool
from sqlalchemy import delete as sa_delete
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from docportal.config import settings
from docportal.logger import get_logger
from docportal.models import (
    ACTIVE_STATUSES,
    BankAccount,
    Document,
    Job,
    JobStatus,
    JobType,
    ReconciliationMatch,
    Transaction,
)
from docportal.services.deduplication import (
    DuplicateCandidate,
    DuplicateDetector,
    MatchType,
    UploadFingerprint,
    preview_rows,
)
from docportal.services.errors import (
    ConflictError,
    DuplicateDetected,
    ExtractionError,
    JobErrorCode,
    NotFoundError,
    ValidationError,
    describe_error,
)
from docportal.services.extraction import (
    INVOICE_EXTENSIONS,
    SPREADSHEET_EXTENSIONS,
    ExtractionAdapter,
    UploadedFile,
)
from docportal.services.storage import StorageBackend, StorageError, build_storage_key

if TYPE_CHECKING:
    from docportal.services.processing import IngestionPipeline

logger = get_logger(__name__)

MAX_ERROR_MESSAGE_LENGTH = 500


class JobEvent(str, Enum):
    ENQUEUE = "enqueue"
    START = "start"
    FINISH = "finish"
    FAIL = "fail"
    CONFIRM_ALL = "confirm_all"


_TRANSITIONS: dict[tuple[JobStatus, JobEvent], JobStatus] = {
    (JobStatus.RECEIVED, JobEvent.ENQUEUE): JobStatus.QUEUED,
    (JobStatus.QUEUED, JobEvent.START): JobStatus.PROCESSING,
    (JobStatus.REVIEWING, JobEvent.CONFIRM_ALL): JobStatus.COMPLETED,
}


def apply_event(status: JobStatus, event: JobEvent, *, needs_review: bool = False) -> JobStatus:
    """Return the state ``event`` leads to from ``status``.

    Raises:
        ConflictError: The transition is not allowed.
    """
    if event == JobEvent.FAIL and status in ACTIVE_STATUSES:
        return JobStatus.FAILED
    if event == JobEvent.FINISH and status == JobStatus.PROCESSING:
        return JobStatus.REVIEWING if needs_review else JobStatus.COMPLETED
    target = _TRANSITIONS.get((status, event))
    if target is None:
        raise ConflictError(f"Cannot {event.value} a job that is {status.value}")
    return target


def validate_upload(job_type: JobType, files: Sequence[UploadedFile]) -> None:
    """Reject bad file counts, types and sizes before any job exists."""
    if job_type == JobType.SPREADSHEET:
        if len(files) != 1:
            raise ValidationError("Spreadsheet jobs take exactly one file")
        allowed = SPREADSHEET_EXTENSIONS
    else:
        if not files:
            raise ValidationError("Invoice batches need at least one file")
        if len(files) > settings.max_invoice_files:
            raise ValidationError(f"Too many files: at most {settings.max_invoice_files} per invoice batch")
        allowed = INVOICE_EXTENSIONS

    for file in files:
        if file.extension not in allowed:
            raise ValidationError(
                f"Unsupported file type for {file.filename}. Allowed: {', '.join(sorted(allowed))}"
            )
        if file.size == 0:
            raise ValidationError(f"File is empty: {file.filename}")
        if file.size > settings.max_upload_bytes:
            limit_mb = settings.max_upload_bytes // (1024 * 1024)
            raise ValidationError(
                f"File too large: {file.filename} exceeds {limit_mb}MB",
                code=JobErrorCode.FILE_TOO_LARGE,
            )


@dataclass
class SubmitRequest:
    owner_id: UUID
    job_type: JobType
    files: list[UploadedFile]
    bank_account_id: UUID | None = None
    tenant_id: UUID | None = None
    force: bool = False
    force_reason: str | None = None


@dataclass(frozen=True)
class JobSnapshot:
    """Read-only view of a job for polling."""

    id: UUID
    job_type: JobType
    status: JobStatus
    status_message: str | None
    total_items: int | None
    processed_items: int
    failed_items: int
    error_code: str | None
    error_message: str | None
    suggested_action: str | None
    retryable: bool | None

    @classmethod
    def from_job(cls, job: Job) -> JobSnapshot:
        info = describe_error(job.error_code) if job.error_code else None
        return cls(
            id=job.id,
            job_type=job.job_type,
            status=job.status,
            status_message=job.status_message,
            total_items=job.total_items,
            processed_items=job.processed_items,
            failed_items=job.failed_items,
            error_code=job.error_code,
            error_message=job.error_message,
            suggested_action=info.suggested_action if info else None,
            retryable=info.retryable if info else None,
        )


class JobStateMachine:
    """Owns every change to a job's status and progress counters."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, job_id: UUID, owner_id: UUID, *, for_update: bool = False) -> Job:
        query = select(Job).where(Job.id == job_id).where(Job.user_id == owner_id)
        if for_update:
            query = query.with_for_update()
        job = (await self.db.execute(query)).scalar_one_or_none()
        if job is None:
            raise NotFoundError("Job", job_id)
        return job

    async def snapshot(self, job_id: UUID, owner_id: UUID) -> JobSnapshot:
        return JobSnapshot.from_job(await self.get(job_id, owner_id))

    async def list_jobs(
        self,
        owner_id: UUID,
        *,
        status: JobStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Job], int]:
        query = select(Job).where(Job.user_id == owner_id)
        count_query = select(func.count(Job.id)).where(Job.user_id == owner_id)
        if status is not None:
            query = query.where(Job.status == status)
            count_query = count_query.where(Job.status == status)
        total = (await self.db.execute(count_query)).scalar_one()
        result = await self.db.execute(query.order_by(Job.created_at.desc()).offset(offset).limit(limit))
        return list(result.scalars().all()), total

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(
        self,
        request: SubmitRequest,
        *,
        storage: StorageBackend,
        detector: DuplicateDetector | None = None,
        adapter: ExtractionAdapter | None = None,
        pipeline: IngestionPipeline | None = None,
    ) -> Job:
        """Validate, run the duplicate gate, store the files and create the job.

        Commits the new job. With a pipeline the job is queued and extraction is scheduled
        in the background; the call never waits for extraction.

        Raises:
            ValidationError: Bad file type, count or size.
            DuplicateDetected: The upload matched an earlier one and ``force`` was not set.
            NotFoundError: ``bank_account_id`` does not belong to the owner.
            StorageError: The files could not be stored.
        """
        validate_upload(request.job_type, request.files)
        if request.bank_account_id is not None:
            await self._require_bank_account(request.owner_id, request.bank_account_id)

        preview = []
        if adapter is not None:
            try:
                preview = await adapter.preview(request.files)
            except ExtractionError as exc:
                # Unreadable files fail later inside the pipeline with a proper job error
                logger.info("Upload preview unavailable", error=str(exc))

        fingerprint = UploadFingerprint(
            owner_id=request.owner_id,
            job_type=request.job_type,
            filename=request.files[0].filename,
            file_hashes=[file.content_hash() for file in request.files],
            bank_account_id=request.bank_account_id,
            rows=preview_rows(preview),
        )
        duplicate = await detector.check(fingerprint) if detector is not None else None
        if duplicate is not None and not request.force:
            raise DuplicateDetected(duplicate)
        if request.force:
            logger.warning(
                "Duplicate gate bypassed by forced upload",
                owner_id=str(request.owner_id),
                duplicate_of_job_id=str(duplicate.existing_job_id) if duplicate and duplicate.existing_job_id else None,
                match_type=duplicate.match_type.value if duplicate else None,
                force_reason=request.force_reason,
            )

        job_id = uuid4()
        stored = await self._store_files(storage, request.owner_id, job_id, request.files)

        period_start, period_end = fingerprint.period
        upload_hash = fingerprint.upload_hash
        job = Job(
            id=job_id,
            user_id=request.owner_id,
            tenant_id=request.tenant_id,
            job_type=request.job_type,
            bank_account_id=request.bank_account_id,
            file_type=request.files[0].extension if len(request.files) == 1 else "batch",
            original_filename=request.files[0].filename
            if len(request.files) == 1
            else f"{len(request.files)} files",
            normalized_filename=fingerprint.normalized_filename,
            file_path=build_storage_key(request.owner_id, job_id, ""),
            files=[
                {
                    "filename": file.filename,
                    "storage_key": file.storage_key,
                    "file_hash": file.content_hash(),
                    "size": file.size,
                    "mime_type": file.mime_type,
                }
                for file in stored
            ],
            file_hash=upload_hash,
            dedup_hash=None if request.force else upload_hash,
            forced=request.force,
            force_reason=request.force_reason if request.force else None,
            duplicate_of_job_id=duplicate.existing_job_id if request.force and duplicate else None,
            period_start=period_start,
            period_end=period_end,
            status=JobStatus.RECEIVED,
            status_message="Upload received",
            processed_items=0,
            failed_items=0,
        )
        self.db.add(job)
        if pipeline is not None:
            self.transition(job, JobEvent.ENQUEUE)
            job.status_message = "Queued for extraction"

        try:
            await self.db.commit()
        except IntegrityError as exc:
            # Another upload of the same bytes won the race for (user_id, dedup_hash)
            await self.db.rollback()
            await self._discard_files(storage, [file.storage_key for file in stored if file.storage_key])
            existing_id = (
                await self.db.execute(
                    select(Job.id).where(Job.user_id == request.owner_id).where(Job.dedup_hash == upload_hash)
                )
            ).scalar_one_or_none()
            candidate = DuplicateCandidate(match_type=MatchType.EXACT, existing_job_id=existing_id)
            raise DuplicateDetected(candidate) from exc

        logger.info(
            "Job created",
            job_id=str(job.id),
            job_type=job.job_type.value,
            files=len(stored),
            forced=job.forced,
        )
        if pipeline is not None:
            pipeline.schedule(job.id, stored)
        return job

    async def _require_bank_account(self, owner_id: UUID, bank_account_id: UUID) -> None:
        found = (
            await self.db.execute(
                select(BankAccount.id).where(BankAccount.id == bank_account_id).where(BankAccount.user_id == owner_id)
            )
        ).scalar_one_or_none()
        if found is None:
            raise NotFoundError("Bank account", bank_account_id)

    async def _store_files(
        self,
        storage: StorageBackend,
        owner_id: UUID,
        job_id: UUID,
        files: Sequence[UploadedFile],
    ) -> list[UploadedFile]:
        stored: list[UploadedFile] = []
        try:
            for file in files:
                key = build_storage_key(owner_id, job_id, file.filename)
                await run_in_threadpool(
                    storage.upload_bytes,
                    key=key,
                    content=file.content,
                    content_type=file.mime_type,
                )
                stored.append(replace(file, storage_key=key))
        except StorageError:
            await self._discard_files(storage, [file.storage_key for file in stored if file.storage_key])
            raise
        return stored

    async def _discard_files(self, storage: StorageBackend, keys: Sequence[str]) -> None:
        for key in keys:
            try:
                await run_in_threadpool(storage.delete_object, key)
            except StorageError as exc:
                logger.warning("Failed to delete stored file", storage_key=key, error=str(exc))

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def transition(self, job: Job, event: JobEvent, *, needs_review: bool = False) -> Job:
        previous = job.status
        job.status = apply_event(job.status, event, needs_review=needs_review)
        logger.info(
            "Job status changed",
            job_id=str(job.id),
            job_event=event.value,
            from_status=previous.value,
            to_status=job.status.value,
        )
        return job

    async def advance(self, job_id: UUID, owner_id: UUID, event: JobEvent, *, needs_review: bool = False) -> Job:
        job = await self.get(job_id, owner_id, for_update=True)
        self.transition(job, event, needs_review=needs_review)
        await self.db.flush()
        return job

    def start(self, job: Job, total_items: int | None) -> Job:
        self.transition(job, JobEvent.START)
        job.total_items = total_items
        job.status_message = "Extracting"
        return job

    def record_progress(self, job: Job, processed: int, failed: int) -> Job:
        """Add a batch worth of counts; total_items grows if extraction outran the estimate."""
        job.processed_items += processed
        job.failed_items += failed
        done = job.processed_items + job.failed_items
        if job.total_items is not None and job.total_items < done:
            job.total_items = done
        return job

    async def finish(self, job: Job) -> Job:
        """Close a processing job once input is exhausted."""
        job.total_items = job.processed_items + job.failed_items
        if job.processed_items == 0:
            code = JobErrorCode.PARSING_ERROR if job.job_type == JobType.SPREADSHEET else JobErrorCode.OCR_FAILED
            message = (
                f"All {job.failed_items} items failed to extract"
                if job.failed_items
                else "No transactions found in file"
            )
            return self.fail(job, code, message)

        needs_review = await self._needs_review(job.id)
        self.transition(job, JobEvent.FINISH, needs_review=needs_review)
        message = f"Extracted {job.processed_items} items"
        if job.failed_items:
            message += f", {job.failed_items} failed"
        if needs_review:
            message += "; awaiting review"
        job.status_message = message
        return job

    async def _needs_review(self, job_id: UUID) -> bool:
        # Low-confidence rows are never inserted confirmed, so unconfirmed covers them
        unconfirmed = (
            await self.db.execute(
                select(func.count(Transaction.id))
                .where(Transaction.job_id == job_id)
                .where(Transaction.user_confirmed.is_(False))
            )
        ).scalar_one()
        return unconfirmed > 0

    def fail(self, job: Job, code: JobErrorCode, message: str) -> Job:
        """Mark an active job failed; rows already committed stay in place."""
        self.transition(job, JobEvent.FAIL)
        job.error_code = code.value
        job.error_message = message[:MAX_ERROR_MESSAGE_LENGTH]
        job.status_message = describe_error(code).user_message
        return job

    async def complete_if_confirmed(self, job_id: UUID) -> bool:
        """Move a reviewing job to completed once nothing is left unconfirmed."""
        job = await self.db.get(Job, job_id, with_for_update=True)
        if job is None or job.status != JobStatus.REVIEWING:
            return False
        if await self._needs_review(job_id):
            return False
        self.transition(job, JobEvent.CONFIRM_ALL)
        job.status_message = "All transactions confirmed"
        await self.db.flush()
        return True

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    async def delete(self, job_id: UUID, owner_id: UUID, storage: StorageBackend) -> None:
        """Delete a job with its matches, transactions, documents and stored files. Commits."""
        job = await self.get(job_id, owner_id, for_update=True)
        document_keys = (
            await self.db.execute(
                select(Document.storage_key).where(Document.job_id == job_id).where(Document.storage_key.is_not(None))
            )
        ).scalars().all()
        keys = {entry["storage_key"] for entry in job.files if entry.get("storage_key")}
        keys.update(document_keys)

        transaction_ids = select(Transaction.id).where(Transaction.job_id == job_id)
        document_ids = select(Document.id).where(Document.job_id == job_id)
        await self.db.execute(
            sa_delete(ReconciliationMatch)
            .where(
                or_(
                    ReconciliationMatch.transaction_id.in_(transaction_ids),
                    ReconciliationMatch.document_id.in_(document_ids),
                )
            )
            .execution_options(synchronize_session=False)
        )
        removed = await self.db.execute(
            sa_delete(Transaction).where(Transaction.job_id == job_id).execution_options(synchronize_session=False)
        )
        await self.db.execute(
            sa_delete(Document).where(Document.job_id == job_id).execution_options(synchronize_session=False)
        )
        await self.db.delete(job)
        await self.db.commit()

        logger.info("Job deleted", job_id=str(job_id), transactions=removed.rowcount, files=len(keys))
        await self._discard_files(storage, sorted(keys))

    async def bulk_delete(
        self, job_ids: Sequence[UUID], owner_id: UUID, storage: StorageBackend
    ) -> tuple[list[UUID], list[UUID]]:
        deleted: list[UUID] = []
        not_found: list[UUID] = []
        for job_id in dict.fromkeys(job_ids):
            try:
                await self.delete(job_id, owner_id, storage)
            except NotFoundError:
                not_found.append(job_id)
                continue
            deleted.append(job_id)
        return deleted, not_found


__all__ = [
    "JobEvent",
    "JobSnapshot",
    "JobStateMachine",
    "SubmitRequest",
    "apply_event",
    "validate_upload",
]
