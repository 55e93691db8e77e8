"""Job lifecycle: transitions, upload validation, submission and completion."""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from docportal.config import settings
from docportal.models import Job, JobStatus, JobType
from docportal.services.deduplication import DuplicateDetector, MatchType
from docportal.services.errors import ConflictError, DuplicateDetected, JobErrorCode, ValidationError
from docportal.services.extraction import UploadedFile
from docportal.services.jobs import (
    JobEvent,
    JobSnapshot,
    JobStateMachine,
    SubmitRequest,
    apply_event,
    validate_upload,
)
from docportal.services.storage import StorageError
from tests.factories import FakeStorage, JobFactory, TransactionFactory, statement_file


class TestApplyEvent:
    """Test suite for the pure job transition table."""

    @pytest.mark.parametrize(
        ("status", "event", "needs_review", "expected"),
        [
            (JobStatus.RECEIVED, JobEvent.ENQUEUE, False, JobStatus.QUEUED),
            (JobStatus.QUEUED, JobEvent.START, False, JobStatus.PROCESSING),
            (JobStatus.PROCESSING, JobEvent.FINISH, False, JobStatus.COMPLETED),
            (JobStatus.PROCESSING, JobEvent.FINISH, True, JobStatus.REVIEWING),
            (JobStatus.RECEIVED, JobEvent.FAIL, False, JobStatus.FAILED),
            (JobStatus.QUEUED, JobEvent.FAIL, False, JobStatus.FAILED),
            (JobStatus.PROCESSING, JobEvent.FAIL, False, JobStatus.FAILED),
            (JobStatus.REVIEWING, JobEvent.CONFIRM_ALL, False, JobStatus.COMPLETED),
        ],
    )
    def test_allowed_transitions(self, status, event, needs_review, expected):
        assert apply_event(status, event, needs_review=needs_review) == expected

    @pytest.mark.parametrize(
        ("status", "event"),
        [
            (JobStatus.RECEIVED, JobEvent.START),
            (JobStatus.QUEUED, JobEvent.FINISH),
            (JobStatus.COMPLETED, JobEvent.FAIL),
            (JobStatus.REVIEWING, JobEvent.FAIL),
            (JobStatus.FAILED, JobEvent.START),
            (JobStatus.COMPLETED, JobEvent.CONFIRM_ALL),
        ],
    )
    def test_rejected_transitions(self, status, event):
        with pytest.raises(ConflictError):
            apply_event(status, event)


class TestValidateUpload:
    """Test suite for upload validation before any job exists."""

    def test_spreadsheet_takes_one_file(self):
        files = [statement_file([]), statement_file([], filename="other.csv")]
        with pytest.raises(ValidationError, match="exactly one file"):
            validate_upload(JobType.SPREADSHEET, files)

    def test_rejects_wrong_extension(self):
        files = [UploadedFile(filename="receipt.png", content=b"\x89PNG")]
        with pytest.raises(ValidationError) as exc_info:
            validate_upload(JobType.SPREADSHEET, files)
        assert exc_info.value.code == JobErrorCode.INVALID_FILE_TYPE

    def test_rejects_empty_file(self):
        with pytest.raises(ValidationError, match="empty"):
            validate_upload(JobType.SPREADSHEET, [UploadedFile(filename="s.csv", content=b"")])

    def test_oversize_file_has_size_code(self, monkeypatch):
        monkeypatch.setattr(settings, "max_upload_bytes", 16)
        files = [UploadedFile(filename="big.pdf", content=b"x" * 17)]
        with pytest.raises(ValidationError) as exc_info:
            validate_upload(JobType.INVOICE_BATCH, files)
        assert exc_info.value.code == JobErrorCode.FILE_TOO_LARGE

    def test_invoice_batch_limit(self, monkeypatch):
        monkeypatch.setattr(settings, "max_invoice_files", 2)
        files = [UploadedFile(filename=f"inv-{i}.pdf", content=b"%PDF") for i in range(3)]
        with pytest.raises(ValidationError, match="Too many files"):
            validate_upload(JobType.INVOICE_BATCH, files)


def test_snapshot_carries_error_guidance():
    job = JobFactory.build(
        status=JobStatus.FAILED,
        error_code=JobErrorCode.PARSING_ERROR.value,
        error_message="No transactions found in file",
    )
    snapshot = JobSnapshot.from_job(job)
    assert snapshot.status == JobStatus.FAILED
    assert snapshot.suggested_action
    assert snapshot.retryable is True


@pytest.mark.asyncio
async def test_finish_without_items_fails_with_parsing_error(db, user_id):
    """GIVEN: A spreadsheet job that produced no rows
    WHEN: finish is called
    THEN: The job fails with PARSING_ERROR"""
    job = await JobFactory.create_async(db, user_id=user_id, status=JobStatus.PROCESSING, total_items=0)
    await JobStateMachine(db).finish(job)
    assert job.status == JobStatus.FAILED
    assert job.error_code == JobErrorCode.PARSING_ERROR.value


@pytest.mark.asyncio
async def test_finish_invoice_batch_without_items_fails_with_ocr_code(db, user_id):
    """GIVEN: An invoice batch where every document failed
    WHEN: finish is called
    THEN: The job fails with OCR_FAILED and the total counts the failed documents"""
    job = await JobFactory.create_async(
        db, user_id=user_id, job_type=JobType.INVOICE_BATCH, status=JobStatus.PROCESSING, failed_items=2
    )
    await JobStateMachine(db).finish(job)
    assert job.status == JobStatus.FAILED
    assert job.error_code == JobErrorCode.OCR_FAILED.value
    assert job.total_items == 2


@pytest.mark.asyncio
async def test_finish_routes_to_review_until_everything_is_confirmed(db, user_id):
    """GIVEN: A processing job with one confirmed and one unconfirmed row
    WHEN: finish runs and the last row is confirmed later
    THEN: The job waits in review and completes once nothing is unconfirmed"""
    job = await JobFactory.create_async(db, user_id=user_id, status=JobStatus.PROCESSING, processed_items=2)
    confirmed = await TransactionFactory.create_async(db, user_id=user_id, job_id=job.id, user_confirmed=True)
    pending = await TransactionFactory.create_async(
        db, user_id=user_id, job_id=job.id, user_confirmed=False, confidence_score=0.3
    )
    machine = JobStateMachine(db)

    await machine.finish(job)
    assert job.status == JobStatus.REVIEWING
    assert confirmed.user_confirmed

    assert await machine.complete_if_confirmed(job.id) is False
    pending.user_confirmed = True
    await db.flush()
    assert await machine.complete_if_confirmed(job.id) is True
    assert job.status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_low_confidence_rows_confirmed_during_processing_do_not_block_completion(db, user_id):
    """GIVEN: A processing job whose only row scored below the auto-accept threshold
    WHEN: The user confirms that row before extraction finishes
    THEN: finish completes the job instead of parking it in review with nothing to review"""
    job = await JobFactory.create_async(db, user_id=user_id, status=JobStatus.PROCESSING, processed_items=1)
    await TransactionFactory.create_async(
        db, user_id=user_id, job_id=job.id, user_confirmed=True, confidence_score=0.3
    )
    machine = JobStateMachine(db)

    await machine.finish(job)

    assert job.status == JobStatus.COMPLETED
    assert "awaiting review" not in job.status_message
    assert await machine.complete_if_confirmed(job.id) is False


@pytest.mark.asyncio
async def test_finish_completes_when_all_rows_auto_accepted(db, user_id):
    job = await JobFactory.create_async(db, user_id=user_id, status=JobStatus.PROCESSING, processed_items=1)
    await TransactionFactory.create_async(db, user_id=user_id, job_id=job.id, user_confirmed=True)
    await JobStateMachine(db).finish(job)
    assert job.status == JobStatus.COMPLETED
    assert job.total_items == 1


def test_record_progress_grows_total():
    job = JobFactory.build(status=JobStatus.PROCESSING, total_items=2)
    machine = JobStateMachine(db=None)
    machine.record_progress(job, processed=2, failed=1)
    assert (job.processed_items, job.failed_items, job.total_items) == (2, 1, 3)


def test_fail_truncates_message():
    job = JobFactory.build(status=JobStatus.PROCESSING)
    JobStateMachine(db=None).fail(job, JobErrorCode.TIMEOUT, "x" * 900)
    assert job.status == JobStatus.FAILED
    assert len(job.error_message) == 500


class TestSubmit:
    """Test suite for JobStateMachine.submit."""

    ROWS = [("2025-01-02", "TESCO STORES 1", "-12.00"), ("2025-01-03", "SHELL 44", "-40.00")]

    @pytest.mark.asyncio
    async def test_creates_received_job_and_stores_file(self, db, user_id):
        storage = FakeStorage()
        request = SubmitRequest(owner_id=user_id, job_type=JobType.SPREADSHEET, files=[statement_file(self.ROWS)])

        job = await JobStateMachine(db).submit(request, storage=storage)

        assert job.status == JobStatus.RECEIVED
        assert job.dedup_hash == job.file_hash
        assert job.normalized_filename == "statement"
        [stored_key] = storage.objects
        assert stored_key == f"jobs/{user_id}/{job.id}/statement.csv"
        assert job.files[0]["storage_key"] == stored_key

    @pytest.mark.asyncio
    async def test_storage_failure_creates_no_job(self, db, user_id):
        """GIVEN: Object storage that rejects the upload
        WHEN: A spreadsheet is submitted
        THEN: The error propagates and no job row is left behind"""
        storage = FakeStorage(fail_uploads_after=0)
        request = SubmitRequest(owner_id=user_id, job_type=JobType.SPREADSHEET, files=[statement_file(self.ROWS)])

        with pytest.raises(StorageError):
            await JobStateMachine(db).submit(request, storage=storage)

        count = (await db.execute(select(func.count(Job.id)))).scalar_one()
        assert count == 0

    @pytest.mark.asyncio
    async def test_partial_invoice_upload_failure_discards_stored_files(self, db, user_id):
        """GIVEN: Storage that fails on the second invoice of a batch
        WHEN: The batch is submitted
        THEN: The first stored file is deleted again"""
        storage = FakeStorage(fail_uploads_after=1)
        files = [UploadedFile(filename=f"inv-{i}.pdf", content=f"%PDF-{i}".encode()) for i in range(2)]
        request = SubmitRequest(owner_id=user_id, job_type=JobType.INVOICE_BATCH, files=files)

        with pytest.raises(StorageError):
            await JobStateMachine(db).submit(request, storage=storage)

        assert storage.objects == {}
        assert len(storage.deleted) == 1

    @pytest.mark.asyncio
    async def test_exact_duplicate_is_rejected_then_forced(self, db, user_id):
        """GIVEN: A job already submitted for the same file
        WHEN: The file is submitted again, then resubmitted with force and a reason
        THEN: The first attempt is rejected as an exact duplicate and the forced job records what it duplicates"""
        storage = FakeStorage()
        machine = JobStateMachine(db)
        first = await machine.submit(
            SubmitRequest(owner_id=user_id, job_type=JobType.SPREADSHEET, files=[statement_file(self.ROWS)]),
            storage=storage,
            detector=DuplicateDetector(db),
        )

        with pytest.raises(DuplicateDetected) as exc_info:
            await machine.submit(
                SubmitRequest(owner_id=user_id, job_type=JobType.SPREADSHEET, files=[statement_file(self.ROWS)]),
                storage=storage,
                detector=DuplicateDetector(db),
            )
        assert exc_info.value.candidate.match_type == MatchType.EXACT
        assert exc_info.value.candidate.existing_job_id == first.id

        forced = await machine.submit(
            SubmitRequest(
                owner_id=user_id,
                job_type=JobType.SPREADSHEET,
                files=[statement_file(self.ROWS)],
                force=True,
                force_reason="Bank re-issued the statement",
            ),
            storage=storage,
            detector=DuplicateDetector(db),
        )
        assert forced.forced is True
        assert forced.dedup_hash is None
        assert forced.duplicate_of_job_id == first.id
        assert forced.force_reason == "Bank re-issued the statement"
        assert forced.file_hash == first.file_hash

    @pytest.mark.asyncio
    async def test_same_bytes_for_another_owner_is_not_a_duplicate(self, db, user_id):
        from uuid import uuid4

        storage = FakeStorage()
        machine = JobStateMachine(db)
        for owner in (user_id, uuid4()):
            job = await machine.submit(
                SubmitRequest(owner_id=owner, job_type=JobType.SPREADSHEET, files=[statement_file(self.ROWS)]),
                storage=storage,
                detector=DuplicateDetector(db),
            )
            assert job.user_id == owner

    @pytest.mark.asyncio
    async def test_unknown_bank_account_is_not_found(self, db, user_id):
        from uuid import uuid4

        from docportal.services.errors import NotFoundError

        request = SubmitRequest(
            owner_id=user_id,
            job_type=JobType.SPREADSHEET,
            files=[statement_file(self.ROWS)],
            bank_account_id=uuid4(),
        )
        with pytest.raises(NotFoundError):
            await JobStateMachine(db).submit(request, storage=FakeStorage())


@pytest.mark.asyncio
async def test_list_jobs_filters_by_owner_and_status(db, user_id):
    from uuid import uuid4

    await JobFactory.create_async(db, user_id=user_id, status=JobStatus.COMPLETED)
    await JobFactory.create_async(db, user_id=user_id, status=JobStatus.FAILED)
    await JobFactory.create_async(db, user_id=uuid4(), status=JobStatus.COMPLETED)

    jobs, total = await JobStateMachine(db).list_jobs(user_id)
    assert total == 2
    completed, total_completed = await JobStateMachine(db).list_jobs(user_id, status=JobStatus.COMPLETED)
    assert total_completed == 1
    assert completed[0].status == JobStatus.COMPLETED
    assert all(job.user_id == user_id for job in jobs)


@pytest.mark.asyncio
async def test_delete_removes_rows_and_files(db, user_id):
    """GIVEN: A job with transactions and one stored file
    WHEN: The job is deleted
    THEN: The job is gone and its stored file is removed"""
    storage = FakeStorage()
    storage.objects["jobs/a/statement.csv"] = b"data"
    job = await JobFactory.create_async(
        db,
        user_id=user_id,
        status=JobStatus.COMPLETED,
        files=[{"filename": "statement.csv", "storage_key": "jobs/a/statement.csv"}],
    )
    await TransactionFactory.create_async(db, user_id=user_id, job_id=job.id, amount=Decimal("-5.00"))
    await db.commit()

    await JobStateMachine(db).delete(job.id, user_id, storage)

    remaining = (await db.execute(select(func.count(Job.id)))).scalar_one()
    assert remaining == 0
    assert storage.deleted == ["jobs/a/statement.csv"]


@pytest.mark.asyncio
async def test_bulk_delete_reports_missing_ids(db, user_id):
    from uuid import uuid4

    job = await JobFactory.create_async(db, user_id=user_id, period_start=date(2025, 1, 1))
    await db.commit()
    missing = uuid4()

    deleted, not_found = await JobStateMachine(db).bulk_delete([job.id, missing], user_id, FakeStorage())
    assert deleted == [job.id]
    assert not_found == [missing]
