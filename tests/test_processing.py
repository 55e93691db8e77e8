"""Background ingestion pipeline."""

from datetime import UTC, datetime
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from docportal.models import Document, Job, JobStatus, JobType, SyncStatus, Transaction
from docportal.services.errors import ExtractionError, JobErrorCode
from docportal.services.extraction import ItemFailure, SpreadsheetExtractionAdapter, UploadedFile
from docportal.services.jobs import JobStateMachine
from docportal.services.processing import IngestionPipeline, drain
from docportal.services.transactions import TransactionStore
from tests.factories import CannedInvoiceAdapter, FakeStorage, JobFactory, ScriptedAdapter, bank_row


async def _queued_job(db, user_id, **kwargs) -> Job:
    job = await JobFactory.create_async(db, user_id=user_id, status=JobStatus.QUEUED, **kwargs)
    await db.commit()
    return job


async def _reload(db, job: Job) -> Job | None:
    return await db.get(Job, job.id, populate_existing=True)


async def _row_count(db, job_id) -> int:
    return (await db.execute(select(func.count(Transaction.id)).where(Transaction.job_id == job_id))).scalar_one()


@pytest.mark.asyncio
async def test_rows_are_committed_in_batches_and_job_completes(db, session_maker, user_id):
    """GIVEN: A queued job and five confident rows with a batch size of two
    WHEN: The pipeline runs
    THEN: Every row is stored in order, auto-accepted, and the job completes"""
    job = await _queued_job(db, user_id)
    rows = [bank_row(f"TESCO STORES {n}", f"-{n}.00") for n in range(1, 6)]
    pipeline = IngestionPipeline(session_maker, ScriptedAdapter(rows), batch_size=2)

    await pipeline.run(job.id, [])

    job = await _reload(db, job)
    assert job.status == JobStatus.COMPLETED
    assert (job.total_items, job.processed_items, job.failed_items) == (5, 5, 0)
    assert job.status_message == "Extracted 5 items"

    stored = await TransactionStore(db).list_for_job(job.id, user_id)
    assert [txn.position for txn in stored] == [0, 1, 2, 3, 4]
    assert [txn.original_description for txn in stored] == [row.description for row in rows]
    assert all(txn.user_confirmed for txn in stored)


@pytest.mark.asyncio
async def test_low_confidence_rows_send_job_to_review(db, session_maker, user_id):
    """GIVEN: A queued job whose second row scored 0.3
    WHEN: The pipeline runs
    THEN: Only the confident row is confirmed and the job waits in review"""
    job = await _queued_job(db, user_id)
    rows = [bank_row("TESCO STORES 1", "-5.00"), bank_row("ACME WIDGETS", "-9.00", confidence_score=0.3)]

    await IngestionPipeline(session_maker, ScriptedAdapter(rows)).run(job.id, [])

    job = await _reload(db, job)
    assert job.status == JobStatus.REVIEWING
    assert job.status_message.endswith("awaiting review")
    confirmed = (
        await db.execute(
            select(Transaction.user_confirmed).where(Transaction.job_id == job.id).order_by(Transaction.position)
        )
    ).scalars().all()
    assert confirmed == [True, False]


@pytest.mark.asyncio
async def test_row_failures_are_counted_and_reported(db, session_maker, user_id):
    """GIVEN: An extraction with one unreadable row between two good ones
    WHEN: The pipeline runs
    THEN: The job completes with one failed item named in its status message"""
    job = await _queued_job(db, user_id)
    results = [
        bank_row("TESCO STORES 1", "-5.00"),
        ItemFailure(reference="statement.csv:row 3", reason="Unrecognized date: 'soon'"),
        bank_row("TESCO STORES 2", "-6.00"),
    ]

    await IngestionPipeline(session_maker, ScriptedAdapter(results), batch_size=10).run(job.id, [])

    job = await _reload(db, job)
    assert job.status == JobStatus.COMPLETED
    assert (job.total_items, job.processed_items, job.failed_items) == (3, 2, 1)
    assert "statement.csv:row 3" in job.status_message


@pytest.mark.asyncio
async def test_job_deleted_mid_run_discards_remaining_batches(db, session_maker, user_id):
    """GIVEN: A job deleted by the user while its second batch is extracting
    WHEN: The pipeline reaches its next commit
    THEN: Nothing is written for the deleted job"""
    job = await _queued_job(db, user_id)
    storage = FakeStorage()

    async def delete_job(index: int) -> None:
        if index == 2:
            async with session_maker() as session:
                await JobStateMachine(session).delete(job.id, user_id, storage)

    rows = [bank_row(f"TESCO STORES {n}", "-1.00") for n in range(4)]
    pipeline = IngestionPipeline(session_maker, ScriptedAdapter(rows, before_item=delete_job), batch_size=2)

    await pipeline.run(job.id, [])

    assert await _reload(db, job) is None
    assert await _row_count(db, job.id) == 0


@pytest.mark.asyncio
async def test_adapter_error_fails_job_and_keeps_committed_rows(db, session_maker, user_id):
    """GIVEN: An adapter that raises after three rows with a batch size of two
    WHEN: The pipeline runs
    THEN: The job fails with the adapter's code and keeps the committed batch"""
    job = await _queued_job(db, user_id)
    results = [
        bank_row("TESCO STORES 1", "-1.00"),
        bank_row("TESCO STORES 2", "-2.00"),
        bank_row("TESCO STORES 3", "-3.00"),
        ExtractionError("Vision service quota exhausted", code=JobErrorCode.OCR_FAILED),
    ]

    await IngestionPipeline(session_maker, ScriptedAdapter(results), batch_size=2).run(job.id, [])

    job = await _reload(db, job)
    assert job.status == JobStatus.FAILED
    assert job.error_code == JobErrorCode.OCR_FAILED.value
    assert job.error_message == "Vision service quota exhausted"
    assert job.processed_items == 2
    assert await _row_count(db, job.id) == 2


@pytest.mark.asyncio
async def test_header_only_spreadsheet_fails_with_parsing_error(db, session_maker, user_id):
    job = await _queued_job(db, user_id)
    file = UploadedFile(filename="empty.csv", content=b"Date,Description,Amount\n")

    await IngestionPipeline(session_maker, SpreadsheetExtractionAdapter()).run(job.id, [file])

    job = await _reload(db, job)
    assert job.status == JobStatus.FAILED
    assert job.error_code == JobErrorCode.PARSING_ERROR.value
    assert job.total_items == 0


@pytest.mark.asyncio
async def test_job_that_is_not_queued_is_left_alone(db, session_maker, user_id):
    """GIVEN: A job still in received
    WHEN: The pipeline is started for it
    THEN: It neither changes status nor stores rows"""
    job = await JobFactory.create_async(db, user_id=user_id, status=JobStatus.RECEIVED)
    await db.commit()

    await IngestionPipeline(session_maker, ScriptedAdapter([bank_row("TESCO", "-1.00")])).run(job.id, [])

    job = await _reload(db, job)
    assert job.status == JobStatus.RECEIVED
    assert await _row_count(db, job.id) == 0


@pytest.mark.asyncio
async def test_rows_added_after_export_are_pending_sync(db, session_maker, user_id):
    """GIVEN: A job that was already exported once
    WHEN: New rows are extracted into it
    THEN: They are marked pending so the next export picks them up"""
    job = await _queued_job(db, user_id, last_exported_at=datetime(2025, 2, 1, tzinfo=UTC))

    await IngestionPipeline(session_maker, ScriptedAdapter([bank_row("TESCO", "-1.00")])).run(job.id, [])

    statuses = (await db.execute(select(Transaction.sync_status).where(Transaction.job_id == job.id))).scalars().all()
    assert statuses == [SyncStatus.PENDING]


@pytest.mark.asyncio
async def test_invoice_batch_creates_documents_with_line_items(db, session_maker, user_id):
    job = await _queued_job(db, user_id, job_type=JobType.INVOICE_BATCH, file_type="pdf")
    adapter = CannedInvoiceAdapter(
        {
            "staples.pdf": {
                "vendor_name": "Staples",
                "document_date": "2025-01-20",
                "total": "45.00",
                "line_items": [
                    {"description": "Paper A4", "total": "15.00"},
                    {"description": "Toner", "total": "-30.00"},
                ],
            }
        }
    )
    files = [
        UploadedFile(filename="staples.pdf", content=b"%PDF-staples", storage_key="jobs/x/staples.pdf"),
        UploadedFile(filename="blurry.jpg", content=b"\xff\xd8blurry"),
    ]

    await IngestionPipeline(session_maker, adapter).run(job.id, files)

    job = await _reload(db, job)
    assert job.status == JobStatus.REVIEWING
    assert (job.processed_items, job.failed_items) == (1, 1)
    assert "blurry.jpg" in job.status_message

    document = (await db.execute(select(Document).where(Document.job_id == job.id))).scalar_one()
    assert document.vendor_name == "Staples"
    assert document.storage_key == "jobs/x/staples.pdf"

    lines = (
        await db.execute(
            select(Transaction).where(Transaction.document_id == document.id).order_by(Transaction.position)
        )
    ).scalars().all()
    assert [line.amount for line in lines] == [Decimal("15.00"), Decimal("30.00")]
    assert all(line.is_debit and not line.user_confirmed for line in lines)


@pytest.mark.asyncio
async def test_invoice_batch_with_nothing_readable_fails_with_ocr_code(db, session_maker, user_id):
    job = await _queued_job(db, user_id, job_type=JobType.INVOICE_BATCH, file_type="pdf")
    files = [UploadedFile(filename="blurry.jpg", content=b"\xff\xd8")]

    await IngestionPipeline(session_maker, CannedInvoiceAdapter({})).run(job.id, files)

    job = await _reload(db, job)
    assert job.status == JobStatus.FAILED
    assert job.error_code == JobErrorCode.OCR_FAILED.value
    assert "blurry.jpg" in job.error_message


@pytest.mark.asyncio
async def test_scheduled_runs_finish_on_drain(db, session_maker, user_id):
    job = await _queued_job(db, user_id)
    pipeline = IngestionPipeline(session_maker, ScriptedAdapter([bank_row("TESCO", "-1.00")]))

    task = pipeline.schedule(job.id, [], request_id="req-123")
    await drain()

    assert task.done()
    assert (await _reload(db, job)).status == JobStatus.COMPLETED
