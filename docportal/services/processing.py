"""Background ingestion: drive a queued job through extraction.

Extraction runs outside any database transaction. Every ``batch_size`` results, one short
transaction re-reads the job under ``FOR UPDATE``, inserts the batch and updates counters.
A job that was deleted (or is no longer processing) makes the pipeline discard the batch
and stop.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from uuid import UUID, uuid4

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docportal.config import settings
from docportal.logger import async_log_timing, get_logger, log_exception
from docportal.models import Document, Job, JobStatus, JobType, SyncStatus, Transaction
from docportal.services.errors import map_error_to_code
from docportal.services.extraction import (
    ExtractedDocument,
    ExtractedTransaction,
    ExtractionAdapter,
    ExtractionResult,
    ItemFailure,
    UploadedFile,
)
from docportal.services.jobs import MAX_ERROR_MESSAGE_LENGTH, JobStateMachine
from docportal.services.transactions import TransactionStore

logger = get_logger(__name__)

MAX_FAILURE_REASONS = 3

_PENDING_TASKS: set[asyncio.Task[None]] = set()


def _track_task(task: asyncio.Task[None]) -> None:
    _PENDING_TASKS.add(task)
    task.add_done_callback(_PENDING_TASKS.discard)


async def drain() -> None:
    """Wait for every scheduled ingestion task (shutdown and tests)."""
    while _PENDING_TASKS:
        await asyncio.gather(*list(_PENDING_TASKS), return_exceptions=True)


@dataclass
class _RunState:
    position: int = 0
    failure_reasons: list[str] = field(default_factory=list)


class IngestionPipeline:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        adapter: ExtractionAdapter,
        *,
        batch_size: int | None = None,
        auto_accept_confidence: float | None = None,
    ) -> None:
        self.session_maker = session_maker
        self.adapter = adapter
        self.batch_size = batch_size or settings.ingest_batch_size
        self.auto_accept_confidence = (
            settings.auto_accept_confidence if auto_accept_confidence is None else auto_accept_confidence
        )

    def schedule(
        self,
        job_id: UUID,
        files: Sequence[UploadedFile],
        *,
        request_id: str | None = None,
    ) -> asyncio.Task[None]:
        request_id = request_id or structlog.contextvars.get_contextvars().get("request_id")
        task = asyncio.create_task(
            self.run(job_id, list(files), request_id=request_id),
            name=f"ingest-{job_id}",
        )
        _track_task(task)
        return task

    async def run(self, job_id: UUID, files: Sequence[UploadedFile], *, request_id: str | None = None) -> None:
        with structlog.contextvars.bound_contextvars(job_id=str(job_id), request_id=request_id):
            async with async_log_timing("ingest_job", logger=logger) as timing:
                try:
                    timing["outcome"] = await self._process(job_id, files)
                except Exception as exc:
                    timing["outcome"] = "failed"
                    log_exception(logger, exc, "Ingestion failed")
                    await self._fail(job_id, exc)

    async def _process(self, job_id: UUID, files: Sequence[UploadedFile]) -> str:
        total = await self.adapter.estimate_total(files)
        if not await self._start(job_id, total):
            return "skipped"

        state = _RunState()
        pending: list[ExtractionResult] = []
        async for result in self.adapter.extract(files):
            pending.append(result)
            if len(pending) >= self.batch_size:
                if not await self._apply_batch(job_id, pending, state):
                    return "discarded"
                pending = []
        if pending and not await self._apply_batch(job_id, pending, state):
            return "discarded"

        return await self._finish(job_id, state)

    async def _start(self, job_id: UUID, total: int | None) -> bool:
        async with self.session_maker() as session:
            job = await session.get(Job, job_id, with_for_update=True)
            if job is None or job.status != JobStatus.QUEUED:
                logger.warning("Job not startable", status=job.status.value if job else None)
                return False
            JobStateMachine(session).start(job, total)
            await session.commit()
        return True

    async def _apply_batch(self, job_id: UUID, results: Sequence[ExtractionResult], state: _RunState) -> bool:
        async with self.session_maker() as session:
            job = await session.get(Job, job_id, with_for_update=True, populate_existing=True)
            if job is None or job.status != JobStatus.PROCESSING:
                logger.warning(
                    "Discarding extraction results",
                    reason="job deleted" if job is None else f"job is {job.status.value}",
                    discarded=len(results),
                )
                return False

            documents: list[Document] = []
            rows: list[Transaction] = []
            processed = failed = 0
            for result in results:
                if isinstance(result, ItemFailure):
                    failed += 1
                    if len(state.failure_reasons) < MAX_FAILURE_REASONS:
                        state.failure_reasons.append(f"{result.reference}: {result.reason}")
                elif isinstance(result, ExtractedTransaction):
                    rows.append(self._bank_row(job, result, state.position))
                    state.position += 1
                    processed += 1
                elif isinstance(result, ExtractedDocument):
                    lines = result.transaction_lines()
                    if not lines:
                        failed += 1
                        if len(state.failure_reasons) < MAX_FAILURE_REASONS:
                            state.failure_reasons.append(f"{result.filename}: no line items or total found")
                        continue
                    document = self._document(job, result)
                    documents.append(document)
                    for line_row in self._line_rows(job, document, result):
                        line_row.position = state.position
                        state.position += 1
                        rows.append(line_row)
                    processed += 1

            session.add_all(documents)
            await TransactionStore(session).bulk_insert(rows)
            machine = JobStateMachine(session)
            machine.record_progress(job, processed, failed)
            job.status_message = self._progress_message(job, state)
            await session.commit()

        logger.info("Batch committed", processed=processed, failed=failed, rows=len(rows))
        return True

    async def _finish(self, job_id: UUID, state: _RunState) -> str:
        async with self.session_maker() as session:
            job = await session.get(Job, job_id, with_for_update=True, populate_existing=True)
            if job is None or job.status != JobStatus.PROCESSING:
                return "discarded"
            await JobStateMachine(session).finish(job)
            if state.failure_reasons:
                reasons = "; ".join(state.failure_reasons)
                if job.status == JobStatus.FAILED:
                    job.error_message = f"{job.error_message}: {reasons}"[:MAX_ERROR_MESSAGE_LENGTH]
                else:
                    job.status_message = f"{job.status_message} ({reasons})"
            await session.commit()
            return job.status.value

    async def _fail(self, job_id: UUID, exc: Exception) -> None:
        async with self.session_maker() as session:
            job = await session.get(Job, job_id, with_for_update=True, populate_existing=True)
            if job is None or job.status.is_terminal:
                return
            JobStateMachine(session).fail(job, map_error_to_code(exc), str(exc))
            await session.commit()

    @staticmethod
    def _progress_message(job: Job, state: _RunState) -> str:
        message = f"Processed {job.processed_items} of {job.total_items if job.total_items is not None else '?'} items"
        if job.failed_items:
            message += f"; {job.failed_items} failed ({'; '.join(state.failure_reasons)})"
        return message

    @staticmethod
    def _sync_status(job: Job) -> SyncStatus:
        # Rows added after an export have never reached the spreadsheet
        return SyncStatus.PENDING if job.last_exported_at is not None else SyncStatus.NONE

    def _bank_row(self, job: Job, item: ExtractedTransaction, position: int) -> Transaction:
        return Transaction(
            user_id=job.user_id,
            job_id=job.id,
            position=position,
            txn_date=item.txn_date,
            original_description=item.description,
            amount=item.amount,
            is_debit=item.is_debit,
            category=item.category,
            subcategory=item.subcategory,
            confidence_score=item.confidence_score,
            user_confirmed=job.job_type == JobType.SPREADSHEET
            and item.confidence_score >= self.auto_accept_confidence,
            invoice_number=item.invoice_number,
            supplier_id=item.supplier_id,
            sync_status=self._sync_status(job),
        )

    @staticmethod
    def _document(job: Job, item: ExtractedDocument) -> Document:
        return Document(
            id=uuid4(),
            user_id=job.user_id,
            job_id=job.id,
            original_filename=item.filename,
            storage_key=item.storage_key,
            mime_type=item.mime_type,
            file_hash=item.content_hash,
            vendor_name=item.vendor_name,
            invoice_number=item.invoice_number,
            po_number=item.po_number,
            order_number=item.order_number,
            document_date=item.document_date,
            total_amount=item.total_amount,
            subtotal_amount=item.subtotal_amount,
            tax_amount=item.tax_amount,
            fee_amount=item.fee_amount,
            shipping_amount=item.shipping_amount,
            currency=item.currency,
            line_items=[line.model_dump(mode="json") for line in item.line_items],
            field_confidence=item.field_confidence,
            extraction_methods=item.extraction_methods,
        )

    def _line_rows(self, job: Job, document: Document, item: ExtractedDocument) -> list[Transaction]:
        # Line items are spend: positive totals flagged as debits, always left for review
        return [
            Transaction(
                user_id=job.user_id,
                job_id=job.id,
                document_id=document.id,
                txn_date=item.document_date,
                original_description=line.description,
                amount=abs(line.total),
                is_debit=True,
                category=item.category,
                subcategory=item.subcategory,
                confidence_score=item.confidence_score,
                user_confirmed=False,
                invoice_number=item.invoice_number,
                sync_status=self._sync_status(job),
            )
            for line in item.transaction_lines()
        ]
