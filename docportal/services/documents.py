"""Document reads and cleanup."""

from __future__ import annotations

from uuid import UUID

from fastapi.concurrency import run_in_threadpool
from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from docportal.logger import get_logger
from docportal.models import Document, ReconciliationMatch, Transaction
from docportal.services.errors import NotFoundError
from docportal.services.jobs import JobStateMachine
from docportal.services.storage import StorageBackend, StorageError

logger = get_logger(__name__)


class DocumentStore:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get(self, document_id: UUID, owner_id: UUID) -> Document:
        document = (
            await self.db.execute(
                select(Document).where(Document.id == document_id).where(Document.user_id == owner_id)
            )
        ).scalar_one_or_none()
        if document is None:
            raise NotFoundError("Document", document_id)
        return document

    async def download_url(self, document: Document, storage: StorageBackend) -> str | None:
        if not document.storage_key:
            return None
        try:
            return await run_in_threadpool(storage.generate_presigned_url, key=document.storage_key)
        except StorageError as exc:
            logger.warning("Presigned URL unavailable", document_id=str(document.id), error=str(exc))
            return None

    async def delete(self, document_id: UUID, owner_id: UUID, storage: StorageBackend) -> int:
        """Delete a document with its line items and matches. Returns the removed line count.

        The stored file is removed only when no job owns it any more. Flushes; the caller commits.
        """
        document = await self.get(document_id, owner_id)
        job_id = document.job_id
        line_ids = select(Transaction.id).where(Transaction.document_id == document_id)

        await self.db.execute(
            delete(ReconciliationMatch)
            .where(
                or_(
                    ReconciliationMatch.document_id == document_id,
                    ReconciliationMatch.transaction_id.in_(line_ids),
                )
            )
            .execution_options(synchronize_session=False)
        )
        removed = await self.db.execute(
            delete(Transaction)
            .where(Transaction.document_id == document_id)
            .execution_options(synchronize_session=False)
        )
        await self.db.delete(document)
        await self.db.flush()
        if job_id is not None:
            await JobStateMachine(self.db).complete_if_confirmed(job_id)
        elif document.storage_key:
            try:
                await run_in_threadpool(storage.delete_object, document.storage_key)
            except StorageError as exc:
                logger.warning("Failed to delete orphaned document file", document_id=str(document_id), error=str(exc))

        logger.info("Document deleted", document_id=str(document_id), line_items=removed.rowcount)
        return removed.rowcount
