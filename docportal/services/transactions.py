"""Transaction persistence, editing and the per-document grouping view."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from docportal.logger import get_logger
from docportal.models import Job, ReconciliationMatch, Transaction
from docportal.schemas.transaction import TransactionUpdate
from docportal.services.errors import NotFoundError
from docportal.services.extraction import Categorizer
from docportal.services.jobs import JobStateMachine
from docportal.services.sync import SyncTracker

logger = get_logger(__name__)


@dataclass
class TransactionGroup:
    """Display record for one document (or one standalone transaction).

    Derived on read; never stored.
    """

    key: UUID
    document_id: UUID | None
    txn_date: date | None
    description: str
    category: str | None
    transaction_ids: list[UUID] = field(default_factory=list)
    amount: Decimal = Decimal("0")
    confidence_score: float = 1.0
    user_confirmed: bool = True

    @property
    def line_count(self) -> int:
        return len(self.transaction_ids)


def group_by_document(transactions: Sequence[Transaction]) -> list[TransactionGroup]:
    """Collapse line items sharing a document into one record, keeping first-seen order.

    The group amount is the sum of absolute member amounts; the group is confirmed only
    when every member is confirmed.
    """
    groups: dict[UUID, TransactionGroup] = {}
    for txn in transactions:
        key = txn.document_id or txn.id
        group = groups.get(key)
        if group is None:
            group = TransactionGroup(
                key=key,
                document_id=txn.document_id,
                txn_date=txn.txn_date,
                description=txn.original_description,
                category=txn.category,
            )
            groups[key] = group
        group.transaction_ids.append(txn.id)
        group.amount += abs(txn.amount)
        group.confidence_score = min(group.confidence_score, txn.confidence_score)
        group.user_confirmed = group.user_confirmed and txn.user_confirmed
    return list(groups.values())


class TransactionStore:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db
        self.sync = SyncTracker(db)

    async def bulk_insert(self, rows: Sequence[Transaction]) -> None:
        """Stage a batch; the caller's commit makes the whole batch visible at once."""
        self.db.add_all(rows)
        await self.db.flush()

    async def _require_job(self, job_id: UUID, owner_id: UUID) -> None:
        found = (
            await self.db.execute(select(Job.id).where(Job.id == job_id).where(Job.user_id == owner_id))
        ).scalar_one_or_none()
        if found is None:
            raise NotFoundError("Job", job_id)

    async def get(self, transaction_id: UUID, owner_id: UUID) -> Transaction:
        txn = (
            await self.db.execute(
                select(Transaction)
                .options(selectinload(Transaction.document))
                .where(Transaction.id == transaction_id)
                .where(Transaction.user_id == owner_id)
            )
        ).scalar_one_or_none()
        if txn is None:
            raise NotFoundError("Transaction", transaction_id)
        return txn

    async def list_for_job(self, job_id: UUID, owner_id: UUID) -> list[Transaction]:
        """Transactions of a job in file order, each with its document loaded."""
        await self._require_job(job_id, owner_id)
        result = await self.db.execute(
            select(Transaction)
            .options(selectinload(Transaction.document))
            .where(Transaction.job_id == job_id)
            .where(Transaction.user_id == owner_id)
            .order_by(Transaction.position, Transaction.created_at)
        )
        return list(result.scalars().all())

    async def update(self, transaction_id: UUID, owner_id: UUID, changes: TransactionUpdate) -> Transaction:
        """Apply the fields present in ``changes``. Never confirms the row."""
        txn = await self.get(transaction_id, owner_id)
        changed = [
            name
            for name in sorted(changes.model_fields_set)
            if getattr(txn, name) != getattr(changes, name)
        ]
        for name in changed:
            setattr(txn, name, getattr(changes, name))
        if changed:
            self.sync.mark_dirty(txn)
            await self.db.flush()
            logger.info("Transaction updated", transaction_id=str(transaction_id), fields=changed)
        return txn

    async def confirm(self, transaction_id: UUID, owner_id: UUID) -> Transaction:
        """Confirm a row; confirming again is a no-op."""
        txn = await self.get(transaction_id, owner_id)
        if not txn.user_confirmed:
            txn.user_confirmed = True
            self.sync.mark_dirty(txn)
            await self.db.flush()
            await JobStateMachine(self.db).complete_if_confirmed(txn.job_id)
        return txn

    async def delete(self, transaction_id: UUID, owner_id: UUID) -> None:
        txn = await self.get(transaction_id, owner_id)
        job_id = txn.job_id
        await self.db.execute(
            delete(ReconciliationMatch)
            .where(ReconciliationMatch.transaction_id == transaction_id)
            .execution_options(synchronize_session=False)
        )
        await self.db.delete(txn)
        await self.db.flush()
        await JobStateMachine(self.db).complete_if_confirmed(job_id)
        logger.info("Transaction deleted", transaction_id=str(transaction_id))

    async def delete_group(self, job_id: UUID, document_id: UUID, owner_id: UUID) -> int:
        """Delete every row of ``document_id`` within the job. The document itself stays."""
        await self._require_job(job_id, owner_id)
        member_ids = list(
            (
                await self.db.execute(
                    select(Transaction.id)
                    .where(Transaction.job_id == job_id)
                    .where(Transaction.document_id == document_id)
                    .where(Transaction.user_id == owner_id)
                )
            )
            .scalars()
            .all()
        )
        if not member_ids:
            raise NotFoundError("Transaction group", document_id)

        await self.db.execute(
            delete(ReconciliationMatch)
            .where(ReconciliationMatch.transaction_id.in_(member_ids))
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(
            delete(Transaction).where(Transaction.id.in_(member_ids)).execution_options(synchronize_session=False)
        )
        await self.db.flush()
        await JobStateMachine(self.db).complete_if_confirmed(job_id)
        logger.info(
            "Transaction group deleted", job_id=str(job_id), document_id=str(document_id), count=len(member_ids)
        )
        return len(member_ids)

    async def recategorize(self, job_id: UUID, owner_id: UUID, categorizer: Categorizer) -> int:
        """Re-run categorization on unconfirmed rows; confirmed rows are never touched."""
        await self._require_job(job_id, owner_id)
        rows = (
            await self.db.execute(
                select(Transaction)
                .where(Transaction.job_id == job_id)
                .where(Transaction.user_id == owner_id)
                .where(Transaction.user_confirmed.is_(False))
            )
        ).scalars().all()

        updated = 0
        for txn in rows:
            result = categorizer(txn.original_description, txn.amount)
            if (txn.category, txn.subcategory, txn.confidence_score) == tuple(result):
                continue
            txn.category = result.category
            txn.subcategory = result.subcategory
            txn.confidence_score = result.confidence
            self.sync.mark_dirty(txn)
            updated += 1
        await self.db.flush()
        return updated
