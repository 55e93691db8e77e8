"""Per-transaction export freshness against the external spreadsheet."""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from docportal.logger import get_logger
from docportal.models import SyncStatus, Transaction, utcnow

logger = get_logger(__name__)

MAX_SYNC_ERROR_LENGTH = 500


def aggregate(statuses: Iterable[SyncStatus]) -> SyncStatus:
    """Job-level sync status.

    - ``none``: nothing was ever exported (or there are no rows)
    - ``pending``: any row pending or failed, or exported rows mixed with never-exported ones
    - ``synced``: every row synced
    """
    seen = set(statuses)
    if not seen or seen == {SyncStatus.NONE}:
        return SyncStatus.NONE
    if seen == {SyncStatus.SYNCED}:
        return SyncStatus.SYNCED
    return SyncStatus.PENDING


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


@dataclass(frozen=True)
class JobSyncStatus:
    job_id: UUID
    status: SyncStatus
    counts: dict[SyncStatus, int]
    last_synced_at: datetime | None


class SyncTracker:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    @staticmethod
    def mark_dirty(txn: Transaction) -> bool:
        """Flag a synced row as changed locally. Returns True if the status changed."""
        if txn.sync_status != SyncStatus.SYNCED:
            return False
        txn.sync_status = SyncStatus.PENDING
        return True

    async def _load(self, transaction_ids: Sequence[UUID]) -> list[Transaction]:
        if not transaction_ids:
            return []
        result = await self.db.execute(select(Transaction).where(Transaction.id.in_(transaction_ids)))
        return list(result.scalars().all())

    async def mark_exported(self, transaction_ids: Sequence[UUID]) -> datetime | None:
        """Mark rows synced with a stamp strictly later than any earlier stamp they carry."""
        rows = await self._load(transaction_ids)
        if not rows:
            return None
        stamp = utcnow()
        previous = [_as_utc(row.last_synced_at) for row in rows if row.last_synced_at is not None]
        if previous and max(previous) >= stamp:
            stamp = max(previous) + timedelta(microseconds=1)
        for row in rows:
            row.sync_status = SyncStatus.SYNCED
            row.last_synced_at = stamp
            row.sync_error = None
        await self.db.flush()
        logger.info("Transactions marked exported", count=len(rows))
        return stamp

    async def mark_failed(self, transaction_ids: Sequence[UUID], error: str) -> int:
        rows = await self._load(transaction_ids)
        for row in rows:
            row.sync_status = SyncStatus.FAILED
            row.sync_error = error[:MAX_SYNC_ERROR_LENGTH]
        await self.db.flush()
        logger.warning("Transactions failed to sync", count=len(rows), error=error)
        return len(rows)

    async def job_status(self, job_id: UUID) -> JobSyncStatus:
        result = await self.db.execute(
            select(Transaction.sync_status, func.count(Transaction.id), func.max(Transaction.last_synced_at))
            .where(Transaction.job_id == job_id)
            .group_by(Transaction.sync_status)
        )
        counts: Counter[SyncStatus] = Counter()
        last_synced_at: datetime | None = None
        for status, count, latest in result:
            counts[status] = count
            if latest is not None:
                latest = _as_utc(latest)
                last_synced_at = latest if last_synced_at is None else max(last_synced_at, latest)
        return JobSyncStatus(
            job_id=job_id,
            status=aggregate(counts),
            counts={status: counts.get(status, 0) for status in SyncStatus},
            last_synced_at=last_synced_at,
        )
