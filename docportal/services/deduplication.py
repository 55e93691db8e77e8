"""Upload-time duplicate detection.

Three tiers, checked in order:

1. ``exact``: SHA-256 of the raw bytes against the owner's earlier jobs (and, for invoice
   files, against the hashes of already-extracted documents).
2. ``filename_date``: same bank account, same normalized filename, same covered period.
3. ``content_similarity``: share of the upload's ``(date, amount, description)`` keys that
   already exist in another job of the same account.
"""

from __future__ import annotations

import hashlib
import re
import string
from collections import Counter
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from docportal.config import settings
from docportal.logger import get_logger
from docportal.models import Document, Job, JobStatus, JobType, Transaction

if TYPE_CHECKING:
    from docportal.services.extraction import ExtractedTransaction

logger = get_logger(__name__)

CENT = Decimal("0.01")


class MatchType(str, Enum):
    EXACT = "exact"
    FILENAME_DATE = "filename_date"
    CONTENT_SIMILARITY = "content_similarity"


@dataclass(frozen=True)
class DuplicateCandidate:
    """Why an upload was considered a duplicate, and of what."""

    match_type: MatchType
    existing_job_id: UUID | None = None
    existing_document_id: UUID | None = None
    similarity_score: float | None = None
    matching_count: int | None = None
    total_transactions_in_candidate: int | None = None

    @property
    def message(self) -> str:
        if self.match_type == MatchType.EXACT:
            return "This file has already been uploaded."
        if self.match_type == MatchType.FILENAME_DATE:
            return "A file with the same name and statement period was already uploaded for this account."
        return (
            f"{self.matching_count} of {self.total_transactions_in_candidate} transactions already exist "
            f"in an earlier upload ({(self.similarity_score or 0) * 100:.0f}% similar)."
        )


@dataclass(frozen=True)
class DescriptionNormalizer:
    """Matching-key policy for transaction descriptions.

    Case folding and whitespace collapsing always apply. Punctuation stripping is on by
    default, digit stripping is off.
    """

    strip_punctuation: bool = True
    strip_digits: bool = False

    def __call__(self, value: str | None) -> str:
        text = (value or "").casefold()
        if self.strip_punctuation:
            text = text.translate(str.maketrans(string.punctuation, " " * len(string.punctuation)))
        if self.strip_digits:
            text = re.sub(r"\d+", " ", text)
        return " ".join(text.split())


_COPY_SUFFIX = re.compile(r"(\s*[\(\[]\d+[\)\]]|\s*[-_ ]?copy(\s*\d+)?)+$", re.IGNORECASE)


def normalize_filename(filename: str) -> str:
    """Case-fold, drop the extension and copy suffixes, collapse punctuation.

    ``Statement Jan-2025 (1).CSV`` and ``statement_jan_2025 copy.csv`` both become
    ``statement jan 2025``.
    """
    stem = filename.rsplit("/", 1)[-1]
    if "." in stem:
        stem = stem.rsplit(".", 1)[0]
    stem = _COPY_SUFFIX.sub("", stem.strip())
    stem = re.sub(r"[^0-9a-z]+", " ", stem.casefold())
    return " ".join(stem.split())


def sha256_hex(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def combined_hash(file_hashes: Sequence[str]) -> str:
    """Hash of a whole upload: the file's own hash, or a hash of the sorted hashes of a batch."""
    if len(file_hashes) == 1:
        return file_hashes[0]
    return hashlib.sha256("|".join(sorted(file_hashes)).encode("utf-8")).hexdigest()


MatchKey = tuple[date | None, Decimal, str]


@dataclass
class PreviewRow:
    txn_date: date | None
    amount: Decimal
    description: str


@dataclass
class UploadFingerprint:
    """Everything the detector needs to know about an upload."""

    owner_id: UUID
    job_type: JobType
    filename: str
    file_hashes: list[str]
    bank_account_id: UUID | None = None
    rows: list[PreviewRow] = field(default_factory=list)

    @property
    def upload_hash(self) -> str:
        return combined_hash(self.file_hashes)

    @property
    def normalized_filename(self) -> str:
        return normalize_filename(self.filename)

    @property
    def period(self) -> tuple[date | None, date | None]:
        dates = [row.txn_date for row in self.rows if row.txn_date is not None]
        if not dates:
            return None, None
        return min(dates), max(dates)


class DuplicateDetector:
    def __init__(
        self,
        db: AsyncSession,
        *,
        threshold: float | None = None,
        normalizer: DescriptionNormalizer | None = None,
    ) -> None:
        self.db = db
        self.threshold = settings.duplicate_similarity_threshold if threshold is None else threshold
        self.normalizer = normalizer or DescriptionNormalizer()

    def match_key(self, txn_date: date | None, amount: Decimal, description: str | None) -> MatchKey:
        return (
            txn_date,
            Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP),
            self.normalizer(description),
        )

    async def check(self, fingerprint: UploadFingerprint) -> DuplicateCandidate | None:
        """Return the first tier that matches, or None."""
        candidate = await self.find_exact(fingerprint)
        if candidate is None and fingerprint.job_type == JobType.INVOICE_BATCH:
            candidate = await self.find_document(fingerprint)
        if candidate is None and fingerprint.job_type == JobType.SPREADSHEET:
            candidate = await self.find_filename_date(fingerprint)
            if candidate is None:
                candidate = await self.find_similar_content(fingerprint)

        if candidate is not None:
            logger.info(
                "Duplicate upload detected",
                match_type=candidate.match_type.value,
                existing_job_id=str(candidate.existing_job_id) if candidate.existing_job_id else None,
                similarity_score=candidate.similarity_score,
            )
        return candidate

    async def find_exact(self, fingerprint: UploadFingerprint) -> DuplicateCandidate | None:
        result = await self.db.execute(
            select(Job.id)
            .where(Job.user_id == fingerprint.owner_id)
            .where(Job.file_hash == fingerprint.upload_hash)
            .order_by(Job.created_at)
            .limit(1)
        )
        job_id = result.scalar_one_or_none()
        if job_id is None:
            return None
        return DuplicateCandidate(match_type=MatchType.EXACT, existing_job_id=job_id)

    async def find_document(self, fingerprint: UploadFingerprint) -> DuplicateCandidate | None:
        """Any single invoice file that was already extracted into a document."""
        result = await self.db.execute(
            select(Document.id, Document.job_id)
            .where(Document.user_id == fingerprint.owner_id)
            .where(Document.file_hash.in_(fingerprint.file_hashes))
            .order_by(Document.created_at)
            .limit(1)
        )
        row = result.first()
        if row is None:
            return None
        return DuplicateCandidate(
            match_type=MatchType.EXACT,
            existing_job_id=row.job_id,
            existing_document_id=row.id,
        )

    async def find_filename_date(self, fingerprint: UploadFingerprint) -> DuplicateCandidate | None:
        period_start, period_end = fingerprint.period
        if fingerprint.bank_account_id is None or period_start is None:
            return None
        result = await self.db.execute(
            select(Job.id)
            .where(Job.user_id == fingerprint.owner_id)
            .where(Job.bank_account_id == fingerprint.bank_account_id)
            .where(Job.normalized_filename == fingerprint.normalized_filename)
            .where(Job.period_start == period_start)
            .where(Job.period_end == period_end)
            .order_by(Job.created_at)
            .limit(1)
        )
        job_id = result.scalar_one_or_none()
        if job_id is None:
            return None
        return DuplicateCandidate(match_type=MatchType.FILENAME_DATE, existing_job_id=job_id)

    async def find_similar_content(self, fingerprint: UploadFingerprint) -> DuplicateCandidate | None:
        if not fingerprint.rows:
            return None
        candidate_keys = Counter(
            self.match_key(row.txn_date, row.amount, row.description) for row in fingerprint.rows
        )
        total = sum(candidate_keys.values())

        jobs_query = (
            select(Job.id)
            .where(Job.user_id == fingerprint.owner_id)
            .where(Job.job_type == JobType.SPREADSHEET)
            .where(Job.status != JobStatus.FAILED)
            .order_by(Job.created_at)
        )
        if fingerprint.bank_account_id is None:
            jobs_query = jobs_query.where(Job.bank_account_id.is_(None))
        else:
            jobs_query = jobs_query.where(Job.bank_account_id == fingerprint.bank_account_id)
        job_ids = list((await self.db.execute(jobs_query)).scalars().all())
        if not job_ids:
            return None

        rows = await self.db.execute(
            select(
                Transaction.job_id,
                Transaction.txn_date,
                Transaction.amount,
                Transaction.original_description,
            )
            .where(Transaction.user_id == fingerprint.owner_id)
            .where(Transaction.job_id.in_(job_ids))
        )
        existing: dict[UUID, Counter[MatchKey]] = {}
        for job_id, txn_date, amount, description in rows:
            existing.setdefault(job_id, Counter())[self.match_key(txn_date, amount, description)] += 1

        best: DuplicateCandidate | None = None
        for job_id in job_ids:
            keys = existing.get(job_id)
            if not keys:
                continue
            matching = sum((candidate_keys & keys).values())
            score = matching / total
            if score >= self.threshold and (best is None or score > (best.similarity_score or 0)):
                best = DuplicateCandidate(
                    match_type=MatchType.CONTENT_SIMILARITY,
                    existing_job_id=job_id,
                    similarity_score=round(score, 4),
                    matching_count=matching,
                    total_transactions_in_candidate=total,
                )
        return best


def preview_rows(items: Iterable[ExtractedTransaction]) -> list[PreviewRow]:
    return [PreviewRow(txn_date=item.txn_date, amount=item.amount, description=item.description) for item in items]
