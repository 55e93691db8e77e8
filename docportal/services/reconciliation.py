"""Reconciliation between bank transactions and invoice/receipt documents."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, replace
from datetime import date
from decimal import Decimal, InvalidOperation
from difflib import SequenceMatcher
from enum import Enum
from pathlib import Path
from uuid import UUID

import yaml
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from docportal.config import settings
from docportal.logger import get_logger
from docportal.models import Document, Job, MatchOrigin, ReconciliationMatch, Transaction, utcnow
from docportal.services.errors import ConflictError, NotFoundError, ValidationError

logger = get_logger(__name__)


@dataclass(frozen=True)
class ReconciliationConfig:
    """Runtime configuration for candidate filtering and scoring."""

    weight_amount: Decimal
    weight_date: Decimal
    weight_description: Decimal
    amount_window: Decimal
    date_window_days: int
    high_amount_diff: Decimal
    high_date_days: int
    medium_amount_diff: Decimal
    medium_date_days: int
    candidate_limit: int


DEFAULT_CONFIG = ReconciliationConfig(
    weight_amount=Decimal("0.50"),
    weight_date=Decimal("0.30"),
    weight_description=Decimal("0.20"),
    amount_window=Decimal("100"),
    date_window_days=60,
    high_amount_diff=Decimal("0.01"),
    high_date_days=7,
    medium_amount_diff=Decimal("1.00"),
    medium_date_days=30,
    candidate_limit=5,
)

_config_cache: ReconciliationConfig | None = None


def _config_path() -> Path:
    if settings.reconciliation_config_path:
        return Path(settings.reconciliation_config_path)
    return Path(__file__).resolve().parents[2] / "config" / "reconciliation.yaml"


def load_reconciliation_config(force_reload: bool = False) -> ReconciliationConfig:
    """Load reconciliation configuration from YAML if available.

    Caches the result to avoid repeated disk I/O.
    """
    global _config_cache
    if _config_cache is not None and not force_reload:
        return _config_cache

    config = DEFAULT_CONFIG
    config_path = _config_path()

    if config_path.exists():
        try:
            raw = yaml.safe_load(config_path.read_text()) or {}
            scoring = raw.get("scoring", {})
            weights = scoring.get("weights", {})
            windows = raw.get("candidates", {})
            tiers = raw.get("tiers", {})
            high = tiers.get("high", {})
            medium = tiers.get("medium", {})

            config = ReconciliationConfig(
                weight_amount=Decimal(str(weights.get("amount", config.weight_amount))),
                weight_date=Decimal(str(weights.get("date", config.weight_date))),
                weight_description=Decimal(str(weights.get("description", config.weight_description))),
                amount_window=Decimal(str(windows.get("amount_window", config.amount_window))),
                date_window_days=int(windows.get("date_window_days", config.date_window_days)),
                high_amount_diff=Decimal(str(high.get("amount_diff", config.high_amount_diff))),
                high_date_days=int(high.get("date_days", config.high_date_days)),
                medium_amount_diff=Decimal(str(medium.get("amount_diff", config.medium_amount_diff))),
                medium_date_days=int(medium.get("date_days", config.medium_date_days)),
                candidate_limit=int(windows.get("limit", config.candidate_limit)),
            )
        except (OSError, yaml.YAMLError, AttributeError, TypeError, ValueError, InvalidOperation) as e:
            logger.warning(
                "Failed to load reconciliation config - using defaults",
                config_path=str(config_path),
                error=str(e),
                error_type=type(e).__name__,
            )

    amount_window_env = os.getenv("RECONCILIATION_AMOUNT_WINDOW")
    date_window_env = os.getenv("RECONCILIATION_DATE_WINDOW_DAYS")
    if amount_window_env:
        config = replace(config, amount_window=Decimal(amount_window_env))
    if date_window_env:
        config = replace(config, date_window_days=int(date_window_env))

    _config_cache = config
    return config


# =============================================================================
# Scoring
# =============================================================================


def normalize_text(value: str) -> str:
    """Normalize text for similarity comparison."""
    cleaned = re.sub(r"[^a-z0-9]+", " ", value.lower()).strip()
    return re.sub(r"\s+", " ", cleaned)


def score_description(a: str | None, b: str | None) -> float:
    """Score description similarity (0-100)."""
    if not a or not b:
        return 0.0
    norm_a = normalize_text(a)
    norm_b = normalize_text(b)
    if not norm_a or not norm_b:
        return 0.0
    ratio = SequenceMatcher(None, norm_a, norm_b).ratio()
    tokens_a = set(norm_a.split())
    tokens_b = set(norm_b.split())
    token_score = len(tokens_a & tokens_b) / len(tokens_a | tokens_b) if tokens_a | tokens_b else 0
    return round(100 * (0.6 * ratio + 0.4 * token_score), 2)


def score_amount(txn_amount: Decimal, document_amount: Decimal, config: ReconciliationConfig) -> float:
    """Score amount match (0-100) on absolute values."""
    txn_abs = abs(txn_amount)
    diff = abs(txn_abs - abs(document_amount))
    if diff < config.high_amount_diff:
        return 100.0
    if diff < config.medium_amount_diff:
        return 90.0
    if diff <= Decimal("5.00"):
        return 70.0
    if txn_abs == 0:
        return 0.0
    ratio = max(Decimal("0"), Decimal("100") - (diff / txn_abs) * Decimal("100"))
    return float(round(ratio, 2))


def score_date(txn_date: date | None, document_date: date | None, config: ReconciliationConfig) -> float:
    """Score date proximity (0-100); unknown dates score neutral."""
    if txn_date is None or document_date is None:
        return 50.0
    diff_days = abs((txn_date - document_date).days)
    if diff_days == 0:
        return 100.0
    if diff_days <= 3:
        return 90.0
    if diff_days <= config.high_date_days:
        return 75.0
    return float(max(0, 100 - diff_days * 10))


def weighted_total(scores: dict[str, float], config: ReconciliationConfig) -> int:
    total = (
        Decimal(str(scores["amount"])) * config.weight_amount
        + Decimal(str(scores["date"])) * config.weight_date
        + Decimal(str(scores["description"])) * config.weight_description
    )
    return int(round(total))


class ConfidenceTier(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


_TIER_RANK = {ConfidenceTier.HIGH: 0, ConfidenceTier.MEDIUM: 1, ConfidenceTier.LOW: 2}


def confidence_tier(amount_diff: Decimal, date_diff: int | None, config: ReconciliationConfig) -> ConfidenceTier:
    if amount_diff < config.high_amount_diff and date_diff is not None and date_diff <= config.high_date_days:
        return ConfidenceTier.HIGH
    if amount_diff < config.medium_amount_diff and (date_diff is None or date_diff <= config.medium_date_days):
        return ConfidenceTier.MEDIUM
    return ConfidenceTier.LOW


@dataclass
class MatchCandidate:
    """Candidate document for one bank transaction."""

    document: Document
    score: int
    tier: ConfidenceTier
    amount_difference: Decimal
    date_difference_days: int | None
    # Score components are 0-100 percentages
    breakdown: dict[str, float]

    @property
    def sort_key(self) -> tuple[int, int, Decimal]:
        return (_TIER_RANK[self.tier], -self.score, self.amount_difference)


class _Unset(Enum):
    TOKEN = 0


UNSET = _Unset.TOKEN


# =============================================================================
# Matcher
# =============================================================================


class ReconciliationMatcher:
    """Create, replace and remove transaction-to-document links for one owner."""

    def __init__(self, db: AsyncSession, config: ReconciliationConfig | None = None) -> None:
        self.db = db
        self.config = config or load_reconciliation_config()

    async def _bank_transaction(self, owner_id: UUID, transaction_id: UUID) -> Transaction:
        txn = (
            await self.db.execute(
                select(Transaction).where(Transaction.id == transaction_id).where(Transaction.user_id == owner_id)
            )
        ).scalar_one_or_none()
        if txn is None:
            raise NotFoundError("Transaction", transaction_id)
        if not txn.is_bank_transaction:
            raise ValidationError("Only bank transactions can be matched to documents")
        return txn

    async def _document(self, owner_id: UUID, document_id: UUID) -> Document:
        document = (
            await self.db.execute(
                select(Document).where(Document.id == document_id).where(Document.user_id == owner_id)
            )
        ).scalar_one_or_none()
        if document is None:
            raise NotFoundError("Document", document_id)
        return document

    async def get_match(self, owner_id: UUID, transaction_id: UUID) -> ReconciliationMatch | None:
        return (
            await self.db.execute(
                select(ReconciliationMatch)
                .where(ReconciliationMatch.transaction_id == transaction_id)
                .where(ReconciliationMatch.user_id == owner_id)
            )
        ).scalar_one_or_none()

    async def match(
        self,
        owner_id: UUID,
        transaction_id: UUID,
        document_id: UUID,
        *,
        expected_document_id: UUID | None | _Unset = UNSET,
        matched_by: MatchOrigin = MatchOrigin.MANUAL,
        score: float | None = None,
    ) -> ReconciliationMatch:
        """Link a transaction to a document, replacing any previous link.

        Matching the same pair again returns the existing match unchanged.

        Raises:
            NotFoundError: Unknown transaction or document.
            ValidationError: The transaction is an invoice line item.
            ConflictError: ``expected_document_id`` is stale, or the document is already
                linked to another transaction.
        """
        await self._bank_transaction(owner_id, transaction_id)
        await self._document(owner_id, document_id)
        existing = await self.get_match(owner_id, transaction_id)

        if expected_document_id is not UNSET:
            current = existing.document_id if existing else None
            if current != expected_document_id:
                raise ConflictError("Transaction match changed since it was read; reload and retry")

        if existing is not None and existing.document_id == document_id:
            return existing

        claimed = (
            await self.db.execute(
                select(ReconciliationMatch.id)
                .where(ReconciliationMatch.document_id == document_id)
                .where(ReconciliationMatch.transaction_id != transaction_id)
            )
        ).scalar_one_or_none()
        if claimed is not None:
            raise ConflictError("Document is already matched to another transaction")

        if existing is not None:
            existing.document_id = document_id
            existing.matched_by = matched_by
            existing.score = score
            existing.created_at = utcnow()
            match = existing
        else:
            match = ReconciliationMatch(
                user_id=owner_id,
                transaction_id=transaction_id,
                document_id=document_id,
                matched_by=matched_by,
                score=score,
            )
            self.db.add(match)

        try:
            await self.db.flush()
        except IntegrityError as exc:
            raise ConflictError("Concurrent match on the same transaction or document") from exc

        logger.info(
            "Transaction matched",
            transaction_id=str(transaction_id),
            document_id=str(document_id),
            matched_by=matched_by.value,
            replaced=existing is not None,
        )
        return match

    async def unmatch(self, owner_id: UUID, transaction_id: UUID) -> bool:
        """Remove the active match; neither side is deleted."""
        await self._bank_transaction(owner_id, transaction_id)
        result = await self.db.execute(
            delete(ReconciliationMatch)
            .where(ReconciliationMatch.transaction_id == transaction_id)
            .where(ReconciliationMatch.user_id == owner_id)
            .execution_options(synchronize_session=False)
        )
        removed = bool(result.rowcount)
        if removed:
            logger.info("Transaction unmatched", transaction_id=str(transaction_id))
        return removed

    async def candidates(
        self, owner_id: UUID, transaction_id: UUID, *, limit: int | None = None
    ) -> list[MatchCandidate]:
        """Rank documents that could back this transaction."""
        txn = await self._bank_transaction(owner_id, transaction_id)
        matched_elsewhere = select(ReconciliationMatch.document_id).where(
            ReconciliationMatch.transaction_id != transaction_id
        )
        documents = (
            await self.db.execute(
                select(Document)
                .where(Document.user_id == owner_id)
                .where(Document.total_amount.is_not(None))
                .where(Document.id.not_in(matched_elsewhere))
            )
        ).scalars().all()

        config = self.config
        ranked: list[MatchCandidate] = []
        for document in documents:
            total = document.total_amount
            if total is None:
                continue
            amount_diff = abs(abs(txn.amount) - abs(total))
            if amount_diff >= config.amount_window:
                continue
            date_diff = (
                abs((txn.txn_date - document.document_date).days)
                if txn.txn_date is not None and document.document_date is not None
                else None
            )
            if date_diff is not None and date_diff > config.date_window_days:
                continue

            breakdown = {
                "amount": score_amount(txn.amount, total, config),
                "date": score_date(txn.txn_date, document.document_date, config),
                "description": score_description(
                    txn.original_description, document.vendor_name or document.original_filename
                ),
            }
            ranked.append(
                MatchCandidate(
                    document=document,
                    score=weighted_total(breakdown, config),
                    tier=confidence_tier(amount_diff, date_diff, config),
                    amount_difference=amount_diff,
                    date_difference_days=date_diff,
                    breakdown=breakdown,
                )
            )

        ranked.sort(key=lambda candidate: candidate.sort_key)
        return ranked[: limit or config.candidate_limit]

    async def auto_match(self, owner_id: UUID, *, job_id: UUID | None = None) -> list[ReconciliationMatch]:
        """Link every unmatched bank transaction to its best high-confidence candidate."""
        query = (
            select(Transaction.id)
            .where(Transaction.user_id == owner_id)
            .where(Transaction.document_id.is_(None))
            .where(Transaction.id.not_in(select(ReconciliationMatch.transaction_id)))
            .order_by(Transaction.txn_date, Transaction.position)
        )
        if job_id is not None:
            owned = (
                await self.db.execute(select(Job.id).where(Job.id == job_id).where(Job.user_id == owner_id))
            ).scalar_one_or_none()
            if owned is None:
                raise NotFoundError("Job", job_id)
            query = query.where(Transaction.job_id == job_id)

        matches: list[ReconciliationMatch] = []
        for transaction_id in (await self.db.execute(query)).scalars().all():
            candidates = await self.candidates(owner_id, transaction_id)
            best = next((c for c in candidates if c.tier == ConfidenceTier.HIGH), None)
            if best is None:
                continue
            matches.append(
                await self.match(
                    owner_id,
                    transaction_id,
                    best.document.id,
                    matched_by=MatchOrigin.AUTO,
                    score=float(best.score),
                )
            )

        logger.info("Auto-match completed", matched=len(matches), job_id=str(job_id) if job_id else None)
        return matches
