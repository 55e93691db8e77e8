"""Reconciliation match model."""

from datetime import UTC, datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import DateTime, Float, ForeignKey, Uuid
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from docportal.database import Base
from docportal.models.base import UserOwnedMixin, UUIDMixin


class MatchOrigin(str, Enum):
    """Who created a reconciliation link."""

    MANUAL = "manual"
    AUTO = "auto"


class ReconciliationMatch(UUIDMixin, UserOwnedMixin, Base):
    """Link between a bank transaction and an invoice document.

    ``transaction_id`` and ``document_id`` are both unique: a transaction has at most one
    active match and a document is linked to at most one transaction.
    """

    __tablename__ = "reconciliation_matches"

    transaction_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("transactions.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    document_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    matched_by: Mapped[MatchOrigin] = mapped_column(
        SQLEnum(MatchOrigin, name="match_origin_enum"), nullable=False, default=MatchOrigin.MANUAL
    )
    # Candidate score at match time (0-100), None for manual links without scoring
    score: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
