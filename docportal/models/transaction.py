"""Extracted transaction model."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import CheckConstraint, Date, DateTime, Float, ForeignKey, Integer, Numeric, String, Text, Uuid
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from docportal.database import Base
from docportal.models.base import TimestampMixin, UserOwnedMixin, UUIDMixin

if TYPE_CHECKING:
    from docportal.models.document import Document


class SyncStatus(str, Enum):
    """Export freshness of a transaction relative to the external spreadsheet."""

    NONE = "none"
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


class Transaction(UUIDMixin, UserOwnedMixin, TimestampMixin, Base):
    """A bank-statement row or an invoice line item."""

    __tablename__ = "transactions"
    __table_args__ = (
        CheckConstraint(
            "confidence_score >= 0 AND confidence_score <= 1",
            name="ck_transactions_confidence_range",
        ),
    )

    job_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("ingestion_jobs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    document_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("documents.id", ondelete="SET NULL"), nullable=True, index=True
    )
    # Position in the source file, keeps listings in file order
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    txn_date: Mapped[date | None] = mapped_column("date", Date, nullable=True)
    original_description: Mapped[str] = mapped_column(Text, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    is_debit: Mapped[bool | None] = mapped_column(nullable=True)
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    subcategory: Mapped[str | None] = mapped_column(String(100), nullable=True)
    confidence_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    user_confirmed: Mapped[bool] = mapped_column(nullable=False, default=False)
    user_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    invoice_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    supplier_id: Mapped[UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)

    # Sync tracking
    sync_status: Mapped[SyncStatus] = mapped_column(
        SQLEnum(SyncStatus, name="sync_status_enum"), nullable=False, default=SyncStatus.NONE
    )
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    document: Mapped["Document | None"] = relationship("Document", lazy="raise")

    @property
    def is_bank_transaction(self) -> bool:
        return self.document_id is None

    @property
    def signed_is_debit(self) -> bool:
        """Debit flag with the amount sign as fallback."""
        if self.is_debit is not None:
            return self.is_debit
        return self.amount < 0
