"""Extracted invoice/receipt document model."""

from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import Date, DateTime, ForeignKey, Numeric, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from docportal.database import Base, JSONType
from docportal.models.base import UserOwnedMixin, UUIDMixin


class Document(UUIDMixin, UserOwnedMixin, Base):
    """One logical invoice or receipt, owning zero or more line-item transactions."""

    __tablename__ = "documents"

    job_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("ingestion_jobs.id", ondelete="SET NULL"), nullable=True, index=True
    )

    # File metadata
    original_filename: Mapped[str] = mapped_column(String(255), nullable=False)
    storage_key: Mapped[str | None] = mapped_column(String(500), nullable=True)
    mime_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    file_hash: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    # Extracted header fields
    vendor_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    invoice_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    po_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    order_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    document_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    total_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    subtotal_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    tax_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    fee_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    shipping_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)

    # Ordered [{description, quantity, unit_price, total}]
    line_items: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)
    field_confidence: Mapped[dict[str, float]] = mapped_column(JSONType, nullable=False, default=dict)
    extraction_methods: Mapped[dict[str, str]] = mapped_column(JSONType, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
