"""Pydantic schemas for extracted documents."""

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from docportal.schemas.base import BaseResponse


class DocumentSummary(BaseResponse):
    """Document header nested into transaction listings."""

    id: UUID
    original_filename: str
    vendor_name: str | None
    invoice_number: str | None
    document_date: date | None
    total_amount: Decimal | None
    currency: str | None


class DocumentResponse(DocumentSummary):
    job_id: UUID | None
    mime_type: str | None
    po_number: str | None
    order_number: str | None
    subtotal_amount: Decimal | None
    tax_amount: Decimal | None
    fee_amount: Decimal | None
    shipping_amount: Decimal | None
    line_items: list[dict[str, Any]]
    field_confidence: dict[str, float]
    extraction_methods: dict[str, str]
    created_at: datetime
    download_url: str | None = None
