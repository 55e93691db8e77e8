"""Pydantic schemas for transactions and their grouped view."""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

from docportal.models import SyncStatus
from docportal.schemas.base import BaseResponse
from docportal.schemas.document import DocumentSummary


class TransactionResponse(BaseResponse):
    id: UUID
    job_id: UUID
    document_id: UUID | None
    position: int
    txn_date: date | None = Field(validation_alias=AliasChoices("txn_date", "date"), serialization_alias="date")
    original_description: str
    amount: Decimal
    is_debit: bool | None
    category: str | None
    subcategory: str | None
    confidence_score: float
    user_confirmed: bool
    user_notes: str | None
    invoice_number: str | None
    supplier_id: UUID | None
    sync_status: SyncStatus
    last_synced_at: datetime | None
    sync_error: str | None
    created_at: datetime
    updated_at: datetime
    document: DocumentSummary | None = None


class TransactionGroupResponse(BaseResponse):
    """One row per document (or per standalone transaction)."""

    key: UUID
    document_id: UUID | None
    transaction_ids: list[UUID]
    txn_date: date | None = Field(validation_alias=AliasChoices("txn_date", "date"), serialization_alias="date")
    description: str
    amount: Decimal
    category: str | None
    confidence_score: float
    user_confirmed: bool
    line_count: int


class TransactionUpdate(BaseModel):
    """Partial update of a transaction's editable fields.

    Only fields present in the request body are applied. Unknown fields are rejected.
    Confirmation is a separate action.
    """

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    category: str | None = Field(default=None, max_length=100)
    subcategory: str | None = Field(default=None, max_length=100)
    user_notes: str | None = None
    is_debit: bool | None = None
    txn_date: date | None = Field(default=None, alias="date")
    amount: Decimal | None = Field(default=None, max_digits=18, decimal_places=2)

    @model_validator(mode="after")
    def reject_null_amount(self) -> "TransactionUpdate":
        if "amount" in self.model_fields_set and self.amount is None:
            raise ValueError("amount cannot be null")
        return self


class DeleteGroupResponse(BaseModel):
    deleted: int


class RecategorizeResponse(BaseModel):
    updated: int
