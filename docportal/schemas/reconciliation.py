"""Pydantic schemas for the reconciliation API."""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel

from docportal.models import MatchOrigin
from docportal.schemas.base import BaseResponse
from docportal.schemas.document import DocumentSummary
from docportal.services.reconciliation import ConfidenceTier


class MatchRequest(BaseModel):
    """Link a bank transaction to a document.

    When ``expected_document_id`` is sent (``null`` meaning "currently unmatched"), the
    request only succeeds if the transaction's current match still equals it.
    """

    transaction_id: UUID
    document_id: UUID
    expected_document_id: UUID | None = None


class MatchResponse(BaseResponse):
    id: UUID
    transaction_id: UUID
    document_id: UUID
    matched_by: MatchOrigin
    score: float | None
    created_at: datetime


class CandidateResponse(BaseModel):
    document: DocumentSummary
    score: int
    tier: ConfidenceTier
    amount_difference: Decimal
    date_difference_days: int | None
    breakdown: dict[str, float]


class AutoMatchRequest(BaseModel):
    job_id: UUID | None = None


class AutoMatchResponse(BaseModel):
    matched: int
    matches: list[MatchResponse]
