"""Pydantic schemas for the HTTP API."""

from docportal.schemas.bank_account import BankAccountCreate, BankAccountListResponse, BankAccountResponse
from docportal.schemas.base import BaseResponse, ListResponse
from docportal.schemas.document import DocumentResponse, DocumentSummary
from docportal.schemas.export import ExportMode, ExportResponse, SyncStatusResponse
from docportal.schemas.job import (
    BulkDeleteRequest,
    BulkDeleteResponse,
    DuplicateResponse,
    JobAcceptedResponse,
    JobListResponse,
    JobResponse,
)
from docportal.schemas.reconciliation import (
    AutoMatchRequest,
    AutoMatchResponse,
    CandidateResponse,
    MatchRequest,
    MatchResponse,
)
from docportal.schemas.transaction import (
    DeleteGroupResponse,
    RecategorizeResponse,
    TransactionGroupResponse,
    TransactionResponse,
    TransactionUpdate,
)

__all__ = [
    "AutoMatchRequest",
    "AutoMatchResponse",
    "BankAccountCreate",
    "BankAccountListResponse",
    "BankAccountResponse",
    "BaseResponse",
    "BulkDeleteRequest",
    "BulkDeleteResponse",
    "CandidateResponse",
    "DeleteGroupResponse",
    "DocumentResponse",
    "DocumentSummary",
    "DuplicateResponse",
    "ExportMode",
    "ExportResponse",
    "JobAcceptedResponse",
    "JobListResponse",
    "JobResponse",
    "ListResponse",
    "MatchRequest",
    "MatchResponse",
    "RecategorizeResponse",
    "SyncStatusResponse",
    "TransactionGroupResponse",
    "TransactionResponse",
    "TransactionUpdate",
]
