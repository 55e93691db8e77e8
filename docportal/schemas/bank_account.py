"""Pydantic schemas for bank accounts."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from docportal.schemas.base import BaseResponse, ListResponse


class BankAccountCreate(BaseModel):
    account_name: str = Field(min_length=1, max_length=100)
    bank_name: str | None = Field(default=None, max_length=100)
    account_type: str | None = Field(default=None, max_length=50)
    default_spreadsheet_id: str | None = Field(default=None, max_length=255)
    spreadsheet_tab_name: str | None = Field(default=None, max_length=100)


class BankAccountResponse(BaseResponse):
    id: UUID
    account_name: str
    bank_name: str | None
    account_type: str | None
    default_spreadsheet_id: str | None
    spreadsheet_tab_name: str | None
    created_at: datetime


BankAccountListResponse = ListResponse[BankAccountResponse]
