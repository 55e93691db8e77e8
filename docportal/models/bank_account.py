"""Bank account model."""

from datetime import UTC, datetime

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from docportal.database import Base
from docportal.models.base import UserOwnedMixin, UUIDMixin


class BankAccount(UUIDMixin, UserOwnedMixin, Base):
    """Owning context for bank-statement jobs and their spreadsheet export target."""

    __tablename__ = "bank_accounts"

    account_name: Mapped[str] = mapped_column(String(100), nullable=False)
    bank_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    account_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    default_spreadsheet_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    spreadsheet_tab_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
