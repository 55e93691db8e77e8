"""Ingestion job model."""

from datetime import date, datetime
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import Date, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from docportal.database import Base, JSONType
from docportal.models.base import TimestampMixin, UserOwnedMixin, UUIDMixin


class JobType(str, Enum):
    """Kind of upload a job ingests."""

    SPREADSHEET = "spreadsheet"
    INVOICE_BATCH = "invoice_batch"


class JobStatus(str, Enum):
    """Job lifecycle states."""

    RECEIVED = "received"
    QUEUED = "queued"
    PROCESSING = "processing"
    REVIEWING = "reviewing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.REVIEWING, JobStatus.COMPLETED, JobStatus.FAILED})
ACTIVE_STATUSES = frozenset({JobStatus.RECEIVED, JobStatus.QUEUED, JobStatus.PROCESSING})


class Job(UUIDMixin, UserOwnedMixin, TimestampMixin, Base):
    """One uploaded file (or invoice batch) and its processing lifecycle."""

    __tablename__ = "ingestion_jobs"
    __table_args__ = (
        # dedup_hash is NULL for forced uploads so the override never collides
        UniqueConstraint("user_id", "dedup_hash", name="uq_ingestion_jobs_user_dedup_hash"),
    )

    tenant_id: Mapped[UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True, index=True)
    job_type: Mapped[JobType] = mapped_column(SQLEnum(JobType, name="job_type_enum"), nullable=False)
    bank_account_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("bank_accounts.id", ondelete="SET NULL"), nullable=True, index=True
    )

    # File metadata
    file_type: Mapped[str] = mapped_column(String(16), nullable=False)
    original_filename: Mapped[str] = mapped_column(String(255), nullable=False)
    normalized_filename: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    file_path: Mapped[str] = mapped_column(String(500), nullable=False)
    files: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)
    file_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    dedup_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Duplicate-gate override audit trail
    forced: Mapped[bool] = mapped_column(default=False, nullable=False)
    force_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    duplicate_of_job_id: Mapped[UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)

    # Covered statement period (from preview parse), used by filename+date duplicate tier
    period_start: Mapped[date | None] = mapped_column(Date, nullable=True)
    period_end: Mapped[date | None] = mapped_column(Date, nullable=True)

    # Processing
    status: Mapped[JobStatus] = mapped_column(
        SQLEnum(JobStatus, name="job_status_enum"), nullable=False, default=JobStatus.RECEIVED, index=True
    )
    status_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    total_items: Mapped[int | None] = mapped_column(Integer, nullable=True)
    processed_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Export
    spreadsheet_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_exported_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
