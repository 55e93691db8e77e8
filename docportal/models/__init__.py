"""SQLAlchemy models."""

from docportal.models.bank_account import BankAccount
from docportal.models.base import TimestampMixin, UserOwnedMixin, UUIDMixin, utcnow
from docportal.models.document import Document
from docportal.models.job import ACTIVE_STATUSES, TERMINAL_STATUSES, Job, JobStatus, JobType
from docportal.models.reconciliation import MatchOrigin, ReconciliationMatch
from docportal.models.transaction import SyncStatus, Transaction

__all__ = [
    "ACTIVE_STATUSES",
    "BankAccount",
    "Document",
    "Job",
    "JobStatus",
    "JobType",
    "MatchOrigin",
    "ReconciliationMatch",
    "SyncStatus",
    "TERMINAL_STATUSES",
    "TimestampMixin",
    "Transaction",
    "UUIDMixin",
    "UserOwnedMixin",
    "utcnow",
]
