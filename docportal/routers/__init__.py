"""API routers package."""

from docportal.routers import bank_accounts, documents, jobs, reconciliation, transactions

__all__ = [
    "bank_accounts",
    "documents",
    "jobs",
    "reconciliation",
    "transactions",
]
