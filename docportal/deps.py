"""Common FastAPI dependencies for consistent type annotations.

Usage:
    from docportal.deps import CurrentUserId, DbSession

    async def my_endpoint(db: DbSession, user_id: CurrentUserId):
        ...

Collaborators (storage, extraction adapters, export targets) are injected through
``get_storage``, ``get_adapter_factory`` and ``get_exporters`` so they can be replaced via
``app.dependency_overrides``.
"""

from collections.abc import Mapping
from functools import lru_cache
from typing import Annotated
from uuid import UUID

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from docportal.auth import get_current_tenant_id, get_current_user_id
from docportal.database import get_db
from docportal.services.export import GOOGLE_SHEETS, GoogleSheetsExporter, SpreadsheetExporter
from docportal.services.extraction import AdapterFactory, build_adapter
from docportal.services.storage import StorageBackend, StorageService


@lru_cache
def get_storage() -> StorageBackend:
    return StorageService()


def get_adapter_factory() -> AdapterFactory:
    return build_adapter


def get_exporters() -> Mapping[str, SpreadsheetExporter]:
    return {GOOGLE_SHEETS: GoogleSheetsExporter()}


DbSession = Annotated[AsyncSession, Depends(get_db)]
CurrentUserId = Annotated[UUID, Depends(get_current_user_id)]
CurrentTenantId = Annotated[UUID | None, Depends(get_current_tenant_id)]
Storage = Annotated[StorageBackend, Depends(get_storage)]
AdapterFactoryDep = Annotated[AdapterFactory, Depends(get_adapter_factory)]
Exporters = Annotated[Mapping[str, SpreadsheetExporter], Depends(get_exporters)]

__all__ = [
    "AdapterFactoryDep",
    "CurrentTenantId",
    "CurrentUserId",
    "DbSession",
    "Exporters",
    "Storage",
    "get_adapter_factory",
    "get_exporters",
    "get_storage",
]
