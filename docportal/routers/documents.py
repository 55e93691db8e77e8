"""Document API router."""

from uuid import UUID

from fastapi import APIRouter, Response, status

from docportal.deps import CurrentUserId, DbSession, Storage
from docportal.schemas import DocumentResponse
from docportal.services.documents import DocumentStore
from docportal.services.errors import NotFoundError
from docportal.utils import raise_not_found

router = APIRouter(prefix="/documents", tags=["documents"])


@router.get("/{document_id}", response_model=DocumentResponse)
async def get_document(
    document_id: UUID,
    db: DbSession,
    user_id: CurrentUserId,
    storage: Storage,
) -> DocumentResponse:
    """Document detail with a short-lived download link for the source file."""
    store = DocumentStore(db)
    try:
        document = await store.get(document_id, user_id)
    except NotFoundError as exc:
        raise_not_found("Document", cause=exc)
    response = DocumentResponse.model_validate(document)
    response.download_url = await store.download_url(document, storage)
    return response


@router.delete("/{document_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_document(
    document_id: UUID,
    db: DbSession,
    user_id: CurrentUserId,
    storage: Storage,
) -> Response:
    try:
        await DocumentStore(db).delete(document_id, user_id, storage)
    except NotFoundError as exc:
        raise_not_found("Document", cause=exc)
    await db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
