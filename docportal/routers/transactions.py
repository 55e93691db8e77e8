"""Single-transaction API router."""

from uuid import UUID

from fastapi import APIRouter, Response, status

from docportal.deps import CurrentUserId, DbSession
from docportal.schemas import TransactionResponse, TransactionUpdate
from docportal.services.errors import NotFoundError
from docportal.services.transactions import TransactionStore
from docportal.utils import raise_not_found

router = APIRouter(prefix="/transactions", tags=["transactions"])


@router.get("/{transaction_id}", response_model=TransactionResponse)
async def get_transaction(transaction_id: UUID, db: DbSession, user_id: CurrentUserId) -> TransactionResponse:
    try:
        txn = await TransactionStore(db).get(transaction_id, user_id)
    except NotFoundError as exc:
        raise_not_found("Transaction", cause=exc)
    return TransactionResponse.model_validate(txn)


@router.patch("/{transaction_id}", response_model=TransactionResponse)
async def update_transaction(
    transaction_id: UUID,
    payload: TransactionUpdate,
    db: DbSession,
    user_id: CurrentUserId,
) -> TransactionResponse:
    """Edit category, notes, date, amount or direction. Does not confirm the row."""
    store = TransactionStore(db)
    try:
        await store.update(transaction_id, user_id, payload)
    except NotFoundError as exc:
        raise_not_found("Transaction", cause=exc)
    await db.commit()
    return TransactionResponse.model_validate(await store.get(transaction_id, user_id))


@router.post("/{transaction_id}/confirm", response_model=TransactionResponse)
async def confirm_transaction(transaction_id: UUID, db: DbSession, user_id: CurrentUserId) -> TransactionResponse:
    store = TransactionStore(db)
    try:
        await store.confirm(transaction_id, user_id)
    except NotFoundError as exc:
        raise_not_found("Transaction", cause=exc)
    await db.commit()
    return TransactionResponse.model_validate(await store.get(transaction_id, user_id))


@router.delete("/{transaction_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_transaction(transaction_id: UUID, db: DbSession, user_id: CurrentUserId) -> Response:
    try:
        await TransactionStore(db).delete(transaction_id, user_id)
    except NotFoundError as exc:
        raise_not_found("Transaction", cause=exc)
    await db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
