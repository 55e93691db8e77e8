"""Bank account API router."""

from uuid import UUID

from fastapi import APIRouter, status
from sqlalchemy import func, select

from docportal.deps import CurrentUserId, DbSession
from docportal.logger import get_logger
from docportal.models import BankAccount
from docportal.schemas import BankAccountCreate, BankAccountListResponse, BankAccountResponse
from docportal.utils import raise_not_found

router = APIRouter(prefix="/bank-accounts", tags=["bank-accounts"])
logger = get_logger(__name__)


@router.post("", response_model=BankAccountResponse, status_code=status.HTTP_201_CREATED)
async def create_bank_account(
    payload: BankAccountCreate,
    db: DbSession,
    user_id: CurrentUserId,
) -> BankAccountResponse:
    account = BankAccount(user_id=user_id, **payload.model_dump())
    db.add(account)
    await db.commit()
    await db.refresh(account)
    logger.info("Bank account created", bank_account_id=str(account.id))
    return BankAccountResponse.model_validate(account)


@router.get("", response_model=BankAccountListResponse)
async def list_bank_accounts(db: DbSession, user_id: CurrentUserId) -> BankAccountListResponse:
    result = await db.execute(
        select(BankAccount).where(BankAccount.user_id == user_id).order_by(BankAccount.account_name)
    )
    accounts = result.scalars().all()
    total = (
        await db.execute(select(func.count(BankAccount.id)).where(BankAccount.user_id == user_id))
    ).scalar_one()
    return BankAccountListResponse(
        items=[BankAccountResponse.model_validate(account) for account in accounts],
        total=total,
    )


@router.get("/{bank_account_id}", response_model=BankAccountResponse)
async def get_bank_account(bank_account_id: UUID, db: DbSession, user_id: CurrentUserId) -> BankAccountResponse:
    account = (
        await db.execute(
            select(BankAccount).where(BankAccount.id == bank_account_id).where(BankAccount.user_id == user_id)
        )
    ).scalar_one_or_none()
    if account is None:
        raise_not_found("Bank account")
    return BankAccountResponse.model_validate(account)
