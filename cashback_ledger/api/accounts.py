from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..dependencies.auth import get_current_account_id
from ..dependencies.get_db import get_db
from ..schemas.account import (
    AccountUpsertRequest,
    AccountUpsertResponse,
    AccountResponse,
    BalanceResponse,
    PayoutDetailsRequest,
    ReferralSummaryResponse,
)
from ..services.account_service import AccountService
from ..services.referral_service import ReferralService

router = APIRouter(prefix="/accounts", tags=["accounts"])


@router.put("/me", response_model=AccountUpsertResponse)
async def upsert_account(
    payload: AccountUpsertRequest,
    account_id: str = Depends(get_current_account_id),
    db: AsyncSession = Depends(get_db)
):
    """Create the caller's account on first sign-in, or refresh its profile."""
    account_service = AccountService(db)
    account, created = await account_service.create_or_update_account(
        account_id,
        email=payload.email,
        display_name=payload.display_name,
        referred_by_code=payload.referred_by_code
    )
    return {"account": AccountResponse.model_validate(account), "created": created}


@router.get("/me", response_model=AccountResponse)
async def get_account(
    account_id: str = Depends(get_current_account_id),
    db: AsyncSession = Depends(get_db)
):
    return await AccountService(db).get_account(account_id)


@router.get("/me/balances", response_model=BalanceResponse)
async def get_balances(
    account_id: str = Depends(get_current_account_id),
    db: AsyncSession = Depends(get_db)
):
    """Pending, available, lifetime and referral balances of the caller."""
    return await AccountService(db).get_balances(account_id)


@router.put("/me/payout-details", response_model=AccountResponse)
async def update_payout_details(
    payload: PayoutDetailsRequest,
    account_id: str = Depends(get_current_account_id),
    db: AsyncSession = Depends(get_db)
):
    return await AccountService(db).update_payout_details(account_id, payload.method, payload.detail)


@router.get("/me/referrals", response_model=ReferralSummaryResponse)
async def get_referral_summary(
    account_id: str = Depends(get_current_account_id),
    db: AsyncSession = Depends(get_db)
):
    account = await AccountService(db).get_account(account_id)
    summary = await ReferralService(db).get_referral_summary(account_id)
    return {"referral_code": account.referral_code, **summary}
