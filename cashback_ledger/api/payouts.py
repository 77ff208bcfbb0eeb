from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ..database_model.payout import PayoutStatus
from ..dependencies.auth import get_current_account_id
from ..dependencies.get_db import get_db
from ..schemas.payout import PayoutRequestCreate, PayoutResponse
from ..services.payout_service import PayoutService

router = APIRouter(prefix="/payouts", tags=["payouts"])


@router.post("", response_model=PayoutResponse, status_code=201)
async def request_payout(
    payload: PayoutRequestCreate,
    account_id: str = Depends(get_current_account_id),
    db: AsyncSession = Depends(get_db)
):
    """Withdraw confirmed cashback. The amount is reserved immediately."""
    payout_service = PayoutService(db)
    return await payout_service.request_payout(
        account_id,
        payload.amount,
        payout_method=payload.payout_method,
        payout_detail=payload.payout_detail
    )


@router.get("", response_model=List[PayoutResponse])
async def list_payouts(
    account_id: str = Depends(get_current_account_id),
    db: AsyncSession = Depends(get_db),
    status: Optional[PayoutStatus] = Query(None),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0)
):
    return await PayoutService(db).list_payouts(
        account_id,
        status=status.value if status else None,
        limit=limit,
        offset=offset
    )
