from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ..dependencies.get_db import get_db
from ..schemas.click import ClickRequest, ClickResponse
from ..services.click_service import ClickService
from ..dependencies.auth import get_current_account_id

router = APIRouter(prefix="/clicks", tags=["clicks"])


@router.post("", response_model=ClickResponse, status_code=201)
async def record_click(
    payload: ClickRequest,
    db: AsyncSession = Depends(get_db),
    x_account_id: Optional[str] = Header(None, alias="X-Account-Id"),
    user_agent: Optional[str] = Header(None)
):
    """Record an outbound click; anonymous visitors are tracked without an account."""
    click_service = ClickService(db)
    return await click_service.record_click(
        store_id=payload.store_id,
        account_id=x_account_id.strip() if x_account_id and x_account_id.strip() else None,
        coupon_id=payload.coupon_id,
        product_id=payload.product_id,
        link_override=payload.link_override,
        user_agent=user_agent,
        cashback_type=payload.cashback_type.value if payload.cashback_type else None,
        cashback_rate_value=payload.cashback_rate_value
    )


@router.get("", response_model=List[ClickResponse])
async def list_clicks(
    account_id: str = Depends(get_current_account_id),
    db: AsyncSession = Depends(get_db),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0)
):
    return await ClickService(db).get_clicks_for_account(account_id, limit=limit, offset=offset)
