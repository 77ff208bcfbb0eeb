from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from ..database_model.store import CashbackType


class ClickRequest(BaseModel):
    store_id: str = Field(..., min_length=1)
    coupon_id: Optional[str] = None
    product_id: Optional[str] = None
    link_override: Optional[str] = Field(None, description="Coupon or product link to use instead of the store's")
    cashback_type: Optional[CashbackType] = None
    cashback_rate_value: Optional[Decimal] = Field(None, ge=0)


class ClickResponse(BaseModel):
    click_id: str
    account_id: Optional[str]
    store_id: str
    coupon_id: Optional[str]
    product_id: Optional[str]
    affiliate_link: str
    created_at: Optional[datetime]

    class Config:
        from_attributes = True
