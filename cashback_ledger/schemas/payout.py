from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from ..database_model.payout import PayoutStatus


class PayoutRequestCreate(BaseModel):
    amount: Decimal = Field(..., gt=0)
    payout_method: Optional[str] = None
    payout_detail: Optional[str] = Field(None, max_length=500)


class PayoutResolveRequest(BaseModel):
    outcome: PayoutStatus
    admin_notes: Optional[str] = None
    failure_reason: Optional[str] = None


class PayoutResponse(BaseModel):
    id: int
    account_id: str
    amount: Decimal
    status: PayoutStatus
    payout_method: str
    payout_detail: str
    transaction_ids: List[int]
    failure_reason: Optional[str]
    requested_at: Optional[datetime]
    processed_at: Optional[datetime]

    class Config:
        from_attributes = True
