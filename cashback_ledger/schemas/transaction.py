from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from ..database_model.transaction import TransactionStatus


class SaleEvent(BaseModel):
    """Raw sale reported by the affiliate feed or entered by an operator."""
    account_id: Optional[str] = None
    store_id: Optional[str] = None
    sale_amount: Decimal = Field(..., gt=0)
    click_id: Optional[str] = None
    coupon_id: Optional[str] = None
    order_id: Optional[str] = Field(None, max_length=128)
    transaction_date: Optional[datetime] = None
    cashback_amount: Optional[Decimal] = Field(None, ge=0, description="Operator override of the computed cashback")
    notes_to_user: Optional[str] = None
    admin_notes: Optional[str] = None


class TransitionRequest(BaseModel):
    status: TransactionStatus
    admin_notes: Optional[str] = None
    rejection_reason: Optional[str] = None


class TransactionEditRequest(BaseModel):
    status: TransactionStatus
    cashback_amount: Optional[Decimal] = Field(None, ge=0)
    admin_notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    correction: bool = False


class TransactionResponse(BaseModel):
    id: int
    account_id: str
    store_id: str
    click_id: Optional[str]
    coupon_id: Optional[str]
    order_id: Optional[str]
    sale_amount: Decimal
    cashback_amount: Decimal
    cashback_rate_applied: Optional[str]
    status: TransactionStatus
    transaction_date: datetime
    confirmation_date: Optional[datetime]
    paid_date: Optional[datetime]
    payout_id: Optional[int]
    rejection_reason: Optional[str]
    notes_to_user: Optional[str]

    class Config:
        from_attributes = True


class AdminTransactionResponse(TransactionResponse):
    admin_notes: Optional[str]
