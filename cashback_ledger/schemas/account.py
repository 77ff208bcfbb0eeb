from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field, EmailStr


class AccountUpsertRequest(BaseModel):
    """Profile fields supplied by the identity provider on session establishment."""
    email: Optional[EmailStr] = None
    display_name: Optional[str] = Field(None, max_length=200)
    referred_by_code: Optional[str] = Field(None, max_length=32)


class AccountResponse(BaseModel):
    id: str
    email: Optional[str]
    display_name: Optional[str]
    referral_code: str
    referral_count: int
    referred_by_code: Optional[str]
    is_disabled: bool
    payout_method: Optional[str]
    payout_detail: Optional[str]
    pending_cashback: Decimal
    cashback_balance: Decimal
    lifetime_cashback: Decimal
    referral_bonus_earned: Decimal

    class Config:
        from_attributes = True


class AccountUpsertResponse(BaseModel):
    account: AccountResponse
    created: bool


class BalanceResponse(BaseModel):
    account_id: str
    pending_cashback: Decimal
    cashback_balance: Decimal
    lifetime_cashback: Decimal
    referral_bonus_earned: Decimal
    referral_count: int
    outstanding_payouts: Decimal
    referral_code: str
    last_payout_request_at: Optional[datetime] = None


class PayoutDetailsRequest(BaseModel):
    method: str = Field(..., min_length=1)
    detail: str = Field(..., min_length=1, max_length=500)


class DisableAccountRequest(BaseModel):
    disabled: bool = True


class BalanceCorrectionRequest(BaseModel):
    pending_delta: Decimal = Decimal("0")
    confirmed_delta: Decimal = Decimal("0")
    lifetime_delta: Decimal = Decimal("0")
    referral_bonus_delta: Decimal = Decimal("0")
    reference: Optional[str] = Field(None, max_length=200)


class LedgerEntryResponse(BaseModel):
    id: int
    reason: str
    reference: Optional[str]
    pending_delta: Decimal
    confirmed_delta: Decimal
    lifetime_delta: Decimal
    referral_bonus_delta: Decimal
    pending_after: Decimal
    balance_after: Decimal
    lifetime_after: Decimal
    referral_bonus_after: Decimal
    created_at: Optional[datetime]

    class Config:
        from_attributes = True


class ReferralSummaryResponse(BaseModel):
    referral_code: str
    total_referrals: int
    total_rewards: Decimal
