from decimal import Decimal

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Numeric
from sqlalchemy.sql import func

from ..core.database import Base, utcnow


class Account(Base):
    __tablename__ = "accounts"

    id = Column(String(128), primary_key=True)  # identity provider's stable id
    email = Column(String, nullable=True, index=True)
    display_name = Column(String, nullable=True)

    # Ledger fields, written only by LedgerService.apply_delta
    pending_cashback = Column(Numeric(12, 2), default=Decimal("0.00"), nullable=False)
    cashback_balance = Column(Numeric(12, 2), default=Decimal("0.00"), nullable=False)
    lifetime_cashback = Column(Numeric(12, 2), default=Decimal("0.00"), nullable=False)
    referral_bonus_earned = Column(Numeric(12, 2), default=Decimal("0.00"), nullable=False)

    referral_code = Column(String(32), unique=True, index=True, nullable=False)
    referral_count = Column(Integer, default=0, nullable=False)
    referred_by_code = Column(String(32), nullable=True)
    referred_by_id = Column(String(128), nullable=True, index=True)

    is_disabled = Column(Boolean, default=False, nullable=False)
    payout_method = Column(String, nullable=True)  # 'paypal', 'bank_transfer', 'gift_card'
    payout_detail = Column(String, nullable=True)
    last_payout_request_at = Column(DateTime(timezone=True), nullable=True)

    version_id = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self):
        return f"<Account(id={self.id}, pending={self.pending_cashback}, balance={self.cashback_balance})>"
