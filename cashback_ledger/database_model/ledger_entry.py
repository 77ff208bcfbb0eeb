from sqlalchemy import Column, Integer, String, DateTime, Numeric, Index
from sqlalchemy.sql import func

from ..core.database import Base, utcnow


class LedgerEntry(Base):
    """Journal row for one delta applied to an account's balances."""
    __tablename__ = "ledger_entries"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(String(128), nullable=False)
    reason = Column(String, nullable=False)  # 'transaction_created', 'payout_reserved', ...
    reference = Column(String, nullable=True)  # e.g. 'transaction:12', 'payout:3'

    pending_delta = Column(Numeric(12, 2), nullable=False)
    confirmed_delta = Column(Numeric(12, 2), nullable=False)
    lifetime_delta = Column(Numeric(12, 2), nullable=False)
    referral_bonus_delta = Column(Numeric(12, 2), nullable=False)

    pending_after = Column(Numeric(12, 2), nullable=False)
    balance_after = Column(Numeric(12, 2), nullable=False)
    lifetime_after = Column(Numeric(12, 2), nullable=False)
    referral_bonus_after = Column(Numeric(12, 2), nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    __table_args__ = (
        Index('idx_ledger_account_created', 'account_id', 'created_at'),
    )

    def __repr__(self):
        return f"<LedgerEntry(id={self.id}, account_id={self.account_id}, reason={self.reason})>"
