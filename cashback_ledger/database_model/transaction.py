import enum

from sqlalchemy import Column, Integer, String, DateTime, Numeric, Text, Index, UniqueConstraint
from sqlalchemy.sql import func

from ..core.database import Base, utcnow


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    PAID = "paid"


class Transaction(Base):
    """Cashback lifecycle of a single attributed sale."""
    __tablename__ = "cashback_transactions"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(String(128), nullable=False, index=True)
    store_id = Column(String(64), nullable=False)

    # Attribution provenance
    click_id = Column(String(64), nullable=True, index=True)
    coupon_id = Column(String(64), nullable=True)
    order_id = Column(String(128), nullable=True)  # network's order reference

    sale_amount = Column(Numeric(12, 2), nullable=False)
    cashback_amount = Column(Numeric(12, 2), nullable=False)  # frozen at creation
    cashback_rate_applied = Column(String, nullable=True)  # e.g. "5%" or "Flat 50.00"

    status = Column(String, nullable=False, default=TransactionStatus.PENDING.value)
    transaction_date = Column(DateTime(timezone=True), nullable=False)
    confirmation_date = Column(DateTime(timezone=True), nullable=True)
    paid_date = Column(DateTime(timezone=True), nullable=True)
    payout_id = Column(Integer, nullable=True, index=True)

    rejection_reason = Column(String, nullable=True)
    admin_notes = Column(Text, nullable=True)
    notes_to_user = Column(Text, nullable=True)

    version_id = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __mapper_args__ = {"version_id_col": version_id}

    __table_args__ = (
        UniqueConstraint('store_id', 'order_id', name='uq_transaction_store_order'),
        Index('idx_transactions_account_status', 'account_id', 'status'),
    )

    def __repr__(self):
        return f"<Transaction(id={self.id}, account_id={self.account_id}, status={self.status})>"
