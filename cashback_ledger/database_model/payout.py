import enum

from sqlalchemy import Column, Integer, String, DateTime, Numeric, Text, JSON
from sqlalchemy.sql import func

from ..core.database import Base, utcnow


class PayoutStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    PROCESSING = "processing"
    PAID = "paid"
    REJECTED = "rejected"
    FAILED = "failed"


OUTSTANDING_PAYOUT_STATUSES = (
    PayoutStatus.PENDING.value,
    PayoutStatus.APPROVED.value,
    PayoutStatus.PROCESSING.value,
)


class PayoutRequest(Base):
    __tablename__ = "payout_requests"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(String(128), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    status = Column(String, nullable=False, default=PayoutStatus.PENDING.value, index=True)

    # Destination snapshot taken at request time
    payout_method = Column(String, nullable=False)
    payout_detail = Column(String, nullable=False)

    transaction_ids = Column(JSON, nullable=False, default=list)
    admin_notes = Column(Text, nullable=True)
    failure_reason = Column(String, nullable=True)

    requested_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    processed_at = Column(DateTime(timezone=True), nullable=True)

    version_id = Column(Integer, nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self):
        return f"<PayoutRequest(id={self.id}, account_id={self.account_id}, amount={self.amount}, status={self.status})>"
