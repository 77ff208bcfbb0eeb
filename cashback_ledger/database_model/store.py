import enum

from sqlalchemy import Column, String, Boolean, DateTime, Numeric
from sqlalchemy.sql import func

from ..core.database import Base, utcnow


class CashbackType(str, enum.Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class Store(Base):
    """Read-only catalog entry used to price cashback at sale time."""
    __tablename__ = "stores"

    id = Column(String(64), primary_key=True)
    name = Column(String, nullable=False)
    affiliate_link = Column(String, nullable=False)  # may contain the {CLICK_ID} placeholder
    cashback_type = Column(String, nullable=False, default=CashbackType.PERCENTAGE.value)
    cashback_rate_value = Column(Numeric(10, 2), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    def __repr__(self):
        return f"<Store(id={self.id}, type={self.cashback_type}, rate={self.cashback_rate_value})>"
