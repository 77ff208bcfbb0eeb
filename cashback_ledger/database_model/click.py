from sqlalchemy import Column, Integer, String, DateTime, Numeric, Index
from sqlalchemy.sql import func

from ..core.database import Base, utcnow


class Click(Base):
    """Outbound redirect record. Written once, never updated."""
    __tablename__ = "clicks"

    id = Column(Integer, primary_key=True, index=True)
    click_id = Column(String(64), unique=True, index=True, nullable=False)
    account_id = Column(String(128), nullable=True, index=True)  # null for anonymous clicks
    store_id = Column(String(64), nullable=False)
    coupon_id = Column(String(64), nullable=True)
    product_id = Column(String(64), nullable=True)
    affiliate_link = Column(String, nullable=False)
    original_link = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)

    # Product-specific rate shown at click time, if any
    clicked_cashback_type = Column(String, nullable=True)
    clicked_cashback_rate_value = Column(Numeric(10, 2), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    __table_args__ = (
        Index('idx_clicks_account_created', 'account_id', 'created_at'),
    )

    def __repr__(self):
        return f"<Click(click_id={self.click_id}, account_id={self.account_id}, store_id={self.store_id})>"
