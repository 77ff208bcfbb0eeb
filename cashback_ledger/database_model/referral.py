from sqlalchemy import Column, Integer, String, DateTime, Numeric, UniqueConstraint
from sqlalchemy.sql import func

from ..core.database import Base, utcnow


class ReferralReward(Base):
    __tablename__ = "referral_rewards"

    id = Column(Integer, primary_key=True, index=True)
    referrer_id = Column(String(128), nullable=False, index=True)  # account that referred
    referred_id = Column(String(128), nullable=False)  # account that signed up
    referral_code = Column(String(32), nullable=False)
    reward_amount = Column(Numeric(12, 2), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    # One credit per referred account
    __table_args__ = (
        UniqueConstraint('referred_id', name='uq_referral_reward_referred'),
    )

    def __repr__(self):
        return f"<ReferralReward(id={self.id}, referrer_id={self.referrer_id}, amount={self.reward_amount})>"
