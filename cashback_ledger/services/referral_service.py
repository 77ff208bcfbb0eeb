import logging
from typing import Optional, Dict, Any

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..database_model.account import Account
from ..database_model.referral import ReferralReward
from ..utils.money import to_non_negative_amount
from .ledger_service import LedgerService, LedgerDelta

logger = logging.getLogger(__name__)


def normalize_referral_code(code: Optional[str]) -> Optional[str]:
    if code is None:
        return None
    code = code.strip().upper()
    return code or None


class ReferralService:
    """Credits the referrer when a referred account is created."""

    def __init__(self, db: AsyncSession, ledger: Optional[LedgerService] = None):
        self.db = db
        self.ledger = ledger or LedgerService(db)

    async def get_account_by_referral_code(self, referral_code: str) -> Optional[Account]:
        result = await self.db.execute(
            select(Account)
            .where(Account.referral_code == referral_code)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def credit_referrer(
        self,
        new_account: Account,
        referred_by_code: Optional[str]
    ) -> Optional[ReferralReward]:
        """Credit the owner of `referred_by_code` for `new_account`.

        Must run inside the atomic operation that creates `new_account`;
        callers only invoke it for brand-new accounts. Unknown codes and
        self-referrals are skipped, never raised.
        """
        code = normalize_referral_code(referred_by_code)
        if not code:
            return None

        referrer = await self.get_account_by_referral_code(code)
        if not referrer:
            logger.warning(f"Referral code {code} used by {new_account.id} matches no account, skipping")
            return None

        if referrer.id == new_account.id:
            logger.info(f"Self-referral by account {new_account.id} with code {code} ignored")
            return None

        existing = await self.db.execute(
            select(ReferralReward.id).where(ReferralReward.referred_id == new_account.id)
        )
        if existing.scalar_one_or_none() is not None:
            logger.warning(f"Referral for account {new_account.id} already credited, skipping")
            return None

        bonus = to_non_negative_amount(settings.referral_bonus_amount, "referral bonus")

        new_account.referred_by_code = code
        new_account.referred_by_id = referrer.id
        referrer.referral_count = (referrer.referral_count or 0) + 1
        self.ledger.apply_delta(
            referrer,
            LedgerDelta(referral_bonus=bonus),
            reason="referral_bonus",
            reference=f"account:{new_account.id}"
        )

        reward = ReferralReward(
            referrer_id=referrer.id,
            referred_id=new_account.id,
            referral_code=code,
            reward_amount=bonus
        )
        self.db.add(reward)
        logger.info(f"Referral bonus {bonus} credited to {referrer.id} for new account {new_account.id}")
        return reward

    async def get_referral_summary(self, account_id: str) -> Dict[str, Any]:
        result = await self.db.execute(
            select(
                func.count(ReferralReward.id).label("total_referrals"),
                func.coalesce(func.sum(ReferralReward.reward_amount), 0).label("total_rewards")
            ).where(ReferralReward.referrer_id == account_id)
        )
        summary = result.first()
        return {
            "total_referrals": summary.total_referrals,
            "total_rewards": summary.total_rewards,
        }
