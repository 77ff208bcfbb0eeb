import logging
import uuid
from typing import Optional, Dict, Any, Tuple

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..core.errors import ValidationError
from ..database_model.account import Account
from ..database_model.payout import PayoutRequest, OUTSTANDING_PAYOUT_STATUSES
from ..utils.atomic import run_atomic
from ..utils.lock_manager import LockPatterns
from ..utils.money import ZERO
from .ledger_service import LedgerService
from .referral_service import ReferralService

logger = logging.getLogger(__name__)


class AccountService:
    """Account records keyed by the identity provider's user id."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.ledger = LedgerService(db)
        self.referrals = ReferralService(db, self.ledger)

    async def get_account(self, account_id: str) -> Account:
        return await self.ledger.get_account(account_id)

    async def create_or_update_account(
        self,
        account_id: str,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
        referred_by_code: Optional[str] = None
    ) -> Tuple[Account, bool]:
        """Create the account on first sight, otherwise refresh its profile.

        Referral crediting only happens on the creation path; an update
        never touches referral fields or balances.

        Returns:
            tuple: (Account, created)
        """
        if not account_id or not account_id.strip():
            raise ValidationError("Account id is required")

        async def work() -> Tuple[Account, bool]:
            result = await self.db.execute(
                select(Account)
                .where(Account.id == account_id)
                .execution_options(populate_existing=True)
            )
            account = result.scalar_one_or_none()

            if account:
                if email is not None:
                    account.email = email
                if display_name is not None:
                    account.display_name = display_name
                return account, False

            account = Account(
                id=account_id,
                email=email,
                display_name=display_name or "New User",
                pending_cashback=ZERO,
                cashback_balance=ZERO,
                lifetime_cashback=ZERO,
                referral_bonus_earned=ZERO,
                referral_code=await self._generate_unique_referral_code(),
                referral_count=0,
                is_disabled=False
            )
            self.db.add(account)
            await self.referrals.credit_referrer(account, referred_by_code)
            return account, True

        try:
            account, created = await run_atomic(
                self.db,
                work,
                operation=f"account upsert {account_id}",
                lock_key=LockPatterns.account_registration(account_id)
            )
        except IntegrityError:
            # Lost a creation race for the same id; the winner's row now exists.
            logger.warning(f"Account {account_id} created concurrently, retrying as update")
            account, created = await run_atomic(self.db, work, operation=f"account upsert {account_id}")

        if created:
            logger.info(f"Created account {account_id} with referral code {account.referral_code}")
        return account, created

    async def _generate_unique_referral_code(self) -> str:
        length = settings.referral_code_length
        while True:
            code = uuid.uuid4().hex[:length].upper()
            result = await self.db.execute(
                select(Account.id).where(Account.referral_code == code)
            )
            if result.scalar_one_or_none() is None:
                return code

    async def update_payout_details(self, account_id: str, method: str, detail: str) -> Account:
        if method not in settings.payout_methods:
            raise ValidationError(
                f"Unsupported payout method '{method}'. Allowed: {', '.join(settings.payout_methods)}"
            )
        if not detail or not detail.strip():
            raise ValidationError("Payout detail is required")

        async def work() -> Account:
            account = await self.ledger.get_account(account_id)
            account.payout_method = method
            account.payout_detail = detail.strip()
            return account

        return await run_atomic(self.db, work, operation=f"payout details for {account_id}")

    async def set_disabled(self, account_id: str, disabled: bool) -> Account:
        async def work() -> Account:
            account = await self.ledger.get_account(account_id)
            account.is_disabled = disabled
            return account

        account = await run_atomic(self.db, work, operation=f"disable flag for {account_id}")
        logger.info(f"Account {account_id} {'disabled' if disabled else 'enabled'}")
        return account

    async def get_balances(self, account_id: str) -> Dict[str, Any]:
        account = await self.ledger.get_account(account_id)

        result = await self.db.execute(
            select(func.coalesce(func.sum(PayoutRequest.amount), 0))
            .where(
                PayoutRequest.account_id == account_id,
                PayoutRequest.status.in_(OUTSTANDING_PAYOUT_STATUSES)
            )
        )
        outstanding = result.scalar() or ZERO

        return {
            "account_id": account.id,
            "pending_cashback": account.pending_cashback,
            "cashback_balance": account.cashback_balance,
            "lifetime_cashback": account.lifetime_cashback,
            "referral_bonus_earned": account.referral_bonus_earned,
            "referral_count": account.referral_count,
            "outstanding_payouts": outstanding,
            "referral_code": account.referral_code,
            "last_payout_request_at": account.last_payout_request_at,
        }
