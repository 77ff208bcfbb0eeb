import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..database_model.account import Account
from ..database_model.ledger_entry import LedgerEntry
from ..core.errors import NotFoundError, ConsistencyError, ValidationError
from ..utils.atomic import run_atomic
from ..utils.lock_manager import LockPatterns
from ..utils.money import ZERO, to_amount

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerDelta:
    """Signed change to the four balance fields of one account."""
    pending: Decimal = ZERO
    confirmed: Decimal = ZERO
    lifetime: Decimal = ZERO
    referral_bonus: Decimal = ZERO

    def __add__(self, other: "LedgerDelta") -> "LedgerDelta":
        return LedgerDelta(
            pending=self.pending + other.pending,
            confirmed=self.confirmed + other.confirmed,
            lifetime=self.lifetime + other.lifetime,
            referral_bonus=self.referral_bonus + other.referral_bonus,
        )

    def __neg__(self) -> "LedgerDelta":
        return LedgerDelta(
            pending=-self.pending,
            confirmed=-self.confirmed,
            lifetime=-self.lifetime,
            referral_bonus=-self.referral_bonus,
        )

    def is_zero(self) -> bool:
        return not any((self.pending, self.confirmed, self.lifetime, self.referral_bonus))


# (delta attribute, account column)
_FIELD_MAP = (
    ("pending", "pending_cashback"),
    ("confirmed", "cashback_balance"),
    ("lifetime", "lifetime_cashback"),
    ("referral_bonus", "referral_bonus_earned"),
)


class LedgerService:
    """The only writer of an account's balance fields.

    `apply_delta` mutates a loaded account inside the caller's atomic
    operation; the caller commits it together with its own status write.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_account(self, account_id: str) -> Account:
        """Load the latest committed state of an account."""
        result = await self.db.execute(
            select(Account)
            .where(Account.id == account_id)
            .execution_options(populate_existing=True)
        )
        account = result.scalar_one_or_none()
        if not account:
            raise NotFoundError(f"Account {account_id} not found")
        return account

    def apply_delta(
        self,
        account: Account,
        delta: LedgerDelta,
        reason: str,
        reference: Optional[str] = None,
        correction: bool = False
    ) -> Optional[LedgerEntry]:
        """Apply all four deltas to `account` as one unit.

        A field that would go negative fails the whole delta with
        ConsistencyError, unless `correction` is set and that field's
        delta is a reduction, in which case it is clamped to zero.
        """
        delta = LedgerDelta(
            pending=to_amount(delta.pending, "pending delta"),
            confirmed=to_amount(delta.confirmed, "confirmed delta"),
            lifetime=to_amount(delta.lifetime, "lifetime delta"),
            referral_bonus=to_amount(delta.referral_bonus, "referral bonus delta"),
        )
        if delta.is_zero():
            return None

        new_values = {}
        for delta_field, column in _FIELD_MAP:
            current = to_amount(getattr(account, column) or ZERO, column)
            change = getattr(delta, delta_field)
            updated = current + change
            if updated < ZERO:
                if correction and change < ZERO:
                    logger.warning(
                        f"Clamping {column} for account {account.id} to zero "
                        f"(current {current}, correction {change}, {reason} {reference or ''})"
                    )
                    updated = ZERO
                else:
                    raise ConsistencyError(
                        f"{column} of account {account.id} would become negative: "
                        f"current {current}, change {change}"
                    )
            new_values[column] = updated

        for column, value in new_values.items():
            setattr(account, column, value)

        entry = LedgerEntry(
            account_id=account.id,
            reason=reason,
            reference=reference,
            pending_delta=delta.pending,
            confirmed_delta=delta.confirmed,
            lifetime_delta=delta.lifetime,
            referral_bonus_delta=delta.referral_bonus,
            pending_after=new_values["pending_cashback"],
            balance_after=new_values["cashback_balance"],
            lifetime_after=new_values["lifetime_cashback"],
            referral_bonus_after=new_values["referral_bonus_earned"],
        )
        self.db.add(entry)
        return entry

    async def adjust_balances(
        self,
        account_id: str,
        delta: LedgerDelta,
        reason: str = "manual_correction",
        reference: Optional[str] = None
    ) -> Account:
        """Operator correction applied directly to an account's balances."""
        if delta.is_zero():
            raise ValidationError("Correction must change at least one balance")

        async def work() -> Account:
            account = await self.get_account(account_id)
            self.apply_delta(account, delta, reason, reference, correction=True)
            return account

        account = await run_atomic(
            self.db,
            work,
            operation=f"balance correction for account {account_id}",
            lock_key=LockPatterns.account_ledger(account_id)
        )
        logger.info(f"Applied correction {delta} to account {account_id}")
        return account

    async def get_ledger_history(
        self,
        account_id: str,
        limit: int = 50,
        offset: int = 0
    ) -> List[LedgerEntry]:
        result = await self.db.execute(
            select(LedgerEntry)
            .where(LedgerEntry.account_id == account_id)
            .order_by(LedgerEntry.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all())
