import logging
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, List, Tuple, Dict, FrozenSet

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.errors import ValidationError, ConsistencyError, DuplicateTransactionError, NotFoundError
from ..database_model.account import Account
from ..database_model.store import CashbackType
from ..database_model.transaction import Transaction, TransactionStatus
from ..utils.atomic import run_atomic
from ..utils.lock_manager import LockPatterns
from ..utils.money import CENT, to_positive_amount, to_non_negative_amount
from .click_service import ClickService
from .ledger_service import LedgerService, LedgerDelta

logger = logging.getLogger(__name__)

S = TransactionStatus

TRANSITIONS: Dict[TransactionStatus, FrozenSet[TransactionStatus]] = {
    S.PENDING: frozenset({S.CONFIRMED, S.REJECTED, S.CANCELLED}),
    S.CONFIRMED: frozenset({S.PAID, S.REJECTED}),
    S.REJECTED: frozenset(),
    S.CANCELLED: frozenset(),
    S.PAID: frozenset(),
}

# Allowed only as an explicit operator correction
CORRECTION_TRANSITIONS: Dict[TransactionStatus, FrozenSet[TransactionStatus]] = {
    S.REJECTED: frozenset({S.PENDING}),
}

TERMINAL_STATUSES = frozenset(status for status, targets in TRANSITIONS.items() if not targets)


def status_effect(status: TransactionStatus, amount: Decimal) -> LedgerDelta:
    """Balance contribution of a transaction sitting in `status`.

    A paid transaction keeps its confirmed contribution: the money left
    `cashback_balance` through the payout's own reservation.
    """
    if status == S.PENDING:
        return LedgerDelta(pending=amount)
    if status in (S.CONFIRMED, S.PAID):
        return LedgerDelta(confirmed=amount, lifetime=amount)
    return LedgerDelta()


def transition_delta(
    old_status: TransactionStatus,
    old_amount: Decimal,
    new_status: TransactionStatus,
    new_amount: Decimal
) -> LedgerDelta:
    """Revert the old status's effect, then apply the new one."""
    return -status_effect(old_status, old_amount) + status_effect(new_status, new_amount)


def parse_status(value) -> TransactionStatus:
    try:
        return TransactionStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown transaction status '{value}'")


def calculate_cashback(sale_amount: Decimal, cashback_type: str, rate_value: Decimal) -> Tuple[Decimal, str]:
    """Cashback for a sale and the display string of the applied rate."""
    rate_value = Decimal(rate_value)
    if cashback_type == CashbackType.PERCENTAGE.value:
        amount = (sale_amount * rate_value / Decimal(100)).quantize(CENT, rounding=ROUND_HALF_UP)
        return amount, f"{rate_value.normalize():f}%"
    if cashback_type == CashbackType.FIXED.value:
        amount = rate_value.quantize(CENT, rounding=ROUND_HALF_UP)
        return amount, f"Flat {amount}"
    raise ValidationError(f"Unknown cashback type '{cashback_type}'")


class TransactionService:
    """Cashback transaction state machine.

    Every status change applies its ledger delta in the same atomic
    operation as the status write.
    """

    def __init__(self, db: AsyncSession, ledger: Optional[LedgerService] = None):
        self.db = db
        self.ledger = ledger or LedgerService(db)
        self.clicks = ClickService(db)

    async def get_transaction(self, transaction_id: int) -> Transaction:
        result = await self.db.execute(
            select(Transaction)
            .where(Transaction.id == transaction_id)
            .execution_options(populate_existing=True)
        )
        transaction = result.scalar_one_or_none()
        if not transaction:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return transaction

    async def create_transaction(
        self,
        sale_amount,
        store_id: Optional[str] = None,
        account_id: Optional[str] = None,
        click_id: Optional[str] = None,
        coupon_id: Optional[str] = None,
        order_id: Optional[str] = None,
        transaction_date: Optional[datetime] = None,
        cashback_amount=None,
        notes_to_user: Optional[str] = None,
        admin_notes: Optional[str] = None
    ) -> Transaction:
        """Record a sale as a pending transaction and accrue its pending cashback.

        The account comes from `account_id` or, failing that, from the
        owner of `click_id`. `cashback_amount` is an operator override of
        the computed amount.
        """
        sale_amount = to_positive_amount(sale_amount, "sale_amount")
        override = None
        if cashback_amount is not None:
            override = to_non_negative_amount(cashback_amount, "cashback_amount")
        if not store_id and not click_id:
            raise ValidationError("store_id or click_id is required")

        resolved = {"store_id": store_id}

        async def work() -> Transaction:
            click = await self.clicks.get_click(click_id) if click_id else None
            owner_id = account_id
            resolved_store_id = store_id

            if click_id:
                if click is None and owner_id is None:
                    raise ValidationError(f"Unmatched click {click_id}: no account to attribute the sale to")
                if click is not None:
                    if owner_id and click.account_id and click.account_id != owner_id:
                        raise ValidationError(
                            f"Click {click_id} belongs to account {click.account_id}, not {owner_id}"
                        )
                    owner_id = owner_id or click.account_id
                    resolved_store_id = resolved_store_id or click.store_id
                    if click.store_id != resolved_store_id:
                        raise ValidationError(
                            f"Click {click_id} belongs to store {click.store_id}, not {resolved_store_id}"
                        )
            if owner_id is None:
                raise ValidationError(f"Unmatched click {click_id}: click is anonymous")

            resolved["store_id"] = resolved_store_id
            store = await self.clicks.get_store(resolved_store_id)
            account = await self.ledger.get_account(owner_id)
            if account.is_disabled:
                raise ValidationError(f"Account {owner_id} is disabled")

            if order_id:
                existing = await self.db.execute(
                    select(Transaction.id).where(
                        Transaction.store_id == resolved_store_id,
                        Transaction.order_id == order_id
                    )
                )
                if existing.scalar_one_or_none() is not None:
                    raise DuplicateTransactionError(
                        f"Order {order_id} for store {resolved_store_id} already recorded"
                    )

            if click is not None and click.clicked_cashback_type:
                amount, rate_applied = calculate_cashback(
                    sale_amount, click.clicked_cashback_type, click.clicked_cashback_rate_value
                )
            else:
                amount, rate_applied = calculate_cashback(
                    sale_amount, store.cashback_type, store.cashback_rate_value
                )
            if override is not None:
                amount, rate_applied = override, "manual"

            transaction = Transaction(
                account_id=owner_id,
                store_id=resolved_store_id,
                click_id=click_id,
                coupon_id=coupon_id or (click.coupon_id if click else None),
                order_id=order_id,
                sale_amount=sale_amount,
                cashback_amount=amount,
                cashback_rate_applied=rate_applied,
                status=S.PENDING.value,
                transaction_date=transaction_date or datetime.now(timezone.utc),
                notes_to_user=notes_to_user,
                admin_notes=admin_notes
            )
            self.db.add(transaction)
            await self.db.flush()

            self.ledger.apply_delta(
                account,
                status_effect(S.PENDING, amount),
                reason="transaction_created",
                reference=f"transaction:{transaction.id}"
            )
            return transaction

        try:
            transaction = await run_atomic(
                self.db,
                work,
                operation="create transaction",
                lock_key=LockPatterns.account_ledger(account_id) if account_id else None
            )
        except IntegrityError:
            raise DuplicateTransactionError(
                f"Order {order_id} for store {resolved['store_id']} already recorded"
            )

        logger.info(
            f"Transaction {transaction.id} created for account {transaction.account_id}: "
            f"sale {transaction.sale_amount}, cashback {transaction.cashback_amount}"
        )
        return transaction

    async def transition_transaction(
        self,
        transaction_id: int,
        new_status,
        admin_notes: Optional[str] = None,
        rejection_reason: Optional[str] = None
    ) -> Transaction:
        """Move a transaction to `new_status`. Moving to the current status is a no-op."""
        return await self.edit_transaction(
            transaction_id,
            new_status,
            admin_notes=admin_notes,
            rejection_reason=rejection_reason
        )

    async def edit_transaction(
        self,
        transaction_id: int,
        new_status,
        cashback_amount=None,
        admin_notes: Optional[str] = None,
        rejection_reason: Optional[str] = None,
        correction: bool = False
    ) -> Transaction:
        """Operator edit of status and, as a correction, cashback amount."""
        status = parse_status(new_status)
        new_amount = None
        if cashback_amount is not None:
            new_amount = to_non_negative_amount(cashback_amount, "cashback_amount")

        async def work() -> Transaction:
            transaction = await self.get_transaction(transaction_id)
            account = await self.ledger.get_account(transaction.account_id)
            self.apply_status_change(
                transaction,
                account,
                status,
                new_amount=new_amount,
                admin_notes=admin_notes,
                rejection_reason=rejection_reason,
                correction=correction
            )
            return transaction

        return await run_atomic(
            self.db,
            work,
            operation=f"transition transaction {transaction_id}",
            lock_key=LockPatterns.transaction(transaction_id)
        )

    def apply_status_change(
        self,
        transaction: Transaction,
        account: Account,
        new_status: TransactionStatus,
        new_amount: Optional[Decimal] = None,
        admin_notes: Optional[str] = None,
        rejection_reason: Optional[str] = None,
        correction: bool = False
    ) -> bool:
        """Validate and apply one status change inside the caller's atomic operation.

        Returns:
            bool: False if nothing changed (same status, same amount)
        """
        if account.id != transaction.account_id:
            raise ConsistencyError(f"Transaction {transaction.id} does not belong to account {account.id}")

        old_status = parse_status(transaction.status)
        old_amount = Decimal(transaction.cashback_amount)
        amount_changed = new_amount is not None and new_amount != old_amount

        if admin_notes is not None:
            transaction.admin_notes = admin_notes

        if new_status == old_status and not amount_changed:
            return False

        if new_status != old_status:
            self._check_transition(transaction, old_status, new_status, correction)

        if amount_changed:
            if not correction:
                raise ValidationError("Cashback amount is fixed at creation; changing it requires a correction")
            if transaction.payout_id is not None or S.PAID in (old_status, new_status):
                raise ConsistencyError(
                    f"Cashback amount of transaction {transaction.id} cannot change once linked to a payout"
                )

        effective_amount = new_amount if amount_changed else old_amount
        delta = transition_delta(old_status, old_amount, new_status, effective_amount)
        reason = "transaction_correction" if correction else "transaction_status"
        self.ledger.apply_delta(
            account,
            delta,
            reason=reason,
            reference=f"transaction:{transaction.id}",
            correction=correction
        )

        now = datetime.now(timezone.utc)
        transaction.status = new_status.value
        if amount_changed:
            logger.warning(
                f"Transaction {transaction.id} cashback corrected from {old_amount} to {effective_amount}"
            )
            transaction.cashback_amount = effective_amount
        if new_status == S.CONFIRMED and old_status != S.CONFIRMED:
            transaction.confirmation_date = now
        elif new_status == S.PAID:
            transaction.paid_date = now
        elif new_status == S.REJECTED:
            transaction.rejection_reason = rejection_reason or transaction.rejection_reason
        elif new_status == S.PENDING:
            transaction.confirmation_date = None
            transaction.rejection_reason = None

        logger.info(
            f"Transaction {transaction.id} {old_status.value} -> {new_status.value} "
            f"for account {account.id}"
        )
        return True

    def _check_transition(
        self,
        transaction: Transaction,
        old_status: TransactionStatus,
        new_status: TransactionStatus,
        correction: bool
    ) -> None:
        if new_status in TRANSITIONS[old_status]:
            pass
        elif correction and new_status in CORRECTION_TRANSITIONS.get(old_status, frozenset()):
            logger.warning(
                f"Operator correction reopening transaction {transaction.id}: "
                f"{old_status.value} -> {new_status.value}"
            )
        elif old_status in TERMINAL_STATUSES:
            raise ConsistencyError(f"Transaction {transaction.id} is already {old_status.value}")
        else:
            raise ValidationError(
                f"Transaction cannot move from {old_status.value} to {new_status.value}"
            )

        if new_status == S.PAID and transaction.payout_id is None:
            raise ConsistencyError(
                f"Transaction {transaction.id} is not part of a payout; paid is set by payout settlement"
            )
        if old_status == S.CONFIRMED and new_status == S.REJECTED and transaction.payout_id is not None:
            raise ConsistencyError(
                f"Transaction {transaction.id} is held by payout {transaction.payout_id}; "
                f"resolve the payout before reversing it"
            )

    async def list_transactions(
        self,
        account_id: str,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[Transaction]:
        query = select(Transaction).where(Transaction.account_id == account_id)
        if status:
            query = query.where(Transaction.status == parse_status(status).value)
        query = query.order_by(Transaction.transaction_date.desc(), Transaction.id.desc())
        query = query.offset(offset).limit(limit)

        result = await self.db.execute(query)
        return list(result.scalars().all())
