import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, List, Dict, FrozenSet

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..core.errors import ValidationError, ConsistencyError, NotFoundError
from ..database_model.account import Account
from ..database_model.payout import PayoutRequest, PayoutStatus
from ..database_model.transaction import Transaction, TransactionStatus
from ..utils.atomic import run_atomic
from ..utils.lock_manager import LockPatterns
from ..utils.money import ZERO, to_positive_amount
from .ledger_service import LedgerService, LedgerDelta
from .transaction_service import TransactionService

logger = logging.getLogger(__name__)

P = PayoutStatus

PAYOUT_TRANSITIONS: Dict[PayoutStatus, FrozenSet[PayoutStatus]] = {
    P.PENDING: frozenset({P.APPROVED, P.PROCESSING, P.PAID, P.REJECTED, P.FAILED}),
    P.APPROVED: frozenset({P.PROCESSING, P.PAID, P.REJECTED, P.FAILED}),
    P.PROCESSING: frozenset({P.PAID, P.FAILED}),
    P.PAID: frozenset(),
    P.REJECTED: frozenset(),
    P.FAILED: frozenset(),
}


def parse_payout_status(value) -> PayoutStatus:
    try:
        return PayoutStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown payout status '{value}'")


class PayoutService:
    """Turns confirmed balance into payout requests (reservation model).

    The requested amount leaves `cashback_balance` when the request is
    created; a rejected or failed payout puts it back.
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self.ledger = LedgerService(db)
        self.transactions = TransactionService(db, self.ledger)

    async def get_payout(self, payout_id: int) -> PayoutRequest:
        result = await self.db.execute(
            select(PayoutRequest)
            .where(PayoutRequest.id == payout_id)
            .execution_options(populate_existing=True)
        )
        payout = result.scalar_one_or_none()
        if not payout:
            raise NotFoundError(f"Payout request {payout_id} not found")
        return payout

    async def _unlinked_confirmed_transactions(
        self,
        account_id: str,
        confirmed_before: Optional[datetime] = None
    ) -> List[Transaction]:
        query = select(Transaction).where(
            Transaction.account_id == account_id,
            Transaction.status == TransactionStatus.CONFIRMED.value,
            Transaction.payout_id.is_(None)
        )
        if confirmed_before is not None:
            query = query.where(Transaction.confirmation_date <= confirmed_before)

        result = await self.db.execute(
            query
            .order_by(Transaction.transaction_date.asc(), Transaction.id.asc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def _link_transactions(
        self,
        payout: PayoutRequest,
        confirmed_before: Optional[datetime] = None
    ) -> List[Transaction]:
        """Attach confirmed, unlinked transactions oldest-first while they fit in the amount.

        With `confirmed_before`, only transactions confirmed by then are
        candidates.
        """
        linked = []
        covered = ZERO
        candidates = await self._unlinked_confirmed_transactions(payout.account_id, confirmed_before)
        for transaction in candidates:
            amount = Decimal(transaction.cashback_amount)
            if covered + amount > payout.amount:
                continue
            transaction.payout_id = payout.id
            linked.append(transaction)
            covered += amount
            if covered == payout.amount:
                break
        payout.transaction_ids = [transaction.id for transaction in linked]
        return linked

    async def request_payout(
        self,
        account_id: str,
        amount,
        payout_method: Optional[str] = None,
        payout_detail: Optional[str] = None
    ) -> PayoutRequest:
        """Reserve `amount` of confirmed balance for withdrawal.

        The destination defaults to the account's saved payout details
        and is snapshotted on the request. The saved detail is only used
        when the method is the saved method.
        """
        amount = to_positive_amount(amount, "amount")
        if amount < settings.min_payout_amount:
            raise ValidationError(f"Minimum payout amount is {settings.min_payout_amount}")
        if payout_method is not None and payout_method not in settings.payout_methods:
            raise ValidationError(f"Unsupported payout method '{payout_method}'")

        async def work() -> PayoutRequest:
            account = await self.ledger.get_account(account_id)
            if account.is_disabled:
                raise ValidationError("Account is disabled")

            method = payout_method or account.payout_method
            detail = payout_detail
            if not detail and method == account.payout_method:
                detail = account.payout_detail
            if not method or not detail:
                raise ValidationError("Payout destination is required")

            if amount > account.cashback_balance:
                raise ConsistencyError(
                    f"Requested {amount} exceeds available balance {account.cashback_balance}"
                )

            payout = PayoutRequest(
                account_id=account_id,
                amount=amount,
                status=P.PENDING.value,
                payout_method=method,
                payout_detail=detail,
                transaction_ids=[]
            )
            self.db.add(payout)
            await self.db.flush()

            await self._link_transactions(payout)
            self.ledger.apply_delta(
                account,
                LedgerDelta(confirmed=-amount),
                reason="payout_reserved",
                reference=f"payout:{payout.id}"
            )
            account.last_payout_request_at = datetime.now(timezone.utc)
            return payout

        payout = await run_atomic(
            self.db,
            work,
            operation=f"payout request for {account_id}",
            lock_key=LockPatterns.account_ledger(account_id)
        )
        logger.info(
            f"Payout {payout.id} requested by {account_id} for {payout.amount}, "
            f"covering transactions {payout.transaction_ids}"
        )
        return payout

    async def resolve_payout(
        self,
        payout_id: int,
        outcome,
        admin_notes: Optional[str] = None,
        failure_reason: Optional[str] = None
    ) -> PayoutRequest:
        """Move a payout along its lifecycle and settle the ledger.

        `paid` marks the covered transactions paid; `rejected`/`failed`
        return the reserved amount and release the transactions.
        """
        status = parse_payout_status(outcome)

        async def work() -> PayoutRequest:
            payout = await self.get_payout(payout_id)
            current = parse_payout_status(payout.status)
            if admin_notes is not None:
                payout.admin_notes = admin_notes

            if status == current:
                return payout
            if status not in PAYOUT_TRANSITIONS[current]:
                if not PAYOUT_TRANSITIONS[current]:
                    raise ConsistencyError(f"Payout {payout.id} is already {current.value}")
                raise ValidationError(f"Payout cannot move from {current.value} to {status.value}")

            account = await self.ledger.get_account(payout.account_id)

            if status == P.PAID:
                await self._settle(payout, account)
            elif status in (P.REJECTED, P.FAILED):
                await self._release(payout, account)
                payout.failure_reason = failure_reason

            payout.status = status.value
            payout.processed_at = datetime.now(timezone.utc)
            return payout

        payout = await run_atomic(
            self.db,
            work,
            operation=f"resolve payout {payout_id}",
            lock_key=LockPatterns.payout(payout_id)
        )
        logger.info(f"Payout {payout.id} for {payout.account_id} is now {payout.status}")
        return payout

    async def _linked_transactions(self, payout: PayoutRequest) -> List[Transaction]:
        result = await self.db.execute(
            select(Transaction)
            .where(Transaction.payout_id == payout.id)
            .order_by(Transaction.id.asc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def _settle(self, payout: PayoutRequest, account: Account) -> None:
        linked = await self._linked_transactions(payout)
        if not linked:
            linked = await self._link_transactions(payout, confirmed_before=payout.requested_at)
            logger.info(f"Bulk payout {payout.id} matched transactions {payout.transaction_ids}")

        for transaction in linked:
            self.transactions.apply_status_change(transaction, account, TransactionStatus.PAID)

    async def _release(self, payout: PayoutRequest, account: Account) -> None:
        self.ledger.apply_delta(
            account,
            LedgerDelta(confirmed=payout.amount),
            reason="payout_released",
            reference=f"payout:{payout.id}"
        )
        for transaction in await self._linked_transactions(payout):
            transaction.payout_id = None
        payout.transaction_ids = []

    async def list_payouts(
        self,
        account_id: str,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[PayoutRequest]:
        query = select(PayoutRequest).where(PayoutRequest.account_id == account_id)
        if status:
            query = query.where(PayoutRequest.status == parse_payout_status(status).value)
        query = query.order_by(PayoutRequest.id.desc()).offset(offset).limit(limit)

        result = await self.db.execute(query)
        return list(result.scalars().all())
