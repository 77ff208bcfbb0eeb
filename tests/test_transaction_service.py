import pytest
import pytest_asyncio
from decimal import Decimal

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError

from cashback_ledger.core.errors import (
    ConsistencyError,
    DuplicateTransactionError,
    NotFoundError,
    ValidationError,
)
from cashback_ledger.database_model.transaction import Transaction
from cashback_ledger.services.account_service import AccountService
from cashback_ledger.services.click_service import ClickService
from cashback_ledger.services.ledger_service import LedgerService
from cashback_ledger.services.transaction_service import (
    TransactionService,
    calculate_cashback,
    transition_delta,
)
from cashback_ledger.database_model.transaction import TransactionStatus
from cashback_ledger.services import transaction_service as transaction_service_module

from conftest import ACCOUNT_ID, PERCENT_STORE_ID, FIXED_STORE_ID


def balances(account):
    return (
        account.pending_cashback,
        account.cashback_balance,
        account.lifetime_cashback,
        account.referral_bonus_earned,
    )


class TestCashbackCalculation:
    """Pure rate and delta helpers."""

    def test_percentage_rate(self):
        amount, display = calculate_cashback(Decimal("1000.00"), "percentage", Decimal("5.00"))
        assert amount == Decimal("50.00")
        assert display == "5%"

    def test_percentage_rounds_half_up(self):
        amount, display = calculate_cashback(Decimal("10.10"), "percentage", Decimal("2.50"))
        assert amount == Decimal("0.25")
        assert display == "2.5%"

    def test_fixed_rate_ignores_sale_amount(self):
        amount, display = calculate_cashback(Decimal("9999.00"), "fixed", Decimal("25"))
        assert amount == Decimal("25.00")
        assert display == "Flat 25.00"

    def test_unknown_rate_type(self):
        with pytest.raises(ValidationError):
            calculate_cashback(Decimal("10"), "tiered", Decimal("1"))

    def test_reversal_delta(self):
        delta = transition_delta(
            TransactionStatus.CONFIRMED, Decimal("50"), TransactionStatus.REJECTED, Decimal("50")
        )
        assert delta.pending == 0
        assert delta.confirmed == Decimal("-50")
        assert delta.lifetime == Decimal("-50")


@pytest.mark.unit
@pytest.mark.transaction
class TestTransactionService:
    """Test suite for TransactionService."""

    @pytest_asyncio.fixture
    async def transaction_service(self, db_session):
        return TransactionService(db_session)

    @pytest_asyncio.fixture
    async def ledger(self, db_session):
        return LedgerService(db_session)

    @pytest_asyncio.fixture
    async def pending_transaction(self, transaction_service, test_account):
        """Sale of 1000 at 5%: cashback 50.00."""
        transaction = await transaction_service.create_transaction(
            sale_amount=Decimal("1000.00"),
            store_id=PERCENT_STORE_ID,
            account_id=ACCOUNT_ID
        )
        return transaction.id

    async def test_create_accrues_pending(self, transaction_service, ledger, pending_transaction):
        transaction = await transaction_service.get_transaction(pending_transaction)
        account = await ledger.get_account(ACCOUNT_ID)

        assert transaction.status == "pending"
        assert transaction.cashback_amount == Decimal("50.00")
        assert transaction.cashback_rate_applied == "5%"
        assert balances(account) == (Decimal("50.00"), 0, 0, 0)

    async def test_fixed_store_rate(self, transaction_service, test_account):
        transaction = await transaction_service.create_transaction(
            sale_amount=Decimal("12.00"),
            store_id=FIXED_STORE_ID,
            account_id=ACCOUNT_ID
        )
        assert transaction.cashback_amount == Decimal("25.00")

    async def test_confirm_moves_pending_to_available(self, transaction_service, ledger, pending_transaction):
        transaction = await transaction_service.transition_transaction(pending_transaction, "confirmed")
        account = await ledger.get_account(ACCOUNT_ID)

        assert transaction.status == "confirmed"
        assert transaction.confirmation_date is not None
        assert balances(account) == (0, Decimal("50.00"), Decimal("50.00"), 0)

    async def test_confirm_then_reverse_restores_balances(self, transaction_service, ledger, pending_transaction):
        await transaction_service.transition_transaction(pending_transaction, "confirmed")
        transaction = await transaction_service.transition_transaction(
            pending_transaction, "rejected", rejection_reason="Order returned"
        )
        account = await ledger.get_account(ACCOUNT_ID)

        assert transaction.rejection_reason == "Order returned"
        assert balances(account) == (0, 0, 0, 0)

    @pytest.mark.parametrize("outcome", ["rejected", "cancelled"])
    async def test_pending_outcomes_release_pending(self, transaction_service, ledger, pending_transaction, outcome):
        await transaction_service.transition_transaction(pending_transaction, outcome)
        account = await ledger.get_account(ACCOUNT_ID)

        assert balances(account) == (0, 0, 0, 0)

    async def test_same_status_is_noop(self, transaction_service, ledger, pending_transaction):
        await transaction_service.transition_transaction(pending_transaction, "confirmed")
        await transaction_service.transition_transaction(pending_transaction, "confirmed", admin_notes="checked twice")

        account = await ledger.get_account(ACCOUNT_ID)
        history = await ledger.get_ledger_history(ACCOUNT_ID)
        transaction = await transaction_service.get_transaction(pending_transaction)

        assert balances(account) == (0, Decimal("50.00"), Decimal("50.00"), 0)
        assert [entry.reason for entry in history] == ["transaction_status", "transaction_created"]
        assert transaction.admin_notes == "checked twice"

    async def test_terminal_status_cannot_move(self, transaction_service, ledger, pending_transaction):
        await transaction_service.transition_transaction(pending_transaction, "cancelled")

        with pytest.raises(ConsistencyError):
            await transaction_service.transition_transaction(pending_transaction, "confirmed")

        transaction = await transaction_service.get_transaction(pending_transaction)
        account = await ledger.get_account(ACCOUNT_ID)
        assert transaction.status == "cancelled"
        assert balances(account) == (0, 0, 0, 0)

    async def test_transition_outside_table_rejected(self, transaction_service, pending_transaction):
        with pytest.raises(ValidationError):
            await transaction_service.transition_transaction(pending_transaction, "paid")

    async def test_paid_requires_payout(self, transaction_service, pending_transaction):
        await transaction_service.transition_transaction(pending_transaction, "confirmed")

        with pytest.raises(ConsistencyError):
            await transaction_service.transition_transaction(pending_transaction, "paid")

    async def test_unknown_status(self, transaction_service, pending_transaction):
        with pytest.raises(ValidationError):
            await transaction_service.transition_transaction(pending_transaction, "approved")

    async def test_missing_transaction(self, transaction_service, test_account):
        with pytest.raises(NotFoundError):
            await transaction_service.transition_transaction(999, "confirmed")

    async def test_correction_reopens_rejected(self, transaction_service, ledger, pending_transaction):
        await transaction_service.transition_transaction(pending_transaction, "rejected", rejection_reason="No order")

        with pytest.raises(ConsistencyError):
            await transaction_service.edit_transaction(pending_transaction, "pending")

        transaction = await transaction_service.edit_transaction(pending_transaction, "pending", correction=True)
        account = await ledger.get_account(ACCOUNT_ID)

        assert transaction.status == "pending"
        assert transaction.rejection_reason is None
        assert balances(account) == (Decimal("50.00"), 0, 0, 0)

    async def test_amount_change_requires_correction(self, transaction_service, ledger, pending_transaction):
        with pytest.raises(ValidationError):
            await transaction_service.edit_transaction(
                pending_transaction, "pending", cashback_amount=Decimal("60.00")
            )

        transaction = await transaction_service.edit_transaction(
            pending_transaction, "pending", cashback_amount=Decimal("60.00"), correction=True
        )
        account = await ledger.get_account(ACCOUNT_ID)

        assert transaction.cashback_amount == Decimal("60.00")
        assert balances(account) == (Decimal("60.00"), 0, 0, 0)

    async def test_edit_reverts_old_effect_before_applying_new(self, transaction_service, ledger, pending_transaction):
        await transaction_service.transition_transaction(pending_transaction, "confirmed")

        await transaction_service.edit_transaction(
            pending_transaction, "confirmed", cashback_amount=Decimal("40.00"), correction=True
        )
        account = await ledger.get_account(ACCOUNT_ID)
        assert balances(account) == (0, Decimal("40.00"), Decimal("40.00"), 0)

        history = await ledger.get_ledger_history(ACCOUNT_ID, limit=1)
        assert history[0].reason == "transaction_correction"
        assert history[0].confirmed_delta == Decimal("-10.00")

    async def test_lifetime_equals_confirmed_minus_reversed(self, transaction_service, ledger, test_account):
        ids = []
        for store_id, sale in ((PERCENT_STORE_ID, "1000"), (PERCENT_STORE_ID, "400"), (FIXED_STORE_ID, "10")):
            transaction = await transaction_service.create_transaction(
                sale_amount=Decimal(sale),
                store_id=store_id,
                account_id=ACCOUNT_ID
            )
            ids.append(transaction.id)

        for transaction_id in ids:
            await transaction_service.transition_transaction(transaction_id, "confirmed")
        await transaction_service.transition_transaction(ids[2], "rejected")

        account = await ledger.get_account(ACCOUNT_ID)
        assert account.lifetime_cashback == Decimal("70.00")
        assert account.cashback_balance == Decimal("70.00")
        assert account.pending_cashback == Decimal("0.00")

    async def test_missing_account_writes_nothing(self, transaction_service, db_session, stores):
        with pytest.raises(NotFoundError):
            await transaction_service.create_transaction(
                sale_amount=Decimal("100.00"),
                store_id=PERCENT_STORE_ID,
                account_id="ghost"
            )

        count = await db_session.execute(select(func.count(Transaction.id)))
        assert count.scalar() == 0

    async def test_duplicate_order_rejected(self, transaction_service, ledger, test_account):
        await transaction_service.create_transaction(
            sale_amount=Decimal("1000.00"),
            store_id=PERCENT_STORE_ID,
            account_id=ACCOUNT_ID,
            order_id="ORD-1"
        )

        with pytest.raises(DuplicateTransactionError):
            await transaction_service.create_transaction(
                sale_amount=Decimal("1000.00"),
                store_id=PERCENT_STORE_ID,
                account_id=ACCOUNT_ID,
                order_id="ORD-1"
            )

        account = await ledger.get_account(ACCOUNT_ID)
        assert account.pending_cashback == Decimal("50.00")

    async def test_operator_override_amount(self, transaction_service, test_account):
        transaction = await transaction_service.create_transaction(
            sale_amount=Decimal("1000.00"),
            store_id=PERCENT_STORE_ID,
            account_id=ACCOUNT_ID,
            cashback_amount=Decimal("12.34")
        )
        assert transaction.cashback_amount == Decimal("12.34")
        assert transaction.cashback_rate_applied == "manual"

    async def test_disabled_account_rejected(self, transaction_service, db_session, test_account):
        await AccountService(db_session).set_disabled(ACCOUNT_ID, True)

        with pytest.raises(ValidationError):
            await transaction_service.create_transaction(
                sale_amount=Decimal("100.00"),
                store_id=PERCENT_STORE_ID,
                account_id=ACCOUNT_ID
            )


@pytest.mark.unit
@pytest.mark.transaction
@pytest.mark.click
class TestClickAttribution:
    """Sales attributed through recorded clicks."""

    @pytest_asyncio.fixture
    async def transaction_service(self, db_session):
        return TransactionService(db_session)

    @pytest_asyncio.fixture
    async def click_service(self, db_session):
        return ClickService(db_session)

    async def test_sale_attributed_to_click_owner(self, transaction_service, click_service, test_account):
        click = await click_service.record_click(PERCENT_STORE_ID, account_id=ACCOUNT_ID, coupon_id="SAVE10")

        transaction = await transaction_service.create_transaction(
            sale_amount=Decimal("200.00"),
            click_id=click.click_id
        )

        assert transaction.account_id == ACCOUNT_ID
        assert transaction.store_id == PERCENT_STORE_ID
        assert transaction.coupon_id == "SAVE10"
        assert transaction.cashback_amount == Decimal("10.00")

    async def test_click_rate_snapshot_wins(self, transaction_service, click_service, test_account):
        click = await click_service.record_click(
            PERCENT_STORE_ID,
            account_id=ACCOUNT_ID,
            product_id="sku-1",
            cashback_type="fixed",
            cashback_rate_value=Decimal("7.50")
        )

        transaction = await transaction_service.create_transaction(
            sale_amount=Decimal("200.00"),
            click_id=click.click_id
        )

        assert transaction.cashback_amount == Decimal("7.50")
        assert transaction.cashback_rate_applied == "Flat 7.50"

    async def test_anonymous_click_is_unmatched(self, transaction_service, click_service, test_account):
        click = await click_service.record_click(PERCENT_STORE_ID)

        with pytest.raises(ValidationError):
            await transaction_service.create_transaction(
                sale_amount=Decimal("200.00"),
                click_id=click.click_id
            )

    async def test_unknown_click_needs_account(self, transaction_service, test_account):
        with pytest.raises(ValidationError):
            await transaction_service.create_transaction(
                sale_amount=Decimal("200.00"),
                click_id="does-not-exist"
            )

    async def test_click_store_mismatch(self, transaction_service, click_service, test_account):
        click = await click_service.record_click(PERCENT_STORE_ID, account_id=ACCOUNT_ID)

        with pytest.raises(ValidationError):
            await transaction_service.create_transaction(
                sale_amount=Decimal("200.00"),
                store_id=FIXED_STORE_ID,
                click_id=click.click_id
            )

    async def test_click_owner_mismatch(self, transaction_service, click_service, db_session, test_account):
        await AccountService(db_session).create_or_update_account("user-b", email="b@example.com")
        click = await click_service.record_click(PERCENT_STORE_ID, account_id="user-b")

        with pytest.raises(ValidationError):
            await transaction_service.create_transaction(
                sale_amount=Decimal("200.00"),
                account_id=ACCOUNT_ID,
                click_id=click.click_id
            )

        count = await db_session.execute(select(func.count()).select_from(Transaction))
        assert count.scalar_one() == 0
        account = await LedgerService(db_session).get_account(ACCOUNT_ID)
        assert account.pending_cashback == Decimal("0.00")

    async def test_duplicate_order_names_click_store(
        self, transaction_service, click_service, test_account, monkeypatch
    ):
        click = await click_service.record_click(PERCENT_STORE_ID, account_id=ACCOUNT_ID)

        async def duplicate_on_commit(db, work, **kwargs):
            await work()
            await db.rollback()
            raise IntegrityError("INSERT INTO transactions", {}, Exception("UNIQUE constraint failed"))

        monkeypatch.setattr(transaction_service_module, "run_atomic", duplicate_on_commit)

        with pytest.raises(DuplicateTransactionError) as exc_info:
            await transaction_service.create_transaction(
                sale_amount=Decimal("200.00"),
                click_id=click.click_id,
                order_id="ORD-7"
            )

        assert PERCENT_STORE_ID in str(exc_info.value.detail)
        assert "None" not in str(exc_info.value.detail)
