import pytest
import pytest_asyncio
from decimal import Decimal

from cashback_ledger.core.errors import ConsistencyError, NotFoundError, ValidationError
from cashback_ledger.services.ledger_service import LedgerService, LedgerDelta

from conftest import ACCOUNT_ID


@pytest.mark.unit
@pytest.mark.ledger
class TestLedgerService:
    """Test suite for LedgerService."""

    @pytest_asyncio.fixture
    async def ledger(self, db_session):
        return LedgerService(db_session)

    def test_delta_negation_and_sum(self):
        delta = LedgerDelta(pending=Decimal("10"), confirmed=Decimal("-5"))
        combined = -delta + LedgerDelta(lifetime=Decimal("3"))

        assert combined == LedgerDelta(
            pending=Decimal("-10"),
            confirmed=Decimal("5"),
            lifetime=Decimal("3")
        )
        assert (delta + -delta).is_zero()

    async def test_apply_delta_updates_all_fields(self, ledger, db_session, test_account):
        account = await ledger.get_account(ACCOUNT_ID)
        entry = ledger.apply_delta(
            account,
            LedgerDelta(
                pending=Decimal("10.00"),
                confirmed=Decimal("4.00"),
                lifetime=Decimal("4.00"),
                referral_bonus=Decimal("1.50")
            ),
            reason="test_credit"
        )
        await db_session.commit()

        account = await ledger.get_account(ACCOUNT_ID)
        assert account.pending_cashback == Decimal("10.00")
        assert account.cashback_balance == Decimal("4.00")
        assert account.lifetime_cashback == Decimal("4.00")
        assert account.referral_bonus_earned == Decimal("1.50")
        assert entry.balance_after == Decimal("4.00")
        assert entry.reason == "test_credit"

    async def test_apply_zero_delta_is_skipped(self, ledger, test_account):
        account = await ledger.get_account(ACCOUNT_ID)
        assert ledger.apply_delta(account, LedgerDelta(), reason="noop") is None

    async def test_negative_result_rejected_without_partial_write(self, ledger, test_account):
        account = await ledger.get_account(ACCOUNT_ID)

        with pytest.raises(ConsistencyError):
            ledger.apply_delta(
                account,
                LedgerDelta(pending=Decimal("5.00"), confirmed=Decimal("-1.00")),
                reason="bad"
            )

        assert account.pending_cashback == Decimal("0.00")
        assert account.cashback_balance == Decimal("0.00")

    async def test_correction_clamps_reduction_to_zero(self, ledger, test_account):
        await ledger.adjust_balances(ACCOUNT_ID, LedgerDelta(pending=Decimal("5.00")))
        await ledger.adjust_balances(ACCOUNT_ID, LedgerDelta(pending=Decimal("-20.00")))

        account = await ledger.get_account(ACCOUNT_ID)
        assert account.pending_cashback == Decimal("0.00")

    async def test_empty_correction_rejected(self, ledger, test_account):
        with pytest.raises(ValidationError):
            await ledger.adjust_balances(ACCOUNT_ID, LedgerDelta())

    async def test_missing_account(self, ledger):
        with pytest.raises(NotFoundError):
            await ledger.get_account("nobody")

    async def test_ledger_history_newest_first(self, ledger, test_account):
        await ledger.adjust_balances(ACCOUNT_ID, LedgerDelta(confirmed=Decimal("7.00")), reference="ticket-1")
        await ledger.adjust_balances(ACCOUNT_ID, LedgerDelta(confirmed=Decimal("-2.00")), reference="ticket-2")

        history = await ledger.get_ledger_history(ACCOUNT_ID)

        assert [entry.reference for entry in history] == ["ticket-2", "ticket-1"]
        assert history[0].balance_after == Decimal("5.00")
        assert all(entry.reason == "manual_correction" for entry in history)
