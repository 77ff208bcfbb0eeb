from typing import List

from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ..dependencies.auth import require_operator
from ..dependencies.get_db import get_db
from ..schemas.account import (
    AccountResponse,
    DisableAccountRequest,
    BalanceCorrectionRequest,
    LedgerEntryResponse,
)
from ..schemas.payout import PayoutResolveRequest, PayoutResponse
from ..schemas.transaction import (
    SaleEvent,
    TransitionRequest,
    TransactionEditRequest,
    AdminTransactionResponse,
)
from ..services.account_service import AccountService
from ..services.ledger_service import LedgerService, LedgerDelta
from ..services.payout_service import PayoutService
from ..services.transaction_service import TransactionService

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_operator)])


@router.post("/transactions", response_model=AdminTransactionResponse, status_code=201)
async def create_transaction(
    event: SaleEvent,
    db: AsyncSession = Depends(get_db)
):
    """Ingest a sale from the affiliate feed or manual operator entry."""
    transaction_service = TransactionService(db)
    return await transaction_service.create_transaction(
        sale_amount=event.sale_amount,
        store_id=event.store_id,
        account_id=event.account_id,
        click_id=event.click_id,
        coupon_id=event.coupon_id,
        order_id=event.order_id,
        transaction_date=event.transaction_date,
        cashback_amount=event.cashback_amount,
        notes_to_user=event.notes_to_user,
        admin_notes=event.admin_notes
    )


@router.post("/transactions/{transaction_id}/transition", response_model=AdminTransactionResponse)
async def transition_transaction(
    payload: TransitionRequest,
    transaction_id: int = Path(..., ge=1),
    db: AsyncSession = Depends(get_db)
):
    transaction_service = TransactionService(db)
    return await transaction_service.transition_transaction(
        transaction_id,
        payload.status,
        admin_notes=payload.admin_notes,
        rejection_reason=payload.rejection_reason
    )


@router.patch("/transactions/{transaction_id}", response_model=AdminTransactionResponse)
async def edit_transaction(
    payload: TransactionEditRequest,
    transaction_id: int = Path(..., ge=1),
    db: AsyncSession = Depends(get_db)
):
    """Edit status and, with `correction`, the cashback amount."""
    transaction_service = TransactionService(db)
    return await transaction_service.edit_transaction(
        transaction_id,
        payload.status,
        cashback_amount=payload.cashback_amount,
        admin_notes=payload.admin_notes,
        rejection_reason=payload.rejection_reason,
        correction=payload.correction
    )


@router.post("/payouts/{payout_id}/resolve", response_model=PayoutResponse)
async def resolve_payout(
    payload: PayoutResolveRequest,
    payout_id: int = Path(..., ge=1),
    db: AsyncSession = Depends(get_db)
):
    payout_service = PayoutService(db)
    return await payout_service.resolve_payout(
        payout_id,
        payload.outcome,
        admin_notes=payload.admin_notes,
        failure_reason=payload.failure_reason
    )


@router.post("/accounts/{account_id}/disable", response_model=AccountResponse)
async def set_account_disabled(
    payload: DisableAccountRequest,
    account_id: str = Path(..., min_length=1),
    db: AsyncSession = Depends(get_db)
):
    return await AccountService(db).set_disabled(account_id, payload.disabled)


@router.post("/accounts/{account_id}/corrections", response_model=AccountResponse)
async def correct_balances(
    payload: BalanceCorrectionRequest,
    account_id: str = Path(..., min_length=1),
    db: AsyncSession = Depends(get_db)
):
    """Manual balance correction. Reductions below zero are clamped."""
    ledger_service = LedgerService(db)
    return await ledger_service.adjust_balances(
        account_id,
        LedgerDelta(
            pending=payload.pending_delta,
            confirmed=payload.confirmed_delta,
            lifetime=payload.lifetime_delta,
            referral_bonus=payload.referral_bonus_delta
        ),
        reference=payload.reference
    )


@router.get("/accounts/{account_id}/ledger", response_model=List[LedgerEntryResponse])
async def get_ledger_history(
    account_id: str = Path(..., min_length=1),
    db: AsyncSession = Depends(get_db),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0)
):
    return await LedgerService(db).get_ledger_history(account_id, limit=limit, offset=offset)
