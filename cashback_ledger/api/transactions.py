from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ..database_model.transaction import TransactionStatus
from ..dependencies.auth import get_current_account_id
from ..dependencies.get_db import get_db
from ..schemas.transaction import TransactionResponse
from ..services.transaction_service import TransactionService

router = APIRouter(prefix="/transactions", tags=["transactions"])


@router.get("", response_model=List[TransactionResponse])
async def list_transactions(
    account_id: str = Depends(get_current_account_id),
    db: AsyncSession = Depends(get_db),
    status: Optional[TransactionStatus] = Query(None),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0)
):
    """Cashback history of the caller, newest first."""
    transaction_service = TransactionService(db)
    return await transaction_service.list_transactions(
        account_id,
        status=status.value if status else None,
        limit=limit,
        offset=offset
    )
