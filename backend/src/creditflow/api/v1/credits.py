"""Credit balance API endpoints."""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from creditflow.api.deps import get_current_user, get_db
from creditflow.schemas.credit import CreditBalance, CreditHistory, CreditLogEntry
from creditflow.services.ledger_service import LedgerService

router = APIRouter(prefix="/credits", tags=["credits"])


@router.get("/balance", response_model=CreditBalance)
async def get_balance(
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user),
) -> CreditBalance:
    """Get the caller's credit balance (0 before the first task)."""
    balance = await LedgerService(db).get_balance(user_id)
    return CreditBalance(user_id=user_id, balance=balance)


@router.get("/history", response_model=CreditHistory)
async def get_history(
    limit: int = Query(50, ge=1, le=200, description="Number of entries to return"),
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user),
) -> CreditHistory:
    """Get the caller's credit log, newest first."""
    entries = await LedgerService(db).history(user_id, limit=limit)
    return CreditHistory(items=[CreditLogEntry.model_validate(entry) for entry in entries])
