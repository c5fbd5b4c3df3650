"""
Wallet API - balances, history and currency conversion
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from viewtrust.dependencies import get_current_user_id, get_db
from viewtrust.services.ledger_service import ledger_service
from viewtrust.services.reward_service import reward_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/wallet", tags=["Wallet"])


class ConvertRequest(BaseModel):
    amount: int = Field(..., description="icoins to convert; multiple of the exchange rate")


@router.post("/open")
def open_wallet(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    return {"balances": ledger_service.open_account(db, user_id)}


@router.get("/balance")
def get_balance(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    return {
        "balances": ledger_service.get_balances(db, user_id),
        "daily": reward_service.daily_usage(db, user_id),
    }


@router.get("/transactions")
def list_transactions(
    currency: Optional[str] = Query(None, description="icoin or vicoin"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    return {
        "transactions": ledger_service.list_transactions(
            db, user_id, currency=currency, limit=limit, offset=offset
        )
    }


@router.post("/convert")
def convert(
    body: ConvertRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Convert icoins to vicoins (10 icoin = 1 vicoin)."""
    result = ledger_service.convert(db, user_id, body.amount)
    return {"success": True, **result.to_response()}
