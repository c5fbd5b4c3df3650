"""
Settlement & Payout API

Provides:
- POST /settlements/purchase: credit a reconciled purchase (internal)
- POST /payouts: request a payout (user)
- GET /payouts: list the caller's payouts
- POST /payouts/{payout_id}/processing|complete|fail: payout lifecycle (internal)
- POST /kyc/status: record a KYC provider outcome (internal)
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from viewtrust.db.models import TransactionType
from viewtrust.dependencies import get_current_user_id, get_db, verify_api_key
from viewtrust.services.ledger_service import ledger_service

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Settlements"])


class PurchaseSettlementRequest(BaseModel):
    user_id: str = Field(..., alias="userId")
    currency: str = Field("icoin")
    amount: int
    reference_id: str = Field(..., alias="referenceId", description="Provider session or charge id")
    description: Optional[str] = None

    class Config:
        populate_by_name = True


class PayoutRequestBody(BaseModel):
    currency: str = Field(..., alias="coinType")
    amount: int
    method: str

    class Config:
        populate_by_name = True


class PayoutCompleteRequest(BaseModel):
    external_reference: Optional[str] = Field(None, alias="externalReference")

    class Config:
        populate_by_name = True


class PayoutFailRequest(BaseModel):
    reason: str


class KycStatusRequest(BaseModel):
    user_id: str = Field(..., alias="userId")
    status: str = Field(..., description="pending, submitted, verified or rejected")

    class Config:
        populate_by_name = True


@router.post("/settlements/purchase")
def record_purchase(
    body: PurchaseSettlementRequest,
    db: Session = Depends(get_db),
    api_key: str = Depends(verify_api_key)
):
    """Credit a purchase once its payment has been reconciled upstream."""
    result = ledger_service.record_settlement(
        db,
        user_id=body.user_id,
        currency=body.currency,
        amount=body.amount,
        settlement_type=TransactionType.PURCHASE,
        reference_id=body.reference_id,
        description=body.description
    )
    return result.to_response()


@router.post("/payouts")
def request_payout(
    body: PayoutRequestBody,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    return ledger_service.request_payout(db, user_id, body.currency, body.amount, body.method)


@router.get("/payouts")
def list_payouts(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    return {"payouts": ledger_service.list_payouts(db, user_id)}


@router.post("/payouts/{payout_id}/processing")
def start_payout(
    payout_id: int,
    db: Session = Depends(get_db),
    api_key: str = Depends(verify_api_key)
):
    return ledger_service.start_payout(db, payout_id)


@router.post("/payouts/{payout_id}/complete")
def complete_payout(
    payout_id: int,
    body: Optional[PayoutCompleteRequest] = None,
    db: Session = Depends(get_db),
    api_key: str = Depends(verify_api_key)
):
    external_reference = body.external_reference if body else None
    return ledger_service.complete_payout(db, payout_id, external_reference)


@router.post("/payouts/{payout_id}/fail")
def fail_payout(
    payout_id: int,
    body: PayoutFailRequest,
    db: Session = Depends(get_db),
    api_key: str = Depends(verify_api_key)
):
    return ledger_service.fail_payout(db, payout_id, body.reason)


@router.post("/kyc/status")
def set_kyc_status(
    body: KycStatusRequest,
    db: Session = Depends(get_db),
    api_key: str = Depends(verify_api_key)
):
    """Payouts stay blocked until the user's status is verified."""
    kyc_status = ledger_service.set_kyc_status(db, body.user_id, body.status)
    return {"userId": body.user_id, "kycStatus": kyc_status}
