"""
Trust API - device reputation endpoints
"""
import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from viewtrust.db.models import utcnow
from viewtrust.dependencies import get_current_user_id, get_db
from viewtrust.errors import retry_on_conflict
from viewtrust.services.trust_engine import trust_engine
from viewtrust.services.trust_store import trust_store

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/trust", tags=["Trust"])


class TrustUpdateRequest(BaseModel):
    device_fingerprint: str = Field(..., alias="deviceFingerprint")
    event: str = Field(..., description="Trust event, e.g. successful_login")
    device_info: Optional[Dict[str, Any]] = Field(None, alias="deviceInfo")

    class Config:
        populate_by_name = True


class ReregisterRequest(BaseModel):
    old_fingerprint: str = Field(..., alias="oldFingerprint")
    new_fingerprint: str = Field(..., alias="newFingerprint")
    device_info: Optional[Dict[str, Any]] = Field(None, alias="deviceInfo")

    class Config:
        populate_by_name = True


@router.post("/update")
def update_trust(
    body: TrustUpdateRequest,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Apply one trust event to the caller's device."""
    update = retry_on_conflict(trust_engine.update_trust)(
        db,
        user_id=user_id,
        device_fingerprint=body.device_fingerprint,
        event=body.event,
        device_info=body.device_info,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent")
    )
    return update.to_response()


@router.post("/devices/reregister")
def reregister_device(
    body: ReregisterRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Move a device's reputation to its new fingerprint."""
    device = trust_engine.reregister_device(
        db, user_id, body.old_fingerprint, body.new_fingerprint, body.device_info
    )
    return {
        "deviceId": device.id,
        "trustScore": device.trust_score,
        "isTrusted": device.is_trusted,
        "isFlagged": device.is_flagged,
    }


@router.get("/devices")
def list_devices(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    return {"devices": trust_engine.list_devices(db, user_id)}


@router.get("/abuse")
def list_abuse_events(
    hours: int = Query(24, ge=1, le=24 * 30),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Caller's abuse events in the trailing window."""
    events = trust_store.list_abuse_events(db, user_id, since=utcnow() - timedelta(hours=hours))
    return {
        "events": [
            {
                "id": e.id,
                "abuseType": e.abuse_type,
                "severity": e.severity,
                "details": e.details,
                "resolved": e.resolved,
                "createdAt": e.created_at.isoformat() if e.created_at else None,
            }
            for e in events
        ]
    }


@router.get("/activity")
def list_activity(
    activity_type: Optional[str] = Query(None, alias="type"),
    limit: int = Query(50, ge=1, le=200),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Caller's audit trail (trust updates, ledger mutations)."""
    rows = trust_store.list_activity(db, user_id, activity_type=activity_type, limit=limit)
    return {
        "activity": [
            {
                "id": a.id,
                "activityType": a.activity_type,
                "status": a.status,
                "details": a.details,
                "createdAt": a.created_at.isoformat() if a.created_at else None,
            }
            for a in rows
        ]
    }
