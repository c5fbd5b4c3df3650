"""
Attention API - viewing-session validation and attention-gated rewards

Provides:
- POST /attention/validate: score a viewing session (records abuse when required)
- POST /attention/reward: validate a session and pay for it
"""
import logging
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from viewtrust.config import settings
from viewtrust.db.models import utcnow
from viewtrust.dependencies import get_current_user_id, get_db
from viewtrust.services.abuse_service import abuse_service
from viewtrust.services.attention_validator import ViewingSession, validate
from viewtrust.services.reward_service import reward_service
from viewtrust.services.trust_store import trust_store

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/attention", tags=["Attention"])


# ============================================================
# REQUEST MODELS
# ============================================================

class AttentionRequest(BaseModel):
    """Client-side telemetry for one finished viewing session"""
    attention_score: float = Field(..., alias="attentionScore")
    watch_duration: float = Field(..., alias="watchDuration", description="Seconds watched")
    total_duration: float = Field(..., alias="totalDuration", description="Content length in seconds")
    frames_detected: int = Field(..., alias="framesDetected")
    total_frames: int = Field(..., alias="totalFrames")
    device_fingerprint: Optional[str] = Field(None, alias="deviceFingerprint")
    content_id: Optional[str] = Field(None, alias="contentId")

    class Config:
        populate_by_name = True
        json_schema_extra = {
            "example": {
                "attentionScore": 85,
                "watchDuration": 27,
                "totalDuration": 30,
                "framesDetected": 40,
                "totalFrames": 50,
                "contentId": "promo-123"
            }
        }

    def to_session(self) -> ViewingSession:
        return ViewingSession(
            attention_score=self.attention_score,
            watch_duration_seconds=self.watch_duration,
            total_duration_seconds=self.total_duration,
            frames_with_face_detected=self.frames_detected,
            total_frames_sampled=self.total_frames,
            device_fingerprint=self.device_fingerprint,
            content_id=self.content_id
        )


class RewardRequest(AttentionRequest):
    base_amount: int = Field(..., alias="baseAmount")
    reward_type: str = Field("promo_view", alias="rewardType")
    coin_type: Optional[str] = Field(None, alias="coinType")


# ============================================================
# ENDPOINTS
# ============================================================

@router.post("/validate")
def validate_attention(
    body: AttentionRequest,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """
    Validate a viewing session.

    Checks (weight): attention score >= 60% (30), watch time >= 70% (25),
    face detected in >= 50% of frames (25), >= 30 frames sampled (10),
    watch/content ratio within 0.5-1.5 (10). Valid at >= 70 points.
    """
    session = body.to_session()
    since = utcnow() - timedelta(hours=settings.TRUST_WINDOW_HOURS)
    recent_abuse = trust_store.count_recent_abuse(db, user_id, since)
    verdict = validate(session, recent_abuse)

    if verdict.requires_abuse_report:
        abuse_service.report_verdict(
            db, user_id, session, verdict,
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent")
        )

    logger.info(
        f"Attention validation for user {user_id}: "
        f"score={verdict.validation_score} valid={verdict.is_valid}"
    )
    return verdict.to_response()


@router.post("/reward")
def issue_reward(
    body: RewardRequest,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Validate a viewing session and credit the reward it earns."""
    outcome = reward_service.issue_attention_reward(
        db,
        user_id=user_id,
        session=body.to_session(),
        base_amount=body.base_amount,
        reward_type=body.reward_type,
        currency=body.coin_type,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent")
    )
    return outcome.to_response()
