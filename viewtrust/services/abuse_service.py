"""
Abuse Service - records abuse events without ever failing the caller

A failed synchronous write is handed to the worker queue; a failed hand-off
is logged at CRITICAL for alerting.
"""
import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from viewtrust.db.models import AbuseEvent
from viewtrust.services.attention_validator import ValidationVerdict, ViewingSession
from viewtrust.services.trust_store import TrustStore, trust_store

logger = logging.getLogger(__name__)


class AbuseService:
    """Service for recording abuse events"""

    def __init__(self, store: TrustStore = trust_store):
        self.store = store

    def report_abuse(
        self,
        db: Session,
        user_id: str,
        abuse_type: str,
        severity: str = "low",
        details: Optional[Dict[str, Any]] = None,
        device_fingerprint: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None
    ) -> Optional[AbuseEvent]:
        """Write and commit one abuse event. Returns None if it had to be deferred."""
        payload = {
            "user_id": user_id,
            "abuse_type": abuse_type,
            "severity": severity,
            "details": details or {},
            "device_fingerprint": device_fingerprint,
            "ip_address": ip_address,
            "user_agent": user_agent,
        }
        try:
            event = self.store.add_abuse_event(db, **payload)
            db.commit()
            logger.info(f"Abuse recorded for user {user_id}: {abuse_type} ({severity})")
            return event
        except Exception as e:
            db.rollback()
            logger.critical(f"ALERT abuse log write failed for user {user_id}: {e}")
            self._defer(payload)
            return None

    def _defer(self, payload: Dict[str, Any]) -> None:
        try:
            from viewtrust.worker.tasks import record_abuse_event
            record_abuse_event.delay(payload)
        except Exception as e:
            logger.critical(f"ALERT abuse event dropped for user {payload['user_id']}: {e}")

    def report_verdict(
        self,
        db: Session,
        user_id: str,
        session: ViewingSession,
        verdict: ValidationVerdict,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None
    ) -> Optional[AbuseEvent]:
        """Record an attention_fraud event when the verdict calls for one."""
        if not verdict.requires_abuse_report:
            return None

        details = {
            "validation_score": verdict.validation_score,
            "failed_checks": verdict.failed_checks,
            "suspicious_patterns": sorted(verdict.suspicious_patterns),
            "content_id": session.content_id,
            "attention_score": session.attention_score,
            "watch_percent": round(session.watch_percent, 2),
            "face_percent": round(session.face_percent, 2),
        }
        if verdict.repeat_offender:
            details["repeat_offender"] = True

        return self.report_abuse(
            db,
            user_id=user_id,
            abuse_type="attention_fraud",
            severity=verdict.abuse_severity or "medium",
            details=details,
            device_fingerprint=session.device_fingerprint,
            ip_address=ip_address,
            user_agent=user_agent
        )


# Singleton instance
abuse_service = AbuseService()
