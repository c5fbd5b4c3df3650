"""
Trust Store - persistence for device reputation, abuse events and audit rows

Leaf layer: only adds/queries rows on the caller's session. Commit and
rollback belong to the caller so each update stays one atomic unit.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, func, select
from sqlalchemy.orm import Session, aliased

from viewtrust.config import settings
from viewtrust.db.models import AbuseEvent, ActivityLog, DeviceRecord, utcnow

logger = logging.getLogger(__name__)


class TrustStore:
    """Data access for device records and the abuse/audit trails"""

    def get_device(
        self,
        db: Session,
        user_id: str,
        fingerprint: str
    ) -> Optional[DeviceRecord]:
        return db.query(DeviceRecord).filter(
            and_(
                DeviceRecord.user_id == user_id,
                DeviceRecord.fingerprint_hash == fingerprint
            )
        ).first()

    def register_device(
        self,
        db: Session,
        user_id: str,
        fingerprint: str,
        device_info: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
        trust_score: Optional[int] = None
    ) -> DeviceRecord:
        """Create a device record at the initial trust score and flush it."""
        now = now or utcnow()
        device = DeviceRecord(
            user_id=user_id,
            fingerprint_hash=fingerprint,
            device_info=device_info or {},
            trust_score=settings.TRUST_INITIAL_SCORE if trust_score is None else trust_score,
            is_trusted=True,
            is_flagged=False,
            first_seen_at=now,
            last_seen_at=now
        )
        db.add(device)
        db.flush()
        logger.info(f"New device registered for user {user_id}: device {device.id}")
        return device

    def supersede_device(
        self,
        db: Session,
        old: DeviceRecord,
        new: DeviceRecord
    ) -> None:
        old.superseded_by_id = new.id
        db.flush()

    def list_devices(self, db: Session, user_id: str) -> List[DeviceRecord]:
        return db.query(DeviceRecord).filter(
            DeviceRecord.user_id == user_id
        ).order_by(DeviceRecord.first_seen_at.desc()).all()

    def count_recent_devices(
        self,
        db: Session,
        user_id: str,
        since: datetime
    ) -> int:
        """Distinct devices first registered by the user since the cutoff.

        A record that replaced a superseded fingerprint is the same physical
        device and is not counted.
        """
        replaced = aliased(DeviceRecord)
        replacements = select(replaced.superseded_by_id).where(
            and_(
                replaced.user_id == user_id,
                replaced.superseded_by_id.isnot(None)
            )
        )
        return db.query(
            func.count(func.distinct(DeviceRecord.fingerprint_hash))
        ).filter(
            and_(
                DeviceRecord.user_id == user_id,
                DeviceRecord.first_seen_at >= since,
                DeviceRecord.id.notin_(replacements)
            )
        ).scalar() or 0

    def count_recent_abuse(
        self,
        db: Session,
        user_id: str,
        since: datetime
    ) -> int:
        return db.query(func.count(AbuseEvent.id)).filter(
            and_(
                AbuseEvent.user_id == user_id,
                AbuseEvent.created_at >= since
            )
        ).scalar() or 0

    def add_abuse_event(
        self,
        db: Session,
        user_id: str,
        abuse_type: str,
        severity: str = "low",
        details: Optional[Dict[str, Any]] = None,
        device_fingerprint: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None
    ) -> AbuseEvent:
        event = AbuseEvent(
            user_id=user_id,
            abuse_type=abuse_type,
            severity=severity,
            details=details or {},
            device_fingerprint=device_fingerprint,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=utcnow()
        )
        db.add(event)
        db.flush()
        return event

    def list_abuse_events(
        self,
        db: Session,
        user_id: str,
        since: Optional[datetime] = None,
        limit: int = 50
    ) -> List[AbuseEvent]:
        query = db.query(AbuseEvent).filter(AbuseEvent.user_id == user_id)
        if since:
            query = query.filter(AbuseEvent.created_at >= since)
        return query.order_by(AbuseEvent.created_at.desc()).limit(limit).all()

    def add_activity(
        self,
        db: Session,
        user_id: str,
        activity_type: str,
        details: Dict[str, Any],
        status: str = "success",
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None
    ) -> ActivityLog:
        entry = ActivityLog(
            user_id=user_id,
            activity_type=activity_type,
            status=status,
            details=details,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=utcnow()
        )
        db.add(entry)
        return entry

    def list_activity(
        self,
        db: Session,
        user_id: str,
        activity_type: Optional[str] = None,
        limit: int = 50
    ) -> List[ActivityLog]:
        query = db.query(ActivityLog).filter(ActivityLog.user_id == user_id)
        if activity_type:
            query = query.filter(ActivityLog.activity_type == activity_type)
        return query.order_by(ActivityLog.id.desc()).limit(limit).all()


# Singleton instance
trust_store = TrustStore()
