"""
Celery Tasks for async processing
"""
import logging
from typing import Any, Dict, Optional

from celery import shared_task
from viewtrust.db.database import SessionLocal

logger = logging.getLogger(__name__)


def get_db_session():
    """Get database session for tasks"""
    return SessionLocal()


@shared_task(bind=True, max_retries=5, default_retry_delay=30)
def record_abuse_event(self, payload: Dict[str, Any]):
    """
    Write an abuse event whose synchronous write failed.

    Retries with a delay; the final failure is logged at CRITICAL.
    """
    from viewtrust.services.trust_store import trust_store

    db = get_db_session()
    try:
        event = trust_store.add_abuse_event(db, **payload)
        db.commit()
        logger.info(f"Deferred abuse event recorded for user {payload['user_id']}: {event.id}")
        return {"id": event.id}
    except Exception as e:
        db.rollback()
        if self.request.retries >= self.max_retries:
            logger.critical(f"ALERT deferred abuse event lost for user {payload['user_id']}: {e}")
            raise
        logger.error(f"Deferred abuse write failed, retrying: {e}")
        raise self.retry(exc=e)
    finally:
        db.close()


@shared_task
def reconcile_ledger(user_id: Optional[str] = None):
    """
    Check that every balance equals the sum of its transactions.

    Mismatches are logged at ERROR and returned per user.
    """
    from viewtrust.db.models import UserProfile
    from viewtrust.services.ledger_service import ledger_service

    db = get_db_session()
    try:
        if user_id:
            user_ids = [user_id]
        else:
            user_ids = [row[0] for row in db.query(UserProfile.user_id).all()]

        mismatches = {}
        for uid in user_ids:
            discrepancies = ledger_service.ledger_discrepancies(db, uid)
            if discrepancies:
                logger.error(f"Ledger mismatch for user {uid}: {discrepancies}")
                mismatches[uid] = discrepancies

        logger.info(f"Ledger reconciliation checked {len(user_ids)} users, {len(mismatches)} mismatched")
        return {"checked": len(user_ids), "mismatches": mismatches}
    finally:
        db.close()
