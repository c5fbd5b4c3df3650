"""
Device Trust Engine - event-driven reputation per (user, device)

Every trust-relevant event:
1. loads (or registers at 50) the device record
2. applies the event's fixed delta, clamped to [0, 100]
3. applies the trailing-window penalties (abuse burst, device burst)
4. derives trusted / flagged status
5. appends one audit row, committed with the record

Write conflicts surface as ConflictError so callers can retry.
"""
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from viewtrust.config import settings
from viewtrust.db.models import DeviceRecord, UserProfile, utcnow
from viewtrust.errors import CoreError, InvalidInputError, NotFoundError, translate_storage_error
from viewtrust.services.trust_cache import TrustCache
from viewtrust.services.trust_store import TrustStore, trust_store

logger = logging.getLogger(__name__)

# Fixed score deltas per event; unknown events apply 0
TRUST_EVENTS: Dict[str, int] = {
    # Positive factors
    "successful_login": 2,
    "completed_purchase": 5,
    "verified_email": 10,
    "completed_kyc": 20,
    "long_session": 1,
    "consistent_location": 3,

    # Negative factors
    "failed_login": -5,
    "suspicious_activity": -15,
    "spam_detected": -10,
    "rate_limit_exceeded": -5,
    "unusual_location": -10,
    "rapid_account_changes": -8,
    "multiple_devices_short_time": -12,
}

MIN_SCORE = 0
MAX_SCORE = 100


def clamp_score(score: int) -> int:
    return max(MIN_SCORE, min(MAX_SCORE, score))


def trust_status(score: int) -> Tuple[bool, bool, Optional[str]]:
    """(is_trusted, is_flagged, flag_reason) for a score"""
    is_trusted = score >= settings.TRUST_TRUSTED_MIN
    is_flagged = score < settings.TRUST_FLAGGED_BELOW
    flag_reason = None
    if is_flagged:
        flag_reason = (
            "Very low trust score" if score <= settings.TRUST_VERY_LOW_MAX
            else "Low trust score"
        )
    return is_trusted, is_flagged, flag_reason


@dataclass(frozen=True)
class TrustSnapshot:
    trust_score: int
    is_trusted: bool
    is_flagged: bool
    flag_reason: Optional[str] = None
    known: bool = True

    @property
    def reward_eligible(self) -> bool:
        return self.is_trusted and not self.is_flagged


def is_reward_eligible(snapshot: TrustSnapshot) -> bool:
    return snapshot.reward_eligible


@dataclass(frozen=True)
class TrustUpdate:
    device_id: int
    event: str
    previous_score: int
    delta: int
    trust_score: int
    is_trusted: bool
    is_flagged: bool
    flag_reason: Optional[str]
    penalties: List[str] = field(default_factory=list)
    registered: bool = False

    def to_response(self) -> Dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "trustScore": self.trust_score,
            "isTrusted": self.is_trusted,
            "isFlagged": self.is_flagged,
            "flagReason": self.flag_reason,
        }


class TrustEngine:
    """Service for maintaining per-device trust scores"""

    def __init__(
        self,
        store: TrustStore = trust_store,
        cache: Optional[TrustCache] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.store = store
        self.cache = cache if cache is not None else TrustCache(settings.TRUST_CACHE_TTL_SEC)
        self._clock = clock

    def _require_profile(self, db: Session, user_id: str) -> None:
        exists = db.query(UserProfile.id).filter(UserProfile.user_id == user_id).first()
        if not exists:
            raise NotFoundError("Profile", user_id)

    def _apply_score(self, device: DeviceRecord, score: int) -> None:
        is_trusted, is_flagged, flag_reason = trust_status(score)
        device.trust_score = score
        device.is_trusted = is_trusted
        device.is_flagged = is_flagged
        device.flag_reason = flag_reason

    def update_trust(
        self,
        db: Session,
        user_id: str,
        device_fingerprint: str,
        event: str,
        device_info: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None
    ) -> TrustUpdate:
        """
        Apply one trust event to a device.

        Raises:
            InvalidInputError: empty fingerprint or event
            NotFoundError: no profile for the user
            ConflictError: concurrent write on the same device; retry
        """
        fields = {}
        if not device_fingerprint:
            fields["deviceFingerprint"] = "required"
        if not event:
            fields["event"] = "required"
        if fields:
            raise InvalidInputError("Invalid trust update", fields)

        now = self._clock()
        try:
            self._require_profile(db, user_id)

            device = self.store.get_device(db, user_id, device_fingerprint)
            registered = device is None
            if registered:
                device = self.store.register_device(
                    db, user_id, device_fingerprint, device_info, now=now
                )

            previous_score = device.trust_score
            delta = TRUST_EVENTS.get(event, 0)
            if event not in TRUST_EVENTS:
                logger.warning(f"Unknown trust event '{event}' for user {user_id}, applying 0")
            score = clamp_score(previous_score + delta)

            since = now - timedelta(hours=settings.TRUST_WINDOW_HOURS)
            penalties = []

            abuse_count = self.store.count_recent_abuse(db, user_id, since)
            if abuse_count > settings.TRUST_ABUSE_EVENT_LIMIT:
                score = max(MIN_SCORE, score - settings.TRUST_ABUSE_PENALTY)
                penalties.append("abuse_pattern")
                logger.info(f"Abuse pattern for user {user_id}: {abuse_count} events")

            device_count = self.store.count_recent_devices(db, user_id, since)
            if device_count > settings.TRUST_DEVICE_LIMIT:
                score = max(MIN_SCORE, score - settings.TRUST_DEVICE_PENALTY)
                penalties.append("multiple_devices")
                logger.info(f"Multiple devices for user {user_id}: {device_count}")

            self._apply_score(device, score)
            device.last_seen_at = now
            if device_info is not None:
                device.device_info = device_info

            self.store.add_activity(
                db,
                user_id=user_id,
                activity_type="device_trust_update",
                details={
                    "event": event,
                    "previous_score": previous_score,
                    "new_score": score,
                    "adjustment": delta,
                    "penalties": penalties,
                    "device_id": device.id,
                },
                ip_address=ip_address,
                user_agent=user_agent
            )

            result = TrustUpdate(
                device_id=device.id,
                event=event,
                previous_score=previous_score,
                delta=delta,
                trust_score=score,
                is_trusted=device.is_trusted,
                is_flagged=device.is_flagged,
                flag_reason=device.flag_reason,
                penalties=penalties,
                registered=registered
            )
            db.commit()
        except CoreError:
            db.rollback()
            raise
        except Exception as e:
            db.rollback()
            raise translate_storage_error(e) from e
        finally:
            self.cache.invalidate(user_id, device_fingerprint)

        logger.info(
            f"Trust score updated for user {user_id} device {result.device_id}: "
            f"{previous_score} -> {score} ({event}, delta {delta}, penalties {penalties})"
        )
        return result

    def get_trust(
        self,
        db: Session,
        user_id: str,
        device_fingerprint: Optional[str],
        use_cache: bool = True
    ) -> TrustSnapshot:
        """
        Current trust for a device; unseen devices report the initial score.

        Decisions that move money pass use_cache=False so a score lowered
        by another process is never read stale.
        """
        if use_cache:
            cached = self.cache.get(user_id, device_fingerprint)
            if cached is not None:
                return TrustSnapshot(**cached)

        device = None
        if device_fingerprint:
            device = self.store.get_device(db, user_id, device_fingerprint)

        if device is None:
            score = settings.TRUST_INITIAL_SCORE
            is_trusted, is_flagged, reason = trust_status(score)
            snapshot = TrustSnapshot(score, is_trusted, is_flagged, reason, known=False)
        else:
            snapshot = TrustSnapshot(
                trust_score=device.trust_score,
                is_trusted=device.is_trusted,
                is_flagged=device.is_flagged,
                flag_reason=device.flag_reason
            )

        self.cache.set(user_id, device_fingerprint, asdict(snapshot))
        return snapshot

    def reregister_device(
        self,
        db: Session,
        user_id: str,
        old_fingerprint: str,
        new_fingerprint: str,
        device_info: Optional[Dict[str, Any]] = None
    ) -> DeviceRecord:
        """Carry a device's reputation over to a changed fingerprint."""
        try:
            old = self.store.get_device(db, user_id, old_fingerprint)
            if old is None:
                raise NotFoundError("Device", old_fingerprint)

            new = self.store.get_device(db, user_id, new_fingerprint)
            if new is None:
                new = self.store.register_device(
                    db, user_id, new_fingerprint,
                    device_info if device_info is not None else old.device_info,
                    now=self._clock(),
                    trust_score=old.trust_score
                )
            self._apply_score(new, old.trust_score)
            self.store.supersede_device(db, old, new)
            self.store.add_activity(
                db,
                user_id=user_id,
                activity_type="device_reregistered",
                details={
                    "previous_device_id": old.id,
                    "device_id": new.id,
                    "trust_score": new.trust_score,
                }
            )
            db.commit()
        except CoreError:
            db.rollback()
            raise
        except Exception as e:
            db.rollback()
            raise translate_storage_error(e) from e
        finally:
            self.cache.invalidate(user_id, old_fingerprint)
            self.cache.invalidate(user_id, new_fingerprint)

        logger.info(f"Device {old.id} superseded by {new.id} for user {user_id}")
        return new

    def list_devices(self, db: Session, user_id: str) -> List[Dict[str, Any]]:
        return [
            {
                "deviceId": d.id,
                "fingerprint": d.fingerprint_hash,
                "trustScore": d.trust_score,
                "isTrusted": d.is_trusted,
                "isFlagged": d.is_flagged,
                "flagReason": d.flag_reason,
                "supersededBy": d.superseded_by_id,
                "firstSeenAt": d.first_seen_at.isoformat() if d.first_seen_at else None,
                "lastSeenAt": d.last_seen_at.isoformat() if d.last_seen_at else None,
            }
            for d in self.store.list_devices(db, user_id)
        ]


# Singleton instance
trust_engine = TrustEngine()
