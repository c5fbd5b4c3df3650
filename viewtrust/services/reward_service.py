"""
Reward Service - attention-gated reward issuance

Flow for one viewing session:
1. Validate attention (escalating on recent abuse) and record abuse if needed
2. Gate on the verdict and on device trust
3. Inside one ledger mutation: replay check, daily caps, credit, reward log
"""
import logging
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, Optional, Union

from sqlalchemy.orm import Session

from viewtrust.config import settings
from viewtrust.db.models import (
    Currency, DailyRewardCap, RewardLog, TransactionType, UserProfile, utcnow
)
from viewtrust.errors import (
    DuplicateRewardError, InvalidInputError, RateLimitExceededError, retry_on_conflict
)
from viewtrust.services.abuse_service import AbuseService, abuse_service
from viewtrust.services.attention_validator import ValidationVerdict, ViewingSession, validate
from viewtrust.services.ledger_service import LedgerService, ledger_service
from viewtrust.services.trust_engine import TrustEngine, is_reward_eligible, trust_engine
from viewtrust.services.trust_store import TrustStore, trust_store

logger = logging.getLogger(__name__)

# Reward type -> default currency
REWARD_TYPES: Dict[str, Currency] = {
    "promo_view": Currency.ICOIN,
    "task_complete": Currency.ICOIN,
    "daily_bonus": Currency.ICOIN,
    "referral": Currency.VICOIN,
    "milestone": Currency.VICOIN,
    "spin_wheel": Currency.ICOIN,
}

# Reward types booked under a more specific transaction type than "earned"
REWARD_TRANSACTION_TYPES: Dict[str, TransactionType] = {
    "spin_wheel": TransactionType.SPIN_REWARD,
}


@dataclass(frozen=True)
class RewardOutcome:
    verdict: ValidationVerdict
    rewarded: bool
    amount: int = 0
    currency: Optional[str] = None
    new_balance: Optional[int] = None
    reason: Optional[str] = None
    abuse_reported: bool = False

    def to_response(self) -> Dict[str, Any]:
        response = self.verdict.to_response()
        response.update({
            "rewarded": self.rewarded,
            "amount": self.amount,
            "currency": self.currency,
            "newBalance": self.new_balance,
            "reason": self.reason,
            "abuseReported": self.abuse_reported,
        })
        return response


class RewardService:
    """Service for issuing rewards for validated viewing sessions"""

    def __init__(
        self,
        ledger: LedgerService = ledger_service,
        trust: TrustEngine = trust_engine,
        abuse: AbuseService = abuse_service,
        store: TrustStore = trust_store,
        clock: Callable[[], datetime] = utcnow
    ):
        self.ledger = ledger
        self.trust = trust
        self.abuse = abuse
        self.store = store
        self._clock = clock

    def _daily_cap(self, db: Session, user_id: str, day: date) -> DailyRewardCap:
        cap = db.query(DailyRewardCap).filter(
            DailyRewardCap.user_id == user_id,
            DailyRewardCap.date == day
        ).populate_existing().first()
        if cap is None:
            cap = DailyRewardCap(
                user_id=user_id, date=day, icoin_earned=0, vicoin_earned=0, promo_views=0
            )
            db.add(cap)
            db.flush()
        return cap

    def daily_usage(self, db: Session, user_id: str) -> Dict[str, Any]:
        day = self._clock().date()
        cap = db.query(DailyRewardCap).filter(
            DailyRewardCap.user_id == user_id,
            DailyRewardCap.date == day
        ).first()
        used = {
            "icoin": cap.icoin_earned if cap else 0,
            "vicoin": cap.vicoin_earned if cap else 0,
            "promo_views": cap.promo_views if cap else 0,
        }
        return {"date": day.isoformat(), "used": used, "limits": dict(settings.DAILY_LIMITS)}

    @retry_on_conflict
    def _credit(
        self,
        db: Session,
        user_id: str,
        session: ViewingSession,
        verdict: ValidationVerdict,
        base_amount: int,
        reward_type: str,
        currency: Currency
    ) -> RewardOutcome:
        day = self._clock().date()
        earned_column = f"{currency.value}_earned"

        with self.ledger.mutation(db, user_id):
            profile: UserProfile = self.ledger.locked_profile(db, user_id)

            claimed = db.query(RewardLog.id).filter(
                RewardLog.user_id == user_id,
                RewardLog.content_id == session.content_id,
                RewardLog.reward_type == reward_type
            ).first()
            if claimed:
                logger.info(f"Duplicate reward attempt blocked for user {user_id} on {session.content_id}")
                raise DuplicateRewardError(session.content_id, reward_type)

            cap = self._daily_cap(db, user_id, day)
            earned_today = getattr(cap, earned_column)
            limit = settings.DAILY_LIMITS[currency.value]
            if earned_today >= limit:
                raise RateLimitExceededError("Daily limit reached", limit, earned_today)
            promo_limit = settings.DAILY_LIMITS["promo_views"]
            if reward_type == "promo_view" and cap.promo_views >= promo_limit:
                raise RateLimitExceededError("Daily promo view limit reached", promo_limit, cap.promo_views)

            amount = min(
                self.ledger.reward_amount(base_amount, verdict.reward_multiplier),
                limit - earned_today
            )
            new_balance = profile.balance_of(currency)
            if amount > 0:
                new_balance = self.ledger.post_locked(
                    db, profile, currency, amount,
                    REWARD_TRANSACTION_TYPES.get(reward_type, TransactionType.EARNED),
                    f"Earned from {reward_type.replace('_', ' ')}",
                    session.content_id
                )

            db.add(RewardLog(
                user_id=user_id,
                content_id=session.content_id,
                reward_type=reward_type,
                currency=currency.value,
                amount=amount,
                validation_score=verdict.validation_score
            ))
            setattr(cap, earned_column, earned_today + amount)
            if reward_type == "promo_view":
                cap.promo_views += 1
            db.flush()

        logger.info(
            f"Reward issued to user {user_id}: {amount} {currency.value} "
            f"for {reward_type} {session.content_id} -> {new_balance}"
        )
        return RewardOutcome(
            verdict=verdict,
            rewarded=amount > 0,
            amount=amount,
            currency=currency.value,
            new_balance=new_balance,
            reason=None if amount > 0 else "zero_amount"
        )

    def issue_attention_reward(
        self,
        db: Session,
        user_id: str,
        session: ViewingSession,
        base_amount: int,
        reward_type: str = "promo_view",
        currency: Optional[Union[str, Currency]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None
    ) -> RewardOutcome:
        """
        Validate a viewing session and pay for it when it earns a reward.

        Raises:
            InvalidInputError: bad telemetry, reward type or amount
            DuplicateRewardError: content already rewarded for this user
            RateLimitExceededError: daily cap exhausted
            NotFoundError: no profile for the user
        """
        fields = {}
        if reward_type not in REWARD_TYPES:
            fields["rewardType"] = f"must be one of {sorted(REWARD_TYPES)}"
        if not session.content_id:
            fields["contentId"] = "required"
        if isinstance(base_amount, bool) or not isinstance(base_amount, int) or base_amount < 0:
            fields["baseAmount"] = "must be a non-negative whole number"
        if fields:
            raise InvalidInputError("Invalid reward request", fields)
        currency = self.ledger.parse_currency(currency or REWARD_TYPES[reward_type])

        since = self._clock() - timedelta(hours=settings.TRUST_WINDOW_HOURS)
        recent_abuse = self.store.count_recent_abuse(db, user_id, since)
        verdict = validate(session, recent_abuse)

        abuse_reported = False
        if verdict.requires_abuse_report:
            abuse_reported = self.abuse.report_verdict(
                db, user_id, session, verdict, ip_address=ip_address, user_agent=user_agent
            ) is not None

        if not verdict.is_valid and not settings.PAY_REDUCED_REWARD_WHEN_INVALID:
            logger.info(f"Reward withheld for user {user_id}: attention score {verdict.validation_score}")
            return RewardOutcome(
                verdict, rewarded=False, currency=currency.value,
                reason="attention_not_validated", abuse_reported=abuse_reported
            )

        if not session.device_fingerprint:
            logger.info(f"Reward withheld for user {user_id}: no device fingerprint")
            return RewardOutcome(
                verdict, rewarded=False, currency=currency.value,
                reason="device_required", abuse_reported=abuse_reported
            )

        trust = self.trust.get_trust(db, user_id, session.device_fingerprint, use_cache=False)
        if not is_reward_eligible(trust):
            logger.info(f"Reward withheld for user {user_id}: device trust {trust.trust_score}")
            return RewardOutcome(
                verdict, rewarded=False, currency=currency.value,
                reason="device_not_trusted", abuse_reported=abuse_reported
            )

        outcome = self._credit(db, user_id, session, verdict, base_amount, reward_type, currency)
        return replace(outcome, abuse_reported=abuse_reported)


# Singleton instance
reward_service = RewardService()
