"""
SQLAlchemy ORM Models for the ViewTrust rewards core
"""
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    Column, Integer, String, Text, Float, Boolean, DateTime, Date,
    ForeignKey, JSON, UniqueConstraint, CheckConstraint, Index
)
from sqlalchemy.dialects.postgresql import JSONB
from viewtrust.db.database import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns below"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Currency(str, Enum):
    ICOIN = "icoin"    # primary, earned
    VICOIN = "vicoin"  # secondary, premium


class TransactionType(str, Enum):
    EARNED = "earned"
    SPIN_REWARD = "spin_reward"
    SPENT = "spent"
    PURCHASE = "purchase"
    PAYOUT = "payout"
    CONVERTED_OUT = "converted_out"
    CONVERTED_IN = "converted_in"


class PayoutStatus(str, Enum):
    REQUESTED = "requested"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class KycStatus(str, Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    VERIFIED = "verified"
    REJECTED = "rejected"


# ============================================================
# LEDGER
# ============================================================

class UserProfile(Base):
    """Per-user profile holding both currency balances"""
    __tablename__ = "profiles"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), unique=True, nullable=False)
    icoin_balance = Column(Integer, nullable=False, default=0)
    vicoin_balance = Column(Integer, nullable=False, default=0)
    kyc_status = Column(String(20), nullable=False, default=KycStatus.PENDING.value)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("icoin_balance >= 0", name="ck_profiles_icoin_non_negative"),
        CheckConstraint("vicoin_balance >= 0", name="ck_profiles_vicoin_non_negative"),
    )

    def balance_of(self, currency: Currency) -> int:
        if Currency(currency) == Currency.ICOIN:
            return self.icoin_balance or 0
        return self.vicoin_balance or 0


class LedgerTransaction(Base):
    """Immutable ledger row; amount is signed (debits negative)"""
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False)
    currency = Column(String(10), nullable=False)
    amount = Column(Integer, nullable=False)
    type = Column(String(30), nullable=False)
    description = Column(Text, nullable=False)
    reference_id = Column(String(128))
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index('idx_transactions_user_currency', 'user_id', 'currency'),
        Index('idx_transactions_reference', 'reference_id'),
    )


class SettlementRecord(Base):
    """External settlement events already applied, keyed by their reference id"""
    __tablename__ = "settlements"

    id = Column(Integer, primary_key=True, index=True)
    reference_id = Column(String(128), nullable=False, unique=True)
    user_id = Column(String(64), nullable=False)
    currency = Column(String(10), nullable=False)
    amount = Column(Integer, nullable=False)
    settlement_type = Column(String(30), nullable=False)
    created_at = Column(DateTime, default=utcnow)


class PayoutRequest(Base):
    __tablename__ = "payout_requests"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False)
    currency = Column(String(10), nullable=False)
    amount = Column(Integer, nullable=False)
    method = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default=PayoutStatus.REQUESTED.value)
    reference_id = Column(String(128), nullable=False, unique=True)
    external_reference = Column(String(255))
    failure_reason = Column(Text)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    processed_at = Column(DateTime)

    __table_args__ = (
        Index('idx_payout_user_status', 'user_id', 'status'),
    )


class RewardLog(Base):
    """One row per rewarded (user, content, reward type); blocks replays"""
    __tablename__ = "reward_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False)
    content_id = Column(String(128), nullable=False)
    reward_type = Column(String(30), nullable=False)
    currency = Column(String(10), nullable=False)
    amount = Column(Integer, nullable=False)
    validation_score = Column(Float)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint('user_id', 'content_id', 'reward_type', name='unique_reward_claim'),
    )


class DailyRewardCap(Base):
    __tablename__ = "daily_reward_caps"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False)
    date = Column(Date, nullable=False)
    icoin_earned = Column(Integer, nullable=False, default=0)
    vicoin_earned = Column(Integer, nullable=False, default=0)
    promo_views = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint('user_id', 'date', name='unique_daily_cap'),
    )


# ============================================================
# TRUST
# ============================================================

class DeviceRecord(Base):
    """Persistent reputation for one (user, device fingerprint) pair"""
    __tablename__ = "device_fingerprints"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False)
    fingerprint_hash = Column(String(255), nullable=False)
    trust_score = Column(Integer, nullable=False, default=50)
    is_trusted = Column(Boolean, nullable=False, default=True)
    is_flagged = Column(Boolean, nullable=False, default=False)
    flag_reason = Column(Text)
    device_info = Column(JSONType, default=dict)
    first_seen_at = Column(DateTime, default=utcnow)
    last_seen_at = Column(DateTime, default=utcnow)
    superseded_by_id = Column(Integer, ForeignKey("device_fingerprints.id"))
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint('user_id', 'fingerprint_hash', name='unique_user_device'),
        Index('idx_device_fp_user_first_seen', 'user_id', 'first_seen_at'),
        Index('idx_device_fp_flagged', 'is_flagged'),
    )


class AbuseEvent(Base):
    """Append-only abuse record"""
    __tablename__ = "abuse_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False)
    abuse_type = Column(String(50), nullable=False)
    severity = Column(String(20), nullable=False, default="low")
    details = Column(JSONType, default=dict)
    device_fingerprint = Column(String(255))
    ip_address = Column(String(64))
    user_agent = Column(Text)
    resolved = Column(Boolean, default=False)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index('idx_abuse_user_created', 'user_id', 'created_at'),
    )


class ActivityLog(Base):
    """Audit trail for trust updates and ledger mutations"""
    __tablename__ = "account_activity_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False)
    activity_type = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False, default="success")
    ip_address = Column(String(64))
    user_agent = Column(Text)
    details = Column(JSONType, default=dict)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index('idx_activity_logs_user_created', 'user_id', 'created_at'),
    )
