"""
Ledger Service - balance mutations across the two currencies

The balance-mutation authority. Every mutation:
- runs under a per-user lock (no global lock)
- inside one DB transaction that row-locks the user's profile
- debits with a guarded UPDATE (balance >= amount) evaluated by the database
- appends its transaction row(s) and one audit row in the same transaction

Provides:
- post_reward: credit floor(base x multiplier)
- convert: icoin -> vicoin at a fixed rate
- record_settlement: purchase credits / payout debits, idempotent on reference id
- payout lifecycle: requested -> processing -> completed | failed (KYC-verified users only)

Open payout requests reserve their amount: every debit checks the balance
minus outstanding payouts, except a payout's own completion.
"""
import logging
import threading
import uuid
import weakref
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal, ROUND_FLOOR
from typing import Any, Dict, Iterator, List, Optional, Union

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from viewtrust.config import settings
from viewtrust.db.models import (
    Currency, KycStatus, LedgerTransaction, PayoutRequest, PayoutStatus,
    SettlementRecord, TransactionType, UserProfile, utcnow
)
from viewtrust.errors import (
    CoreError, ForbiddenError, InsufficientBalanceError, InvalidInputError,
    NotFoundError, PayoutStateError, retry_on_conflict, translate_storage_error
)
from viewtrust.services.trust_store import TrustStore, trust_store

logger = logging.getLogger(__name__)

SETTLEMENT_TYPES = (TransactionType.PURCHASE, TransactionType.PAYOUT)
OUTSTANDING_PAYOUT_STATUSES = (PayoutStatus.REQUESTED.value, PayoutStatus.PROCESSING.value)


class _UserLock:
    __slots__ = ("lock", "__weakref__")

    def __init__(self):
        self.lock = threading.Lock()


class UserLockRegistry:
    """One lock per user id, released from memory once no caller holds it"""

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, _UserLock]" = weakref.WeakValueDictionary()
        self._guard = threading.Lock()

    def _lock_for(self, user_id: str) -> _UserLock:
        with self._guard:
            entry = self._locks.get(user_id)
            if entry is None:
                entry = _UserLock()
                self._locks[user_id] = entry
            return entry

    @contextmanager
    def hold(self, user_id: str) -> Iterator[None]:
        entry = self._lock_for(user_id)
        with entry.lock:
            yield


@dataclass(frozen=True)
class ConversionResult:
    spent: int
    received: int
    new_icoin_balance: int
    new_vicoin_balance: int
    exchange_rate: int
    reference_id: str

    def to_response(self) -> Dict[str, Any]:
        return {
            "spent": self.spent,
            "received": self.received,
            "newBalanceA": self.new_icoin_balance,
            "newBalanceB": self.new_vicoin_balance,
            "exchangeRate": self.exchange_rate,
            "referenceId": self.reference_id,
        }


@dataclass(frozen=True)
class SettlementResult:
    reference_id: str
    currency: str
    amount: int
    new_balance: int
    duplicate: bool = False

    def to_response(self) -> Dict[str, Any]:
        return {
            "referenceId": self.reference_id,
            "currency": self.currency,
            "amount": self.amount,
            "newBalance": self.new_balance,
            "duplicate": self.duplicate,
        }


def _is_whole_number(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class LedgerService:
    """Service for balances, conversion, settlements and payouts"""

    def __init__(self, store: TrustStore = trust_store):
        self.store = store
        self._locks = UserLockRegistry()

    # ============================================================
    # ATOMIC UNIT
    # ============================================================

    @contextmanager
    def mutation(self, db: Session, user_id: str) -> Iterator[None]:
        """
        Serialize one balance mutation for a user.

        Commits when the block exits normally; rolls back on any error.
        Storage errors are translated to ConflictError / InternalError.
        """
        with self._locks.hold(user_id):
            try:
                yield
                db.commit()
            except CoreError:
                db.rollback()
                raise
            except Exception as e:
                db.rollback()
                raise translate_storage_error(e) from e

    def locked_profile(self, db: Session, user_id: str) -> UserProfile:
        profile = db.query(UserProfile).filter(
            UserProfile.user_id == user_id
        ).with_for_update().populate_existing().first()
        if profile is None:
            raise NotFoundError("Profile", user_id)
        return profile

    def _adjust(
        self,
        db: Session,
        profile: UserProfile,
        currency: Currency,
        amount: int
    ) -> int:
        """Add a signed amount server-side; debits only succeed when covered."""
        column = getattr(UserProfile, f"{currency.value}_balance")
        query = db.query(UserProfile).filter(UserProfile.id == profile.id)
        if amount < 0:
            query = query.filter(column >= -amount)
        updated = query.update({column: column + amount}, synchronize_session=False)
        db.refresh(profile)
        if updated != 1:
            raise InsufficientBalanceError(currency.value, profile.balance_of(currency), -amount)
        return profile.balance_of(currency)

    def _record(
        self,
        db: Session,
        user_id: str,
        currency: Currency,
        amount: int,
        transaction_type: TransactionType,
        description: str,
        reference_id: Optional[str]
    ) -> LedgerTransaction:
        tx = LedgerTransaction(
            user_id=user_id,
            currency=currency.value,
            amount=amount,
            type=transaction_type.value,
            description=description,
            reference_id=reference_id,
            created_at=utcnow()
        )
        db.add(tx)
        return tx

    def _audit(self, db: Session, user_id: str, operation: str, details: Dict[str, Any]) -> None:
        self.store.add_activity(
            db,
            user_id=user_id,
            activity_type="ledger_mutation",
            details={"operation": operation, **details}
        )

    def post_locked(
        self,
        db: Session,
        profile: UserProfile,
        currency: Currency,
        amount: int,
        transaction_type: TransactionType,
        description: str,
        reference_id: Optional[str] = None
    ) -> int:
        """
        Apply one signed amount plus its transaction and audit rows.

        Must run inside mutation() after locked_profile(); does not commit.
        """
        new_balance = self._adjust(db, profile, currency, amount)
        self._record(db, profile.user_id, currency, amount, transaction_type, description, reference_id)
        self._audit(db, profile.user_id, transaction_type.value, {
            "currency": currency.value,
            "amount": amount,
            "new_balance": new_balance,
            "reference_id": reference_id,
        })
        return new_balance

    # ============================================================
    # INPUT HELPERS
    # ============================================================

    @staticmethod
    def parse_currency(currency: Union[str, Currency]) -> Currency:
        try:
            return Currency(currency)
        except ValueError:
            raise InvalidInputError(
                "Invalid currency",
                {"currency": f"must be one of {[c.value for c in Currency]}"}
            )

    @staticmethod
    def reward_amount(base_amount: int, multiplier: float) -> int:
        """floor(base x multiplier), computed in decimal to avoid float drift"""
        product = Decimal(base_amount) * Decimal(str(multiplier))
        return int(product.to_integral_value(rounding=ROUND_FLOOR))

    def _validate_conversion(self, amount: Any) -> None:
        rate = settings.EXCHANGE_RATE
        message = None
        if not _is_whole_number(amount):
            message = "Amount must be a whole number"
        elif amount <= 0:
            message = "Amount must be positive"
        elif amount < settings.CONVERSION_MIN:
            message = f"Minimum transfer is {settings.CONVERSION_MIN} icoins"
        elif amount > settings.CONVERSION_MAX:
            message = f"Maximum transfer is {settings.CONVERSION_MAX} icoins"
        elif amount % rate != 0:
            message = f"Amount must be divisible by {rate}"
        if message:
            raise InvalidInputError("Invalid input", {"amount": message})

    # ============================================================
    # ACCOUNTS
    # ============================================================

    def open_account(self, db: Session, user_id: str) -> Dict[str, int]:
        """Create the user's profile with zero balances if it does not exist."""
        profile = db.query(UserProfile).filter(UserProfile.user_id == user_id).first()
        if profile is None:
            try:
                db.add(UserProfile(user_id=user_id, icoin_balance=0, vicoin_balance=0))
                db.commit()
                logger.info(f"Opened account for user {user_id}")
            except IntegrityError:
                db.rollback()
            except Exception as e:
                db.rollback()
                raise translate_storage_error(e) from e
        return self.get_balances(db, user_id)

    def get_balances(self, db: Session, user_id: str) -> Dict[str, int]:
        profile = db.query(UserProfile).filter(
            UserProfile.user_id == user_id
        ).populate_existing().first()
        if profile is None:
            raise NotFoundError("Profile", user_id)
        return {
            Currency.ICOIN.value: profile.icoin_balance,
            Currency.VICOIN.value: profile.vicoin_balance,
        }

    @retry_on_conflict
    def set_kyc_status(self, db: Session, user_id: str, kyc_status: Union[str, KycStatus]) -> str:
        """Record the identity-verification outcome reported by the KYC provider."""
        try:
            kyc_status = KycStatus(kyc_status)
        except ValueError:
            raise InvalidInputError(
                "Invalid KYC status",
                {"status": f"must be one of {[s.value for s in KycStatus]}"}
            )

        with self.mutation(db, user_id):
            profile = self.locked_profile(db, user_id)
            previous = profile.kyc_status
            profile.kyc_status = kyc_status.value
            self.store.add_activity(
                db,
                user_id=user_id,
                activity_type="kyc_status",
                details={"from": previous, "to": kyc_status.value}
            )

        logger.info(f"KYC status for user {user_id}: {previous} -> {kyc_status.value}")
        return kyc_status.value

    # ============================================================
    # CONTRACT 1: POST REWARD
    # ============================================================

    @retry_on_conflict
    def post_reward(
        self,
        db: Session,
        user_id: str,
        currency: Union[str, Currency],
        base_amount: int,
        multiplier: float,
        description: str,
        transaction_type: TransactionType = TransactionType.EARNED,
        reference_id: Optional[str] = None
    ) -> int:
        """
        Credit floor(base_amount x multiplier) and return the new balance.

        A zero amount succeeds without touching the ledger.
        """
        currency = self.parse_currency(currency)
        fields = {}
        if not _is_whole_number(base_amount) or base_amount < 0:
            fields["baseAmount"] = "must be a non-negative whole number"
        if not isinstance(multiplier, (int, float)) or not 0 <= multiplier <= 1:
            fields["multiplier"] = "must be between 0 and 1"
        if fields:
            raise InvalidInputError("Invalid reward", fields)

        amount = self.reward_amount(base_amount, multiplier)
        if amount == 0:
            return self.get_balances(db, user_id)[currency.value]

        with self.mutation(db, user_id):
            profile = self.locked_profile(db, user_id)
            new_balance = self.post_locked(
                db, profile, currency, amount, transaction_type, description, reference_id
            )

        logger.info(f"Reward posted for user {user_id}: +{amount} {currency.value} -> {new_balance}")
        return new_balance

    # ============================================================
    # CONTRACT 2: CONVERT
    # ============================================================

    @retry_on_conflict
    def convert(self, db: Session, user_id: str, amount: int) -> ConversionResult:
        """
        Convert icoins to vicoins at the fixed exchange rate.

        Validation happens before any read; the balance check, debit,
        credit and both transaction rows form one atomic unit.
        """
        self._validate_conversion(amount)
        rate = settings.EXCHANGE_RATE
        received = amount // rate
        reference_id = f"conversion_{uuid.uuid4().hex}"

        with self.mutation(db, user_id):
            profile = self.locked_profile(db, user_id)
            available = self.available_balance(db, profile, Currency.ICOIN)
            if available < amount:
                raise InsufficientBalanceError(Currency.ICOIN.value, available, amount)

            new_icoin = self.post_locked(
                db, profile, Currency.ICOIN, -amount, TransactionType.CONVERTED_OUT,
                f"Converted to {received} vicoins", reference_id
            )
            new_vicoin = self.post_locked(
                db, profile, Currency.VICOIN, received, TransactionType.CONVERTED_IN,
                f"Converted from {amount} icoins", reference_id
            )

        logger.info(f"Conversion for user {user_id}: {amount} icoin -> {received} vicoin")
        return ConversionResult(
            spent=amount,
            received=received,
            new_icoin_balance=new_icoin,
            new_vicoin_balance=new_vicoin,
            exchange_rate=rate,
            reference_id=reference_id
        )

    # ============================================================
    # CONTRACT 3: EXTERNAL SETTLEMENT
    # ============================================================

    def _settle_locked(
        self,
        db: Session,
        profile: UserProfile,
        currency: Currency,
        amount: int,
        settlement_type: TransactionType,
        reference_id: str,
        description: str,
        own_payout_id: Optional[int] = None
    ) -> SettlementResult:
        existing = db.query(SettlementRecord).filter(
            SettlementRecord.reference_id == reference_id
        ).first()
        if existing is not None:
            logger.info(f"Duplicate settlement {reference_id} ignored")
            return SettlementResult(
                reference_id=reference_id,
                currency=existing.currency,
                amount=existing.amount,
                new_balance=profile.balance_of(Currency(existing.currency)),
                duplicate=True
            )

        if settlement_type == TransactionType.PAYOUT:
            available = self.available_balance(db, profile, currency, exclude_payout_id=own_payout_id)
            if available < amount:
                raise InsufficientBalanceError(currency.value, available, amount)

        signed = amount if settlement_type == TransactionType.PURCHASE else -amount
        new_balance = self.post_locked(
            db, profile, currency, signed, settlement_type, description, reference_id
        )
        db.add(SettlementRecord(
            reference_id=reference_id,
            user_id=profile.user_id,
            currency=currency.value,
            amount=amount,
            settlement_type=settlement_type.value
        ))
        db.flush()
        return SettlementResult(reference_id, currency.value, amount, new_balance)

    @retry_on_conflict
    def record_settlement(
        self,
        db: Session,
        user_id: str,
        currency: Union[str, Currency],
        amount: int,
        settlement_type: Union[str, TransactionType],
        reference_id: str,
        description: Optional[str] = None
    ) -> SettlementResult:
        """
        Apply a reconciled external event (purchase credit or payout debit).

        Replays of the same reference id are no-ops.
        """
        currency = self.parse_currency(currency)
        fields = {}
        try:
            settlement_type = TransactionType(settlement_type)
        except ValueError:
            settlement_type = None
        if settlement_type not in SETTLEMENT_TYPES:
            fields["type"] = "must be purchase or payout"
        if not _is_whole_number(amount) or amount <= 0:
            fields["amount"] = "must be a positive whole number"
        if not reference_id:
            fields["referenceId"] = "required"
        if fields:
            raise InvalidInputError("Invalid settlement", fields)

        description = description or f"{settlement_type.value.capitalize()} {reference_id}"
        with self.mutation(db, user_id):
            profile = self.locked_profile(db, user_id)
            result = self._settle_locked(
                db, profile, currency, amount, settlement_type, reference_id, description
            )

        if not result.duplicate:
            logger.info(
                f"Settlement {reference_id} for user {user_id}: "
                f"{settlement_type.value} {amount} {currency.value} -> {result.new_balance}"
            )
        return result

    # ============================================================
    # PAYOUTS
    # ============================================================

    def _payout_dict(self, payout: PayoutRequest) -> Dict[str, Any]:
        return {
            "id": payout.id,
            "userId": payout.user_id,
            "currency": payout.currency,
            "amount": payout.amount,
            "method": payout.method,
            "status": payout.status,
            "referenceId": payout.reference_id,
            "externalReference": payout.external_reference,
            "failureReason": payout.failure_reason,
            "createdAt": payout.created_at.isoformat() if payout.created_at else None,
            "processedAt": payout.processed_at.isoformat() if payout.processed_at else None,
        }

    def _get_payout(self, db: Session, payout_id: int, lock: bool = False) -> PayoutRequest:
        query = db.query(PayoutRequest).filter(PayoutRequest.id == payout_id)
        if lock:
            query = query.with_for_update().populate_existing()
        payout = query.first()
        if payout is None:
            raise NotFoundError("Payout", payout_id)
        return payout

    def outstanding_payouts(
        self,
        db: Session,
        user_id: str,
        currency: Currency,
        exclude_payout_id: Optional[int] = None
    ) -> int:
        query = db.query(func.coalesce(func.sum(PayoutRequest.amount), 0)).filter(
            PayoutRequest.user_id == user_id,
            PayoutRequest.currency == currency.value,
            PayoutRequest.status.in_(OUTSTANDING_PAYOUT_STATUSES)
        )
        if exclude_payout_id is not None:
            query = query.filter(PayoutRequest.id != exclude_payout_id)
        return query.scalar() or 0

    def available_balance(
        self,
        db: Session,
        profile: UserProfile,
        currency: Currency,
        exclude_payout_id: Optional[int] = None
    ) -> int:
        """Balance minus what open payout requests have reserved"""
        return profile.balance_of(currency) - self.outstanding_payouts(
            db, profile.user_id, currency, exclude_payout_id
        )

    @retry_on_conflict
    def request_payout(
        self,
        db: Session,
        user_id: str,
        currency: Union[str, Currency],
        amount: int,
        method: str
    ) -> Dict[str, Any]:
        """Open a payout request. Nothing is debited until the transfer completes."""
        currency = self.parse_currency(currency)
        fields = {}
        minimum = settings.PAYOUT_MINIMUMS.get(currency.value, 0)
        if not _is_whole_number(amount) or amount <= 0:
            fields["amount"] = "must be a positive whole number"
        elif amount < minimum:
            fields["amount"] = f"Minimum payout is {minimum} {currency.value}s"
        if method not in settings.PAYOUT_METHODS:
            fields["method"] = f"must be one of {settings.PAYOUT_METHODS}"
        if fields:
            raise InvalidInputError("Invalid payout request", fields)

        with self.mutation(db, user_id):
            profile = self.locked_profile(db, user_id)
            if profile.kyc_status != KycStatus.VERIFIED.value:
                raise ForbiddenError(
                    "KYC verification required for payouts",
                    {"kyc_status": profile.kyc_status}
                )
            available = self.available_balance(db, profile, currency)
            if available < amount:
                raise InsufficientBalanceError(currency.value, available, amount)

            payout = PayoutRequest(
                user_id=user_id,
                currency=currency.value,
                amount=amount,
                method=method,
                status=PayoutStatus.REQUESTED.value,
                reference_id=f"payout_{uuid.uuid4().hex}"
            )
            db.add(payout)
            db.flush()
            self._audit(db, user_id, "payout_requested", {
                "payout_id": payout.id, "currency": currency.value, "amount": amount,
            })
            result = self._payout_dict(payout)

        logger.info(f"Payout {result['id']} requested by user {user_id}: {amount} {currency.value} via {method}")
        return result

    @retry_on_conflict
    def start_payout(self, db: Session, payout_id: int) -> Dict[str, Any]:
        """requested -> processing"""
        user_id = self._get_payout(db, payout_id).user_id
        with self.mutation(db, user_id):
            payout = self._get_payout(db, payout_id, lock=True)
            if payout.status == PayoutStatus.REQUESTED.value:
                payout.status = PayoutStatus.PROCESSING.value
                self._audit(db, user_id, "payout_processing", {"payout_id": payout_id})
            elif payout.status != PayoutStatus.PROCESSING.value:
                raise PayoutStateError(payout_id, payout.status, PayoutStatus.PROCESSING.value)
            db.flush()
            result = self._payout_dict(payout)

        logger.info(f"Payout {payout_id} processing")
        return result

    @retry_on_conflict
    def complete_payout(
        self,
        db: Session,
        payout_id: int,
        external_reference: Optional[str] = None
    ) -> Dict[str, Any]:
        """processing -> completed; debits the balance exactly once"""
        user_id = self._get_payout(db, payout_id).user_id
        with self.mutation(db, user_id):
            payout = self._get_payout(db, payout_id, lock=True)
            if payout.status == PayoutStatus.COMPLETED.value:
                return self._payout_dict(payout)
            if payout.status != PayoutStatus.PROCESSING.value:
                raise PayoutStateError(payout_id, payout.status, PayoutStatus.COMPLETED.value)

            profile = self.locked_profile(db, user_id)
            self._settle_locked(
                db, profile, Currency(payout.currency), payout.amount,
                TransactionType.PAYOUT, payout.reference_id,
                f"Payout via {payout.method}",
                own_payout_id=payout.id
            )
            payout.status = PayoutStatus.COMPLETED.value
            payout.external_reference = external_reference
            payout.processed_at = utcnow()
            db.flush()
            result = self._payout_dict(payout)

        logger.info(f"Payout {payout_id} completed for user {user_id}")
        return result

    @retry_on_conflict
    def fail_payout(self, db: Session, payout_id: int, reason: str) -> Dict[str, Any]:
        """requested | processing -> failed; the balance is never touched"""
        user_id = self._get_payout(db, payout_id).user_id
        with self.mutation(db, user_id):
            payout = self._get_payout(db, payout_id, lock=True)
            if payout.status == PayoutStatus.FAILED.value:
                return self._payout_dict(payout)
            if payout.status not in OUTSTANDING_PAYOUT_STATUSES:
                raise PayoutStateError(payout_id, payout.status, PayoutStatus.FAILED.value)

            payout.status = PayoutStatus.FAILED.value
            payout.failure_reason = reason
            payout.processed_at = utcnow()
            self._audit(db, user_id, "payout_failed", {"payout_id": payout_id, "reason": reason})
            db.flush()
            result = self._payout_dict(payout)

        logger.warning(f"Payout {payout_id} failed for user {user_id}: {reason}")
        return result

    def list_payouts(self, db: Session, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        payouts = db.query(PayoutRequest).filter(
            PayoutRequest.user_id == user_id
        ).order_by(PayoutRequest.id.desc()).limit(limit).all()
        return [self._payout_dict(p) for p in payouts]

    # ============================================================
    # HISTORY & INVARIANT
    # ============================================================

    def list_transactions(
        self,
        db: Session,
        user_id: str,
        currency: Optional[str] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[Dict[str, Any]]:
        query = db.query(LedgerTransaction).filter(LedgerTransaction.user_id == user_id)
        if currency:
            query = query.filter(LedgerTransaction.currency == self.parse_currency(currency).value)
        rows = query.order_by(LedgerTransaction.id.desc()).offset(offset).limit(limit).all()
        return [
            {
                "id": t.id,
                "currency": t.currency,
                "amount": t.amount,
                "type": t.type,
                "description": t.description,
                "referenceId": t.reference_id,
                "createdAt": t.created_at.isoformat() if t.created_at else None,
            }
            for t in rows
        ]

    def ledger_discrepancies(self, db: Session, user_id: str) -> Dict[str, Dict[str, int]]:
        """Currencies whose balance differs from the sum of its transactions"""
        balances = self.get_balances(db, user_id)
        sums = dict(
            db.query(LedgerTransaction.currency, func.sum(LedgerTransaction.amount))
            .filter(LedgerTransaction.user_id == user_id)
            .group_by(LedgerTransaction.currency)
            .all()
        )
        discrepancies = {}
        for currency, balance in balances.items():
            total = int(sums.get(currency) or 0)
            if total != balance:
                discrepancies[currency] = {"balance": balance, "ledger_sum": total}
        return discrepancies


# Singleton instance
ledger_service = LedgerService()
