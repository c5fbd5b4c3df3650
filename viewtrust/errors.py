"""
Error taxonomy for the rewards core

Services raise these; the API layer renders them via a single exception
handler registered in main.py.
"""
import logging
from typing import Any, Dict, Optional

from fastapi import status
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from viewtrust.config import settings

logger = logging.getLogger(__name__)

# PostgreSQL serialization_failure / deadlock_detected
_RETRYABLE_PGCODES = {"40001", "40P01"}


class CoreError(Exception):
    """Base class for every error the core surfaces to callers"""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "internal_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code, "details": self.details}


class UnauthorizedError(CoreError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "unauthorized"

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class InvalidInputError(CoreError):
    """Schema, range or divisibility violation. Always raised before any mutation."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "invalid_input"

    def __init__(self, message: str = "Invalid input", fields: Optional[Dict[str, str]] = None):
        super().__init__(message, {"fields": fields or {}})
        self.fields = fields or {}


class DuplicateRewardError(InvalidInputError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "duplicate_reward"

    def __init__(self, content_id: str, reward_type: str):
        super().__init__(
            "Reward already claimed for this content",
            {"content_id": content_id, "reward_type": reward_type},
        )


class PayoutStateError(InvalidInputError):
    status_code = status.HTTP_409_CONFLICT
    code = "invalid_payout_state"

    def __init__(self, payout_id: int, current: str, target: str):
        super().__init__(
            f"Payout {payout_id} cannot move from {current} to {target}",
            {"status": current},
        )


class ForbiddenError(CoreError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "forbidden"

    def __init__(self, message: str = "Forbidden", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)


class NotFoundError(CoreError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"

    def __init__(self, resource: str, resource_id: Any):
        super().__init__(
            f"{resource} {resource_id} not found",
            {"resource": resource, "id": str(resource_id)},
        )


class InsufficientBalanceError(CoreError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "insufficient_balance"

    def __init__(self, currency: str, current_balance: int, requested: int):
        super().__init__(
            "Insufficient balance",
            {"currency": currency, "current_balance": current_balance, "requested": requested},
        )


class RateLimitExceededError(CoreError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    code = "rate_limited"

    def __init__(self, message: str, limit: int, used: int):
        super().__init__(message, {"limit": limit, "used": used})


class ConflictError(CoreError):
    """Concurrent write detected; safe to retry immediately."""

    status_code = status.HTTP_409_CONFLICT
    code = "conflict"

    def __init__(self, message: str = "Concurrent update, please retry"):
        super().__init__(message)


class InternalError(CoreError):
    code = "internal_error"

    def __init__(self, message: str = "Internal server error"):
        super().__init__(message)


def _is_unique_violation(exc: IntegrityError) -> bool:
    if getattr(exc.orig, "pgcode", None) == "23505":
        return True
    return "UNIQUE constraint failed" in str(exc.orig)


def translate_storage_error(exc: Exception) -> CoreError:
    """Map a storage-layer failure onto Conflict (retryable) or Internal."""
    if isinstance(exc, CoreError):
        return exc
    if isinstance(exc, StaleDataError):
        return ConflictError()
    if isinstance(exc, IntegrityError) and _is_unique_violation(exc):
        return ConflictError()
    if isinstance(exc, OperationalError):
        pgcode = getattr(exc.orig, "pgcode", None)
        if pgcode in _RETRYABLE_PGCODES or "database is locked" in str(exc.orig):
            return ConflictError()
    if isinstance(exc, SQLAlchemyError):
        logger.error(f"Storage failure: {exc!r}", exc_info=exc)
    else:
        logger.error(f"Unexpected failure: {exc!r}", exc_info=exc)
    return InternalError()


retry_on_conflict = retry(
    stop=stop_after_attempt(settings.CONFLICT_RETRY_ATTEMPTS),
    wait=wait_exponential(multiplier=0.05, min=0.05, max=1),
    retry=retry_if_exception_type(ConflictError),
    reraise=True,
)
