"""
Services package - Business logic layer
"""
from viewtrust.services.trust_store import trust_store
from viewtrust.services.trust_engine import trust_engine
from viewtrust.services.abuse_service import abuse_service
from viewtrust.services.ledger_service import ledger_service
from viewtrust.services.reward_service import reward_service

__all__ = [
    "trust_store",
    "trust_engine",
    "abuse_service",
    "ledger_service",
    "reward_service"
]
