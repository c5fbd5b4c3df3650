"""
API routers package
"""
from viewtrust.api import (
    system,
    attention,
    trust,
    wallet,
    settlements
)

__all__ = [
    "system",
    "attention",
    "trust",
    "wallet",
    "settlements"
]
