"""
Database models package.
"""

from billwatch.models.account import Account
from billwatch.models.transaction import Transaction
from billwatch.models.detected_bill import (
    DetectedBill,
    Frequency,
    LifecycleState,
    CycleStatus,
)

__all__ = [
    "Account",
    "Transaction",
    "DetectedBill",
    "Frequency",
    "LifecycleState",
    "CycleStatus",
]
