"""
ParkLedger - Core Module

Parking-session lifecycle and account operations.
"""

from .results import (
    ErrorType,
    OperationResult,
    StartSessionResult,
    StopSessionResult,
    PaySessionResult,
    ActiveSessionResult,
    BalanceResult,
    PolicyResult,
    OwnerProfileResult,
    PaymentStatusResult,
)
from .lifecycle import SessionLifecycleManager
from .accounts import AccountManager

__all__ = [
    "ErrorType",
    "OperationResult",
    "StartSessionResult",
    "StopSessionResult",
    "PaySessionResult",
    "ActiveSessionResult",
    "BalanceResult",
    "PolicyResult",
    "OwnerProfileResult",
    "PaymentStatusResult",
    "SessionLifecycleManager",
    "AccountManager",
]
