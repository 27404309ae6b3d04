"""
Persistence Layer for ParkLedger

Supports SQLite (dev) and PostgreSQL (production).
"""

from .database import Database, Transaction, StorageError, DuplicateKeyError
from .models import SessionRecord, OwnerAccount, PaymentStatus, SessionState
from .repository import AccountLedger, SessionStore, AccountKind, LedgerError

__all__ = [
    "Database",
    "Transaction",
    "StorageError",
    "DuplicateKeyError",
    "SessionRecord",
    "OwnerAccount",
    "PaymentStatus",
    "SessionState",
    "AccountLedger",
    "SessionStore",
    "AccountKind",
    "LedgerError",
]
