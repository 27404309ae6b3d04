"""
Repository Layer for ParkLedger

AccountLedger and SessionStore operate on a Transaction handle supplied by the
caller and never commit on their own.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, List, Optional, Tuple
import structlog

from billing.calculator import (
    BillingAmount,
    Number,
    PaymentPolicy,
    normalize_rate,
    quantize_amount,
    to_decimal,
)
from .database import StorageError, Transaction
from .models import (
    OwnerAccount,
    PaymentStatus,
    SessionRecord,
    policy_from_row,
)

logger = structlog.get_logger()


class LedgerError(StorageError):
    """Raised when a balance mutation targets a missing account."""
    pass


class AccountKind(Enum):
    DRIVER = "drivers"
    OWNER = "parking_owners"

    @property
    def table(self) -> str:
        return self.value


def _money(tx: Transaction, amount: Decimal) -> Any:
    """Bind a Decimal for the active driver (sqlite3 has no Decimal adapter)."""
    return amount if tx.is_postgres else str(amount)


def _timestamp(tx: Transaction, value: datetime) -> Any:
    return value if tx.is_postgres else value.isoformat()


class AccountLedger:
    """Balances, payment policies and locations for drivers and owners."""

    def __init__(self, tx: Transaction):
        self.tx = tx

    def create_driver(self, email: str, balance: Number = 0) -> None:
        """Provision a driver account. Raises DuplicateKeyError if it exists."""
        self.tx.execute_update(
            "INSERT INTO drivers (email, balance, created_at) VALUES (?, ?, ?)",
            (email, _money(self.tx, quantize_amount(balance)),
             _timestamp(self.tx, datetime.now(timezone.utc)))
        )
        logger.info("driver_created", email=email)

    def create_owner(
        self,
        email: str,
        rate_per_minute: Number,
        lat: Optional[float] = None,
        lon: Optional[float] = None,
        balance: Number = 0,
        penalty_threshold_minutes: Optional[Number] = None,
        penalty_rate_per_minute: Optional[Number] = None,
    ) -> None:
        """Provision a parking owner account. Raises DuplicateKeyError if it exists."""
        self.tx.execute_update(
            """INSERT INTO parking_owners
               (email, lat, lon, balance, payment_policy,
                penalty_threshold_minutes, penalty_rate_per_minute, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                email,
                lat,
                lon,
                _money(self.tx, quantize_amount(balance)),
                _money(self.tx, normalize_rate(rate_per_minute)),
                self._optional(penalty_threshold_minutes, normalize=False),
                self._optional(penalty_rate_per_minute, normalize=True),
                _timestamp(self.tx, datetime.now(timezone.utc)),
            )
        )
        logger.info("owner_created", email=email)

    def _optional(self, value: Optional[Number], normalize: bool) -> Any:
        if value is None:
            return None
        value = normalize_rate(value) if normalize else to_decimal(value)
        return _money(self.tx, value)

    def driver_exists(self, email: str) -> bool:
        return bool(self.tx.execute("SELECT 1 FROM drivers WHERE email = ?", (email,)))

    def get_owner(self, email: str) -> Optional[OwnerAccount]:
        results = self.tx.execute("SELECT * FROM parking_owners WHERE email = ?", (email,))
        return OwnerAccount.from_row(results[0]) if results else None

    def get_owner_location(self, email: str) -> Optional[Tuple[Optional[float], Optional[float]]]:
        results = self.tx.execute("SELECT lat, lon FROM parking_owners WHERE email = ?", (email,))
        if not results:
            return None
        return results[0]["lat"], results[0]["lon"]

    def get_balance(self, email: str, kind: AccountKind = AccountKind.DRIVER) -> Optional[Decimal]:
        """Current balance, or None if the account does not exist."""
        results = self.tx.execute(
            f"SELECT balance FROM {kind.table} WHERE email = ?",
            (email,)
        )
        return to_decimal(results[0]["balance"]) if results else None

    def _adjust(self, email: str, delta: Decimal, kind: AccountKind) -> Decimal:
        # Decimal read-modify-write under the transaction's row lock
        results = self.tx.execute(
            f"SELECT balance FROM {kind.table} WHERE email = ?{self.tx.lock_clause}",
            (email,)
        )
        if not results:
            raise LedgerError(f"{kind.name.lower()} account not found: {email}")

        new_balance = quantize_amount(to_decimal(results[0]["balance"]) + delta)
        updated = self.tx.execute_update(
            f"UPDATE {kind.table} SET balance = ? WHERE email = ?",
            (_money(self.tx, new_balance), email)
        )
        if updated != 1:
            raise LedgerError(f"balance update matched {updated} rows for {email}")
        return new_balance

    def debit(self, email: str, amount: Number, kind: AccountKind = AccountKind.DRIVER) -> Decimal:
        """Subtract `amount` and return the new balance."""
        new_balance = self._adjust(email, -quantize_amount(amount), kind)
        logger.debug("account_debited", email=email, amount=str(amount), kind=kind.name)
        return new_balance

    def credit(self, email: str, amount: Number, kind: AccountKind = AccountKind.OWNER) -> Decimal:
        """Add `amount` and return the new balance."""
        new_balance = self._adjust(email, quantize_amount(amount), kind)
        logger.debug("account_credited", email=email, amount=str(amount), kind=kind.name)
        return new_balance

    def get_payment_policy(self, owner_email: str) -> Optional[PaymentPolicy]:
        results = self.tx.execute(
            """SELECT payment_policy, penalty_threshold_minutes, penalty_rate_per_minute
               FROM parking_owners WHERE email = ?""",
            (owner_email,)
        )
        return policy_from_row(results[0]) if results else None

    def set_payment_policy(
        self,
        owner_email: str,
        rate_per_minute: Number,
        penalty_threshold_minutes: Optional[Number] = None,
        penalty_rate_per_minute: Optional[Number] = None,
    ) -> bool:
        """Replace an owner's policy. Returns False if the owner does not exist."""
        rate = normalize_rate(rate_per_minute)
        if rate <= 0:
            raise ValueError(f"rate_per_minute must be > 0, got {rate_per_minute}")

        updated = self.tx.execute_update(
            """UPDATE parking_owners
               SET payment_policy = ?, penalty_threshold_minutes = ?, penalty_rate_per_minute = ?
               WHERE email = ?""",
            (
                _money(self.tx, rate),
                self._optional(penalty_threshold_minutes, normalize=False),
                self._optional(penalty_rate_per_minute, normalize=True),
                owner_email,
            )
        )
        if updated:
            logger.info("payment_policy_updated", email=owner_email, rate=str(rate))
        return updated > 0

    def set_location(self, owner_email: str, lat: float, lon: float) -> bool:
        updated = self.tx.execute_update(
            "UPDATE parking_owners SET lat = ?, lon = ? WHERE email = ?",
            (lat, lon, owner_email)
        )
        return updated > 0


class SessionStore:
    """Durable parking-session records."""

    def __init__(self, tx: Transaction):
        self.tx = tx

    def get(self, session_id: str) -> Optional[SessionRecord]:
        results = self.tx.execute(
            "SELECT * FROM sessions WHERE session_id = ?",
            (session_id,)
        )
        return SessionRecord.from_row(results[0]) if results else None

    def find_active_by_driver(self, driver_email: str) -> Optional[SessionRecord]:
        results = self.tx.execute(
            "SELECT * FROM sessions WHERE driver_email = ? AND end_time IS NULL",
            (driver_email,)
        )
        return SessionRecord.from_row(results[0]) if results else None

    def find_active_with_owner(self, driver_email: str) -> Optional[Tuple[SessionRecord, OwnerAccount]]:
        """Active session joined with its owner's current profile and policy."""
        results = self.tx.execute(
            """SELECT s.*, o.*
               FROM sessions s JOIN parking_owners o ON o.email = s.parking_owner_email
               WHERE s.driver_email = ? AND s.end_time IS NULL""",
            (driver_email,)
        )
        if not results:
            return None
        return SessionRecord.from_row(results[0]), OwnerAccount.from_row(results[0])

    def insert(self, session: SessionRecord) -> SessionRecord:
        """
        Insert a new session.

        Raises DuplicateKeyError (via the transaction) when the driver already
        has an active session.
        """
        self.tx.execute_update(
            """INSERT INTO sessions
               (session_id, driver_email, parking_owner_email, start_time, end_time, payment_status)
               VALUES (?, ?, ?, ?, ?, ?)""",
            session.to_db_tuple(is_postgres=self.tx.is_postgres)
        )
        return session

    def mark_stopped(
        self,
        session_id: str,
        driver_email: str,
        owner_email: str,
        now: datetime,
    ) -> Optional[SessionRecord]:
        """Set end_time if all identifiers match and the session is still active."""
        updated = self.tx.execute_update(
            """UPDATE sessions SET end_time = ?
               WHERE session_id = ? AND driver_email = ? AND parking_owner_email = ?
                 AND end_time IS NULL""",
            (_timestamp(self.tx, now), session_id, driver_email, owner_email)
        )
        if updated == 0:
            return None
        return self.get(session_id)

    def mark_paid(self, session_id: str, amount: BillingAmount) -> bool:
        """Flip unpaid -> paid and record what was charged. False means it was already paid."""
        updated = self.tx.execute_update(
            """UPDATE sessions
               SET payment_status = ?, settled_total_amount = ?, settled_penalty_amount = ?
               WHERE session_id = ? AND payment_status = ?""",
            (
                PaymentStatus.PAID.value,
                _money(self.tx, amount.total_amount),
                _money(self.tx, amount.penalty_amount),
                session_id,
                PaymentStatus.UNPAID.value,
            )
        )
        return updated == 1

    def find_with_owner_policy(self, session_id: str) -> Optional[Tuple[SessionRecord, PaymentPolicy]]:
        """Session joined with its owner's payment policy, row-locked on PostgreSQL."""
        lock = " FOR UPDATE OF s" if self.tx.is_postgres else ""
        results = self.tx.execute(
            f"""SELECT s.*, o.payment_policy, o.penalty_threshold_minutes, o.penalty_rate_per_minute
                FROM sessions s JOIN parking_owners o ON o.email = s.parking_owner_email
                WHERE s.session_id = ?{lock}""",
            (session_id,)
        )
        if not results:
            return None
        return SessionRecord.from_row(results[0]), policy_from_row(results[0])

    def list_by_driver(self, driver_email: str, limit: int = 100) -> List[SessionRecord]:
        """Session history for a driver, newest first."""
        results = self.tx.execute(
            "SELECT * FROM sessions WHERE driver_email = ? ORDER BY start_time DESC LIMIT ?",
            (driver_email, limit)
        )
        return [SessionRecord.from_row(r) for r in results]
