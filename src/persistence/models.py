"""
Data Models for Persistence Layer

Rows as they are stored: sessions and parking owners.
Money is Decimal; SQLite stores it as TEXT, PostgreSQL as NUMERIC.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Union

from billing.calculator import BillingAmount, PaymentPolicy, to_decimal


def parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Normalize a stored timestamp (ISO text or driver datetime) to aware UTC."""
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _optional_decimal(value: Any) -> Optional[Decimal]:
    return to_decimal(value) if value is not None else None


class PaymentStatus(Enum):
    UNPAID = "unpaid"
    PAID = "paid"


class SessionState(Enum):
    """Lifecycle state derived from end_time and payment_status."""
    ACTIVE = "ACTIVE"
    STOPPED = "STOPPED"
    PAID = "PAID"


@dataclass
class SessionRecord:
    """Persisted parking session."""
    session_id: str
    driver_email: str
    parking_owner_email: str
    start_time: datetime
    end_time: Optional[datetime] = None
    payment_status: PaymentStatus = PaymentStatus.UNPAID
    # Amounts actually charged, written together with payment_status = paid
    settled_total_amount: Optional[Decimal] = None
    settled_penalty_amount: Optional[Decimal] = None

    @property
    def state(self) -> SessionState:
        if self.end_time is None:
            return SessionState.ACTIVE
        if self.payment_status == PaymentStatus.PAID:
            return SessionState.PAID
        return SessionState.STOPPED

    @property
    def is_active(self) -> bool:
        return self.end_time is None

    @property
    def settled_amount(self) -> Optional[BillingAmount]:
        if self.settled_total_amount is None:
            return None
        return BillingAmount(
            total_amount=self.settled_total_amount,
            penalty_amount=self.settled_penalty_amount or Decimal("0.00"),
        )

    def to_db_tuple(self, is_postgres: bool = False) -> tuple:
        """Convert to database insert tuple."""
        def ts(value: Optional[datetime]) -> Any:
            if value is None or is_postgres:
                return value
            return value.isoformat()

        return (
            self.session_id,
            self.driver_email,
            self.parking_owner_email,
            ts(self.start_time),
            ts(self.end_time),
            self.payment_status.value,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "SessionRecord":
        return cls(
            session_id=row["session_id"],
            driver_email=row["driver_email"],
            parking_owner_email=row["parking_owner_email"],
            start_time=parse_timestamp(row["start_time"]),
            end_time=parse_timestamp(row.get("end_time")),
            payment_status=PaymentStatus(row.get("payment_status", "unpaid")),
            settled_total_amount=_optional_decimal(row.get("settled_total_amount")),
            settled_penalty_amount=_optional_decimal(row.get("settled_penalty_amount")),
        )


@dataclass
class OwnerAccount:
    """Persisted parking owner account with location and payment policy."""
    email: str
    payment_policy: PaymentPolicy
    lat: Optional[float] = None
    lon: Optional[float] = None
    balance: Decimal = Decimal("0.00")
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "OwnerAccount":
        created_at = row.get("created_at")
        if isinstance(created_at, datetime):
            created_at = created_at.isoformat()
        return cls(
            email=row["email"],
            payment_policy=policy_from_row(row),
            lat=row.get("lat"),
            lon=row.get("lon"),
            balance=to_decimal(row["balance"]),
            created_at=created_at,
        )


def policy_from_row(row: Dict[str, Any]) -> PaymentPolicy:
    """Build a PaymentPolicy from parking_owners policy columns."""
    return PaymentPolicy(
        rate_per_minute=to_decimal(row["payment_policy"]),
        penalty_threshold_minutes=_optional_decimal(row.get("penalty_threshold_minutes")),
        penalty_rate_per_minute=_optional_decimal(row.get("penalty_rate_per_minute")),
    )
