"""
Operation Results

Every core operation returns one tagged result: an ErrorType plus a fixed,
per-operation payload. Business conditions (duplicate active session, missing
session) are results, not exceptions.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from billing.calculator import BillingAmount, PaymentPolicy


class ErrorType(Enum):
    NO_ERROR = "NoError"
    NOT_EXIST = "NotExistError"
    DUPL = "DuplError"
    UNKNOWN = "UnknownError"


def _money(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def _time(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass
class OperationResult:
    """Result with no payload (setters, provisioning)."""
    type: ErrorType

    @property
    def ok(self) -> bool:
        return self.type == ErrorType.NO_ERROR

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value}


@dataclass
class StartSessionResult(OperationResult):
    """
    NoError: the new session. DuplError: the driver's existing active
    session, so the caller can resume it.
    """
    session_id: Optional[str] = None
    lat: Optional[float] = None
    lon: Optional[float] = None
    start_time: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "sessionID": self.session_id,
            "lat": self.lat,
            "lon": self.lon,
            "startTime": _time(self.start_time),
        }


@dataclass
class StopSessionResult(OperationResult):
    """Duration and an estimate of what the session will cost. No funds move."""
    duration_seconds: Optional[float] = None
    total_amount: Optional[Decimal] = None
    penalty_amount: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "durationSeconds": self.duration_seconds,
            "totalAmount": _money(self.total_amount),
            "penaltyAmount": _money(self.penalty_amount),
        }


@dataclass
class PaySessionResult(OperationResult):
    total_amount: Optional[Decimal] = None
    penalty_amount: Optional[Decimal] = None
    already_paid: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "totalAmount": _money(self.total_amount),
            "penaltyAmount": _money(self.penalty_amount),
            "alreadyPaid": self.already_paid,
        }


@dataclass
class ActiveSessionResult(OperationResult):
    """The driver's running session with live charges."""
    session_id: Optional[str] = None
    parking_owner_email: Optional[str] = None
    lat: Optional[float] = None
    lon: Optional[float] = None
    start_time: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    total_amount: Optional[Decimal] = None
    penalty_amount: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "sessionID": self.session_id,
            "parkingOwnerEmail": self.parking_owner_email,
            "lat": self.lat,
            "lon": self.lon,
            "startTime": _time(self.start_time),
            "durationSeconds": self.duration_seconds,
            "totalAmount": _money(self.total_amount),
            "penaltyAmount": _money(self.penalty_amount),
        }


@dataclass
class BalanceResult(OperationResult):
    balance: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "balance": _money(self.balance)}


@dataclass
class PolicyResult(OperationResult):
    policy: Optional[PaymentPolicy] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "paymentPolicy": self.policy.to_dict() if self.policy else None,
        }


@dataclass
class OwnerProfileResult(OperationResult):
    email: Optional[str] = None
    lat: Optional[float] = None
    lon: Optional[float] = None
    balance: Optional[Decimal] = None
    policy: Optional[PaymentPolicy] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "email": self.email,
            "lat": self.lat,
            "lon": self.lon,
            "balance": _money(self.balance),
            "paymentPolicy": self.policy.to_dict() if self.policy else None,
        }


@dataclass
class PaymentStatusResult(OperationResult):
    verified: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "verified": self.verified}


def amounts(amount: BillingAmount) -> Dict[str, Decimal]:
    """Keyword arguments for the amount fields of a result."""
    return {
        "total_amount": amount.total_amount,
        "penalty_amount": amount.penalty_amount,
    }
