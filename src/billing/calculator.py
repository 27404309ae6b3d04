"""
Parking Billing Calculator

Turns a parked duration and an owner's payment policy into an owed amount.

    minutes = duration_ms / 60000
    normal  = minutes * rate
    penalty = (minutes - threshold) * penalty_rate   (only past the threshold)
    total   = normal + penalty

All arithmetic is Decimal. Results are quantized to cents.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Optional, Union

Number = Union[Decimal, int, str, float]

CURRENCY_QUANTUM = Decimal("0.01")
MS_PER_MINUTE = Decimal(60000)


def to_decimal(value: Number) -> Decimal:
    """Coerce a numeric value to Decimal without binary float artifacts."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def quantize_amount(value: Number) -> Decimal:
    """Round a currency amount to cents. Raises ValueError if it cannot be represented."""
    try:
        return to_decimal(value).quantize(CURRENCY_QUANTUM, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise ValueError(f"amount out of range: {value}")


def normalize_rate(value: Number) -> Decimal:
    """Normalize a per-minute rate to currency precision (2 dp)."""
    return quantize_amount(value)


def elapsed_ms(start: datetime, end: datetime) -> int:
    """Whole milliseconds between two timestamps."""
    return (end - start) // timedelta(milliseconds=1)


@dataclass(frozen=True)
class PaymentPolicy:
    """
    An owner's payment policy.

    Only the base rate is required. The penalty threshold and rate fall back
    to the calculator defaults when unset.
    """
    rate_per_minute: Decimal
    penalty_threshold_minutes: Optional[Decimal] = None
    penalty_rate_per_minute: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ratePerMinute": str(self.rate_per_minute),
            "penaltyThresholdMinutes": (
                str(self.penalty_threshold_minutes)
                if self.penalty_threshold_minutes is not None else None
            ),
            "penaltyRatePerMinute": (
                str(self.penalty_rate_per_minute)
                if self.penalty_rate_per_minute is not None else None
            ),
        }


@dataclass(frozen=True)
class BillingAmount:
    """Owed amount for a session. `total_amount` includes the penalty."""
    total_amount: Decimal
    penalty_amount: Decimal

    @property
    def normal_amount(self) -> Decimal:
        return self.total_amount - self.penalty_amount

    def __iter__(self):
        yield self.total_amount
        yield self.penalty_amount

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalAmount": str(self.total_amount),
            "penaltyAmount": str(self.penalty_amount),
        }


class BillingCalculator:
    """
    Computes session charges with overstay penalties.

    The threshold boundary is inclusive on the non-penalized side: parking for
    exactly `threshold` minutes costs `threshold * rate` and no penalty.
    """

    DEFAULT_PENALTY_THRESHOLD_MINUTES = Decimal(360)
    DEFAULT_PENALTY_MULTIPLIER = Decimal(10)

    def __init__(
        self,
        penalty_threshold_minutes: Optional[Number] = None,
        penalty_multiplier: Optional[Number] = None,
    ):
        self.penalty_threshold_minutes = (
            to_decimal(penalty_threshold_minutes)
            if penalty_threshold_minutes is not None
            else self.DEFAULT_PENALTY_THRESHOLD_MINUTES
        )
        self.penalty_multiplier = (
            to_decimal(penalty_multiplier)
            if penalty_multiplier is not None
            else self.DEFAULT_PENALTY_MULTIPLIER
        )

    def calc_amount(
        self,
        duration_ms: int,
        rate_per_minute: Number,
        penalty_threshold_minutes: Optional[Number] = None,
        penalty_rate_per_minute: Optional[Number] = None,
    ) -> BillingAmount:
        if duration_ms < 0:
            raise ValueError(f"duration_ms must be >= 0, got {duration_ms}")

        rate = to_decimal(rate_per_minute)
        if rate <= 0:
            raise ValueError(f"rate_per_minute must be > 0, got {rate}")

        threshold = (
            to_decimal(penalty_threshold_minutes)
            if penalty_threshold_minutes is not None
            else self.penalty_threshold_minutes
        )
        penalty_rate = (
            to_decimal(penalty_rate_per_minute)
            if penalty_rate_per_minute is not None
            else rate * self.penalty_multiplier
        )

        minutes = Decimal(duration_ms) / MS_PER_MINUTE
        normal = minutes * rate

        penalty = Decimal(0)
        if minutes > threshold:
            penalty = (minutes - threshold) * penalty_rate

        return BillingAmount(
            total_amount=quantize_amount(normal + penalty),
            penalty_amount=quantize_amount(penalty),
        )

    def calculate(self, duration_ms: int, policy: PaymentPolicy) -> BillingAmount:
        """Charge for `duration_ms` under an owner's policy."""
        return self.calc_amount(
            duration_ms,
            policy.rate_per_minute,
            policy.penalty_threshold_minutes,
            policy.penalty_rate_per_minute,
        )


_default_calculator = BillingCalculator()


def calc_amount(
    duration_ms: int,
    rate_per_minute: Number,
    penalty_threshold_minutes: Optional[Number] = None,
    penalty_rate_per_minute: Optional[Number] = None,
) -> BillingAmount:
    """Charge for a duration using the default threshold (360 min) and 10x penalty."""
    return _default_calculator.calc_amount(
        duration_ms,
        rate_per_minute,
        penalty_threshold_minutes,
        penalty_rate_per_minute,
    )
