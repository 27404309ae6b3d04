"""
ParkLedger - Billing Module

Pure session pricing: base per-minute rate plus an overstay penalty past a
threshold.
"""

from .calculator import (
    BillingAmount,
    BillingCalculator,
    PaymentPolicy,
    calc_amount,
    elapsed_ms,
    normalize_rate,
    quantize_amount,
)

__all__ = [
    "BillingAmount",
    "BillingCalculator",
    "PaymentPolicy",
    "calc_amount",
    "elapsed_ms",
    "normalize_rate",
    "quantize_amount",
]
