"""
Account operations with tagged results: provisioning, balances, payment
policy, owner location/profile and payment verification.
"""

from typing import Optional
import structlog

from billing.calculator import Number, normalize_rate
from persistence.database import Database, DuplicateKeyError, StorageError
from persistence.models import PaymentStatus
from persistence.repository import AccountKind, AccountLedger, SessionStore
from .results import (
    BalanceResult,
    ErrorType,
    OperationResult,
    OwnerProfileResult,
    PaymentStatusResult,
    PolicyResult,
)

logger = structlog.get_logger()


class AccountManager:
    """Driver and parking-owner account operations."""

    DEFAULT_RATE_PER_MINUTE = "1.00"

    def __init__(self, db: Database):
        self.db = db

    def create_driver(self, email: str, balance: Number = 0) -> OperationResult:
        try:
            with self.db.transaction() as tx:
                AccountLedger(tx).create_driver(email, balance)
        except DuplicateKeyError:
            return OperationResult(type=ErrorType.DUPL)
        except StorageError as e:
            logger.error("create_driver_failed", email=email, error=str(e))
            return OperationResult(type=ErrorType.UNKNOWN)
        return OperationResult(type=ErrorType.NO_ERROR)

    def create_owner(
        self,
        email: str,
        lat: Optional[float] = None,
        lon: Optional[float] = None,
        rate_per_minute: Number = DEFAULT_RATE_PER_MINUTE,
        balance: Number = 0,
        penalty_threshold_minutes: Optional[Number] = None,
        penalty_rate_per_minute: Optional[Number] = None,
    ) -> OperationResult:
        if normalize_rate(rate_per_minute) <= 0:
            raise ValueError(f"rate_per_minute must be > 0, got {rate_per_minute}")
        try:
            with self.db.transaction() as tx:
                AccountLedger(tx).create_owner(
                    email,
                    rate_per_minute,
                    lat=lat,
                    lon=lon,
                    balance=balance,
                    penalty_threshold_minutes=penalty_threshold_minutes,
                    penalty_rate_per_minute=penalty_rate_per_minute,
                )
        except DuplicateKeyError:
            return OperationResult(type=ErrorType.DUPL)
        except StorageError as e:
            logger.error("create_owner_failed", email=email, error=str(e))
            return OperationResult(type=ErrorType.UNKNOWN)
        return OperationResult(type=ErrorType.NO_ERROR)

    def _balance(self, email: str, kind: AccountKind) -> BalanceResult:
        try:
            with self.db.transaction(readonly=True) as tx:
                balance = AccountLedger(tx).get_balance(email, kind)
        except StorageError as e:
            logger.error("balance_lookup_failed", email=email, error=str(e))
            return BalanceResult(type=ErrorType.UNKNOWN)
        if balance is None:
            return BalanceResult(type=ErrorType.NOT_EXIST)
        return BalanceResult(type=ErrorType.NO_ERROR, balance=balance)

    def get_driver_balance(self, email: str) -> BalanceResult:
        return self._balance(email, AccountKind.DRIVER)

    def get_owner_balance(self, email: str) -> BalanceResult:
        return self._balance(email, AccountKind.OWNER)

    def get_payment_policy(self, owner_email: str) -> PolicyResult:
        try:
            with self.db.transaction(readonly=True) as tx:
                policy = AccountLedger(tx).get_payment_policy(owner_email)
        except StorageError as e:
            logger.error("policy_lookup_failed", email=owner_email, error=str(e))
            return PolicyResult(type=ErrorType.UNKNOWN)
        if policy is None:
            return PolicyResult(type=ErrorType.NOT_EXIST)
        return PolicyResult(type=ErrorType.NO_ERROR, policy=policy)

    def set_payment_policy(
        self,
        owner_email: str,
        rate_per_minute: Number,
        penalty_threshold_minutes: Optional[Number] = None,
        penalty_rate_per_minute: Optional[Number] = None,
    ) -> OperationResult:
        """Raises ValueError for a rate that rounds to zero or below or cannot be represented."""
        try:
            with self.db.transaction() as tx:
                updated = AccountLedger(tx).set_payment_policy(
                    owner_email,
                    rate_per_minute,
                    penalty_threshold_minutes,
                    penalty_rate_per_minute,
                )
        except StorageError as e:
            logger.error("policy_update_failed", email=owner_email, error=str(e))
            return OperationResult(type=ErrorType.UNKNOWN)
        return OperationResult(type=ErrorType.NO_ERROR if updated else ErrorType.NOT_EXIST)

    def set_location(self, owner_email: str, lat: float, lon: float) -> OperationResult:
        try:
            with self.db.transaction() as tx:
                updated = AccountLedger(tx).set_location(owner_email, lat, lon)
        except StorageError as e:
            logger.error("location_update_failed", email=owner_email, error=str(e))
            return OperationResult(type=ErrorType.UNKNOWN)
        return OperationResult(type=ErrorType.NO_ERROR if updated else ErrorType.NOT_EXIST)

    def get_owner_profile(self, owner_email: str) -> OwnerProfileResult:
        try:
            with self.db.transaction(readonly=True) as tx:
                owner = AccountLedger(tx).get_owner(owner_email)
        except StorageError as e:
            logger.error("profile_lookup_failed", email=owner_email, error=str(e))
            return OwnerProfileResult(type=ErrorType.UNKNOWN)
        if owner is None:
            return OwnerProfileResult(type=ErrorType.NOT_EXIST)
        return OwnerProfileResult(
            type=ErrorType.NO_ERROR,
            email=owner.email,
            lat=owner.lat,
            lon=owner.lon,
            balance=owner.balance,
            policy=owner.payment_policy,
        )

    def verify_payment_status(self, session_id: str) -> PaymentStatusResult:
        """Whether a session has been settled."""
        try:
            with self.db.transaction(readonly=True) as tx:
                session = SessionStore(tx).get(session_id)
        except StorageError as e:
            logger.error("payment_status_lookup_failed", session_id=session_id, error=str(e))
            return PaymentStatusResult(type=ErrorType.UNKNOWN)
        if session is None:
            return PaymentStatusResult(type=ErrorType.NOT_EXIST)
        return PaymentStatusResult(
            type=ErrorType.NO_ERROR,
            verified=session.payment_status == PaymentStatus.PAID,
        )
