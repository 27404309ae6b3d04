"""
Parking Session Lifecycle

Active -> Stopped -> Paid. No transition reverses.

Each operation runs in its own `Database.transaction()`. Anything that goes
wrong inside the block rolls the whole unit back, so a session is never marked
paid without the matching debit and credit.
"""

from datetime import datetime, timezone
from typing import Callable, Optional, Tuple
import uuid
import structlog

from billing.calculator import BillingAmount, BillingCalculator, PaymentPolicy, elapsed_ms
from persistence.database import Database, DuplicateKeyError, StorageError
from persistence.models import PaymentStatus, SessionRecord
from persistence.repository import AccountLedger, SessionStore
from .results import (
    ActiveSessionResult,
    ErrorType,
    PaySessionResult,
    StartSessionResult,
    StopSessionResult,
    amounts,
)

logger = structlog.get_logger()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SessionLifecycleManager:
    """
    Starts, stops and settles parking sessions.

    The caller supplies an already-authenticated driver email; this class
    never sees credentials.
    """

    def __init__(
        self,
        db: Database,
        calculator: Optional[BillingCalculator] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.calculator = calculator or BillingCalculator()
        self.clock = clock or utc_now

    def _charge(
        self,
        start: datetime,
        end: datetime,
        policy: PaymentPolicy,
    ) -> Tuple[int, BillingAmount]:
        duration_ms = max(0, elapsed_ms(start, end))
        return duration_ms, self.calculator.calculate(duration_ms, policy)

    def _existing_session(
        self,
        sessions: SessionStore,
        ledger: AccountLedger,
        driver_email: str,
    ) -> Optional[StartSessionResult]:
        active = sessions.find_active_by_driver(driver_email)
        if active is None:
            return None

        lat, lon = ledger.get_owner_location(active.parking_owner_email) or (None, None)
        return StartSessionResult(
            type=ErrorType.DUPL,
            session_id=active.session_id,
            lat=lat,
            lon=lon,
            start_time=active.start_time,
        )

    def _replayed(self, session: SessionRecord) -> PaySessionResult:
        """Report the amounts recorded at settlement, whatever the owner's policy is now."""
        logger.info("payment_replayed", session_id=session.session_id)
        return PaySessionResult(type=ErrorType.NO_ERROR, already_paid=True, **amounts(session.settled_amount))

    def start_session(self, driver_email: str, owner_email: str) -> StartSessionResult:
        """
        Open a session for a driver at an owner's space.

        If the driver already has an active session it is returned tagged
        DuplError and nothing is inserted.
        """
        try:
            return self._start(driver_email, owner_email)
        except DuplicateKeyError:
            # Another request won the insert; report its session
            logger.info("start_race_lost", driver_email=driver_email)
            try:
                with self.db.transaction(readonly=True) as tx:
                    existing = self._existing_session(SessionStore(tx), AccountLedger(tx), driver_email)
            except StorageError as e:
                logger.error("start_failed", driver_email=driver_email, error=str(e))
                return StartSessionResult(type=ErrorType.UNKNOWN)
            return existing or StartSessionResult(type=ErrorType.UNKNOWN)
        except StorageError as e:
            logger.error("start_failed", driver_email=driver_email, error=str(e))
            return StartSessionResult(type=ErrorType.UNKNOWN)

    def _start(self, driver_email: str, owner_email: str) -> StartSessionResult:
        with self.db.transaction() as tx:
            sessions = SessionStore(tx)
            ledger = AccountLedger(tx)

            existing = self._existing_session(sessions, ledger, driver_email)
            if existing is not None:
                logger.info("session_already_active", driver_email=driver_email, session_id=existing.session_id)
                return existing

            if not ledger.driver_exists(driver_email):
                return StartSessionResult(type=ErrorType.NOT_EXIST)
            location = ledger.get_owner_location(owner_email)
            if location is None:
                return StartSessionResult(type=ErrorType.NOT_EXIST)

            session = sessions.insert(SessionRecord(
                session_id=str(uuid.uuid4()),
                driver_email=driver_email,
                parking_owner_email=owner_email,
                start_time=self.clock(),
            ))

        logger.info(
            "session_started",
            session_id=session.session_id,
            driver_email=driver_email,
            owner_email=owner_email,
        )
        lat, lon = location
        return StartSessionResult(
            type=ErrorType.NO_ERROR,
            session_id=session.session_id,
            lat=lat,
            lon=lon,
            start_time=session.start_time,
        )

    def stop_session(self, session_id: str, driver_email: str, owner_email: str) -> StopSessionResult:
        """
        End an active session and estimate its cost.

        NotExistError when no active session matches all three identifiers.
        """
        try:
            with self.db.transaction() as tx:
                stopped = SessionStore(tx).mark_stopped(session_id, driver_email, owner_email, self.clock())
                if stopped is None:
                    logger.info("stop_no_match", session_id=session_id, driver_email=driver_email)
                    return StopSessionResult(type=ErrorType.NOT_EXIST)

                policy = AccountLedger(tx).get_payment_policy(stopped.parking_owner_email)
                if policy is None:
                    raise StorageError(f"owner missing for session {session_id}")
        except StorageError as e:
            logger.error("stop_failed", session_id=session_id, error=str(e))
            return StopSessionResult(type=ErrorType.UNKNOWN)

        duration_ms, charge = self._charge(stopped.start_time, stopped.end_time, policy)
        logger.info(
            "session_stopped",
            session_id=session_id,
            duration_ms=duration_ms,
            total=str(charge.total_amount),
        )
        return StopSessionResult(
            type=ErrorType.NO_ERROR,
            duration_seconds=duration_ms / 1000,
            **amounts(charge),
        )

    def pay_session(self, session_id: str, driver_email: str) -> PaySessionResult:
        """
        Settle a stopped session: driver balance -> owner balance.

        Paying an already-paid session returns the amounts recorded at
        settlement and moves nothing.
        """
        try:
            with self.db.transaction() as tx:
                sessions = SessionStore(tx)
                found = sessions.find_with_owner_policy(session_id)
                if found is None or found[0].driver_email != driver_email:
                    logger.info("pay_no_match", session_id=session_id, driver_email=driver_email)
                    return PaySessionResult(type=ErrorType.NOT_EXIST)

                session, policy = found
                if session.end_time is None:
                    logger.info("pay_session_active", session_id=session_id)
                    return PaySessionResult(type=ErrorType.NOT_EXIST)

                if session.payment_status == PaymentStatus.PAID:
                    return self._replayed(session)

                _, charge = self._charge(session.start_time, session.end_time, policy)
                if not sessions.mark_paid(session_id, charge):
                    return self._replayed(sessions.get(session_id))

                ledger = AccountLedger(tx)
                ledger.debit(driver_email, charge.total_amount)
                ledger.credit(session.parking_owner_email, charge.total_amount)
        except StorageError as e:
            logger.error("pay_failed", session_id=session_id, error=str(e))
            return PaySessionResult(type=ErrorType.UNKNOWN)

        logger.info(
            "session_paid",
            session_id=session_id,
            driver_email=driver_email,
            owner_email=session.parking_owner_email,
            total=str(charge.total_amount),
            penalty=str(charge.penalty_amount),
        )
        return PaySessionResult(type=ErrorType.NO_ERROR, **amounts(charge))

    def get_active_session(self, driver_email: str) -> ActiveSessionResult:
        """The driver's active session with charges accrued so far."""
        try:
            with self.db.transaction(readonly=True) as tx:
                found = SessionStore(tx).find_active_with_owner(driver_email)
        except StorageError as e:
            logger.error("active_lookup_failed", driver_email=driver_email, error=str(e))
            return ActiveSessionResult(type=ErrorType.UNKNOWN)

        if found is None:
            return ActiveSessionResult(type=ErrorType.NOT_EXIST)

        session, owner = found
        duration_ms, charge = self._charge(session.start_time, self.clock(), owner.payment_policy)
        return ActiveSessionResult(
            type=ErrorType.NO_ERROR,
            session_id=session.session_id,
            parking_owner_email=owner.email,
            lat=owner.lat,
            lon=owner.lon,
            start_time=session.start_time,
            duration_seconds=duration_ms / 1000,
            **amounts(charge),
        )
