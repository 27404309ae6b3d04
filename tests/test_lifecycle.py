"""
Tests for the Session Lifecycle

Start -> stop -> pay, idempotent settlement, rollback on failed transfers and
the one-active-session-per-driver invariant under concurrency.
"""

from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest
from core.lifecycle import SessionLifecycleManager
from core.results import ErrorType
from persistence.repository import AccountLedger, LedgerError, SessionStore

from conftest import DRIVER, OTHER_DRIVER, OWNER


def balances(accounts):
    return (
        accounts.get_driver_balance(DRIVER).balance,
        accounts.get_owner_balance(OWNER).balance,
    )


def active_count(db, driver=DRIVER) -> int:
    with db.transaction(readonly=True) as tx:
        return sum(1 for s in SessionStore(tx).list_by_driver(driver) if s.is_active)


class TestStartSession:
    """Test opening sessions."""

    def test_start_returns_session_and_location(self, manager, seeded, clock):
        result = manager.start_session(DRIVER, OWNER)

        assert result.type == ErrorType.NO_ERROR
        assert result.session_id
        assert result.lat == pytest.approx(40.7128)
        assert result.lon == pytest.approx(-74.006)
        assert result.start_time == clock.now

    def test_duplicate_start_returns_existing(self, manager, seeded, clock, db):
        """A second start reports the active session and inserts nothing."""
        first = manager.start_session(DRIVER, OWNER)
        clock.advance(minutes=5)

        second = manager.start_session(DRIVER, OWNER)

        assert second.type == ErrorType.DUPL
        assert second.session_id == first.session_id
        assert second.start_time == first.start_time
        assert second.lat == first.lat
        assert second.lon == first.lon
        with db.transaction(readonly=True) as tx:
            assert len(SessionStore(tx).list_by_driver(DRIVER)) == 1

    def test_unknown_owner(self, manager, seeded, db):
        result = manager.start_session(DRIVER, "nobody@mail.com")

        assert result.type == ErrorType.NOT_EXIST
        assert active_count(db) == 0

    def test_unknown_driver(self, manager, seeded):
        assert manager.start_session("ghost@mail.com", OWNER).type == ErrorType.NOT_EXIST

    def test_drivers_are_independent(self, manager, seeded):
        first = manager.start_session(DRIVER, OWNER)
        second = manager.start_session(OTHER_DRIVER, OWNER)

        assert first.type == second.type == ErrorType.NO_ERROR
        assert first.session_id != second.session_id

    def test_concurrent_starts_create_one_session(self, db, seeded, clock):
        """Racing starts for one driver: one winner, everyone else sees it."""
        def start(_):
            return SessionLifecycleManager(db, clock=clock).start_session(DRIVER, OWNER)

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(start, range(16)))

        created = [r for r in results if r.type == ErrorType.NO_ERROR]
        duplicates = [r for r in results if r.type == ErrorType.DUPL]
        assert len(created) == 1
        assert len(duplicates) == 15
        assert {r.session_id for r in duplicates} == {created[0].session_id}
        assert active_count(db) == 1

    def test_lost_insert_race_reports_winner(self, manager, seeded, db, monkeypatch):
        """The unique index catches a start that missed the active-session check."""
        winner = manager.start_session(DRIVER, OWNER)
        original = SessionStore.find_active_by_driver
        calls = []

        def stale_first_lookup(self, driver_email):
            calls.append(driver_email)
            if len(calls) == 1:
                return None
            return original(self, driver_email)

        monkeypatch.setattr(SessionStore, "find_active_by_driver", stale_first_lookup)

        result = manager.start_session(DRIVER, OWNER)

        assert len(calls) == 2
        assert result.type == ErrorType.DUPL
        assert result.session_id == winner.session_id
        assert result.start_time == winner.start_time
        assert result.lat == pytest.approx(40.7128)
        assert active_count(db) == 1


class TestStopSession:
    """Test stopping sessions and cost estimates."""

    def test_stop_estimates_cost(self, manager, seeded, clock, accounts):
        started = manager.start_session(DRIVER, OWNER)
        clock.advance(minutes=90)

        result = manager.stop_session(started.session_id, DRIVER, OWNER)

        assert result.type == ErrorType.NO_ERROR
        assert result.duration_seconds == 5400
        assert result.total_amount == Decimal("45.00")
        assert result.penalty_amount == Decimal("0.00")
        # estimate only
        assert balances(accounts) == (Decimal("100.00"), Decimal("0.00"))

    def test_stop_with_overstay_penalty(self, manager, seeded, clock):
        started = manager.start_session(DRIVER, OWNER)
        clock.advance(minutes=370)

        result = manager.stop_session(started.session_id, DRIVER, OWNER)

        assert result.penalty_amount == Decimal("50.00")
        assert result.total_amount == Decimal("235.00")

    def test_stop_twice(self, manager, seeded, clock, db):
        """A stopped session cannot be stopped again and keeps its end time."""
        started = manager.start_session(DRIVER, OWNER)
        clock.advance(minutes=10)
        manager.stop_session(started.session_id, DRIVER, OWNER)
        with db.transaction(readonly=True) as tx:
            end_time = SessionStore(tx).get(started.session_id).end_time
        clock.advance(minutes=10)

        result = manager.stop_session(started.session_id, DRIVER, OWNER)

        assert result.type == ErrorType.NOT_EXIST
        with db.transaction(readonly=True) as tx:
            assert SessionStore(tx).get(started.session_id).end_time == end_time

    def test_stop_wrong_owner(self, manager, seeded, db):
        started = manager.start_session(DRIVER, OWNER)

        result = manager.stop_session(started.session_id, DRIVER, "nobody@mail.com")

        assert result.type == ErrorType.NOT_EXIST
        assert active_count(db) == 1

    def test_stop_wrong_driver(self, manager, seeded, db):
        started = manager.start_session(DRIVER, OWNER)

        assert manager.stop_session(started.session_id, OTHER_DRIVER, OWNER).type == ErrorType.NOT_EXIST
        assert active_count(db) == 1

    def test_stop_unknown_session(self, manager, seeded):
        assert manager.stop_session("missing", DRIVER, OWNER).type == ErrorType.NOT_EXIST


class TestPaySession:
    """Test settlement between driver and owner balances."""

    @pytest.fixture
    def stopped(self, manager, seeded, clock):
        started = manager.start_session(DRIVER, OWNER)
        clock.advance(minutes=90)
        manager.stop_session(started.session_id, DRIVER, OWNER)
        return started.session_id

    def test_pay_moves_funds(self, manager, accounts, stopped):
        result = manager.pay_session(stopped, DRIVER)

        assert result.type == ErrorType.NO_ERROR
        assert result.total_amount == Decimal("45.00")
        assert result.penalty_amount == Decimal("0.00")
        assert result.already_paid is False
        assert balances(accounts) == (Decimal("55.00"), Decimal("45.00"))
        assert accounts.verify_payment_status(stopped).verified is True

    def test_pay_twice_is_idempotent(self, manager, accounts, stopped, clock):
        """Second payment reports the same amounts and moves nothing."""
        first = manager.pay_session(stopped, DRIVER)
        clock.advance(hours=3)

        second = manager.pay_session(stopped, DRIVER)

        assert second.type == ErrorType.NO_ERROR
        assert second.already_paid is True
        assert (second.total_amount, second.penalty_amount) == (first.total_amount, first.penalty_amount)
        assert balances(accounts) == (Decimal("55.00"), Decimal("45.00"))

    def test_replay_reports_settled_amounts_after_policy_change(self, manager, accounts, stopped):
        """A replay returns what was charged, not what the new policy would charge."""
        first = manager.pay_session(stopped, DRIVER)
        assert accounts.set_payment_policy(OWNER, "2.00").ok

        second = manager.pay_session(stopped, DRIVER)

        assert second.already_paid is True
        assert (second.total_amount, second.penalty_amount) == (Decimal("45.00"), Decimal("0.00"))
        assert (second.total_amount, second.penalty_amount) == (first.total_amount, first.penalty_amount)
        assert balances(accounts) == (Decimal("55.00"), Decimal("45.00"))

    def test_pay_wrong_driver(self, manager, accounts, stopped):
        result = manager.pay_session(stopped, OTHER_DRIVER)

        assert result.type == ErrorType.NOT_EXIST
        assert balances(accounts) == (Decimal("100.00"), Decimal("0.00"))
        assert accounts.get_driver_balance(OTHER_DRIVER).balance == Decimal("100.00")

    def test_pay_unknown_session(self, manager, accounts, seeded):
        assert manager.pay_session("missing", DRIVER).type == ErrorType.NOT_EXIST
        assert balances(accounts) == (Decimal("100.00"), Decimal("0.00"))

    def test_pay_active_session(self, manager, accounts, seeded):
        """An active session has no end time to bill against."""
        started = manager.start_session(DRIVER, OWNER)

        assert manager.pay_session(started.session_id, DRIVER).type == ErrorType.NOT_EXIST
        assert accounts.verify_payment_status(started.session_id).verified is False

    def test_failed_credit_rolls_back(self, manager, accounts, stopped, monkeypatch):
        """Status flip and debit are undone when the credit fails."""
        def broken_credit(self, email, amount, kind=None):
            raise LedgerError("owner ledger unavailable")

        monkeypatch.setattr(AccountLedger, "credit", broken_credit)

        result = manager.pay_session(stopped, DRIVER)

        assert result.type == ErrorType.UNKNOWN
        assert accounts.verify_payment_status(stopped).verified is False
        assert balances(accounts) == (Decimal("100.00"), Decimal("0.00"))

    def test_retry_after_failure_settles(self, manager, accounts, stopped, monkeypatch):
        def broken_debit(self, email, amount, kind=None):
            raise LedgerError("driver ledger unavailable")

        with monkeypatch.context() as patch:
            patch.setattr(AccountLedger, "debit", broken_debit)
            assert manager.pay_session(stopped, DRIVER).type == ErrorType.UNKNOWN

        assert manager.pay_session(stopped, DRIVER).already_paid is False
        assert balances(accounts) == (Decimal("55.00"), Decimal("45.00"))

    def test_concurrent_payments_transfer_once(self, db, accounts, stopped, clock):
        def pay(_):
            return SessionLifecycleManager(db, clock=clock).pay_session(stopped, DRIVER)

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(pay, range(16)))

        assert all(r.type == ErrorType.NO_ERROR for r in results)
        assert {(r.total_amount, r.penalty_amount) for r in results} == {(Decimal("45.00"), Decimal("0.00"))}
        assert sum(1 for r in results if not r.already_paid) == 1
        assert balances(accounts) == (Decimal("55.00"), Decimal("45.00"))

    def test_new_session_after_payment(self, manager, stopped):
        assert manager.pay_session(stopped, DRIVER).ok
        assert manager.start_session(DRIVER, OWNER).type == ErrorType.NO_ERROR


class TestActiveSession:
    """Test the read-only active session view."""

    def test_live_charges(self, manager, seeded, clock):
        started = manager.start_session(DRIVER, OWNER)
        clock.advance(minutes=30)

        result = manager.get_active_session(DRIVER)

        assert result.type == ErrorType.NO_ERROR
        assert result.session_id == started.session_id
        assert result.parking_owner_email == OWNER
        assert result.duration_seconds == 1800
        assert result.total_amount == Decimal("15.00")
        assert result.penalty_amount == Decimal("0.00")

    def test_uses_current_policy(self, manager, seeded, clock, accounts):
        manager.start_session(DRIVER, OWNER)
        clock.advance(minutes=30)
        accounts.set_payment_policy(OWNER, "1.00")

        assert manager.get_active_session(DRIVER).total_amount == Decimal("30.00")

    def test_no_active_session(self, manager, seeded, clock):
        assert manager.get_active_session(DRIVER).type == ErrorType.NOT_EXIST

        started = manager.start_session(DRIVER, OWNER)
        manager.stop_session(started.session_id, DRIVER, OWNER)

        assert manager.get_active_session(DRIVER).type == ErrorType.NOT_EXIST

    def test_does_not_mutate(self, manager, seeded, clock, db):
        started = manager.start_session(DRIVER, OWNER)
        clock.advance(hours=2)

        manager.get_active_session(DRIVER)

        with db.transaction(readonly=True) as tx:
            session = SessionStore(tx).get(started.session_id)
        assert session.is_active

    def test_result_to_dict(self, manager, seeded, clock):
        manager.start_session(DRIVER, OWNER)
        clock.advance(minutes=2)

        data = manager.get_active_session(DRIVER).to_dict()

        assert data["type"] == "NoError"
        assert data["totalAmount"] == "1.00"
        assert data["startTime"].startswith("2025-03-01T08:00:00")
