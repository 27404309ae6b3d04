"""
Pytest Configuration and Fixtures
"""

import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), 'src'))

# Set test environment
os.environ["API_KEY"] = "test-key-12345"

from core.accounts import AccountManager
from core.lifecycle import SessionLifecycleManager
from persistence.database import Database

DRIVER = "driver@mail.com"
OTHER_DRIVER = "other@mail.com"
OWNER = "owner@mail.com"


class FixedClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def db(tmp_path):
    """Temporary file-backed SQLite database (shared across threads)."""
    database = Database(f"sqlite:///{tmp_path / 'parkledger.db'}")
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def clock():
    return FixedClock(datetime(2025, 3, 1, 8, 0, tzinfo=timezone.utc))


@pytest.fixture
def accounts(db):
    return AccountManager(db)


@pytest.fixture
def manager(db, clock):
    return SessionLifecycleManager(db, clock=clock)


@pytest.fixture
def seeded(accounts):
    """Two drivers with 100.00 each and one owner charging 0.50/min."""
    accounts.create_driver(DRIVER, balance="100.00")
    accounts.create_driver(OTHER_DRIVER, balance="100.00")
    accounts.create_owner(OWNER, lat=40.7128, lon=-74.006, rate_per_minute="0.50")
    return accounts
