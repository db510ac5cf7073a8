# Tests/conftest.py
#
# Shared fixtures: a controllable clock and per-test user databases.
#
# Imports
from datetime import datetime, timedelta, timezone
from pathlib import Path
#
# Third-Party Imports
import pytest
#
# Local Imports
from oracle_cards.DB.Oracle_DB import OracleCardsDB
#
#######################################################################################################################
#
# Functions:

class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 1.0) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def user_id():
    """Provides a consistent user ID for tests."""
    return "user-alice"


@pytest.fixture
def db_path(tmp_path):
    """Provides a temporary path for the database file for each test."""
    return tmp_path / "oracle_test.db"


@pytest.fixture(scope="function")
def db_instance(db_path, user_id, clock):
    """Creates a fresh file-backed DB instance for each test."""
    db = OracleCardsDB(Path(db_path), user_id, clock=clock)
    yield db
    db.close_connection()


@pytest.fixture
def db_factory(tmp_path, clock):
    """Factory creating one DB per simulated device; all are closed at teardown."""
    created = []

    def _create(user_id: str = "user-alice", name: str = None) -> OracleCardsDB:
        db = OracleCardsDB(tmp_path / f"{name or user_id}-{len(created)}.db", user_id, clock=clock)
        created.append(db)
        return db

    yield _create
    for db in created:
        db.close_connection()

#
# End of conftest.py
#######################################################################################################################
