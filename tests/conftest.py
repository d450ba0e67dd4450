"""
Shared fixtures for the deadlock retry tests.
"""

from pathlib import Path

import pytest
from sqlalchemy.exc import OperationalError

from deadlock_retry.data.engine.session import make_engine, make_session_factory

DEADLOCK_MESSAGE = "(1213, 'Deadlock found when trying to get lock; try restarting transaction')"
LOCK_WAIT_MESSAGE = "(1205, 'Lock wait timeout exceeded; try restarting transaction')"


class RecordingSink:
    """Log sink that keeps every (message, context) pair."""

    def __init__(self):
        self.calls = []

    def __call__(self, message, context):
        self.calls.append((message, dict(context)))

    @property
    def messages(self):
        return [m for m, _ in self.calls]

    def events(self, kind):
        return [c for _, c in self.calls if c.get("event") == kind]


class FakeSession:
    """Stands in for a Session/Connection with a fixed transaction state."""

    def __init__(self, open_transaction=False):
        self.open_transaction = open_transaction

    def in_transaction(self):
        return self.open_transaction


@pytest.fixture
def db_error():
    """Build a SQLAlchemy OperationalError the way a MySQL driver failure looks."""

    def make(message=DEADLOCK_MESSAGE, cls=OperationalError):
        return cls("UPDATE accounts SET balance = balance - 1 WHERE id = 1", {}, Exception(message))

    return make


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def no_sleep(monkeypatch):
    """Record backoff sleeps instead of waiting."""
    slept = []
    monkeypatch.setattr("deadlock_retry.retrier.time.sleep", slept.append)
    return slept


@pytest.fixture
def engine(tmp_path: Path):
    engine = make_engine(f"sqlite:///{(tmp_path / 'test.db').as_posix()}")
    yield engine
    engine.dispose()


@pytest.fixture
def session_maker(engine):
    return make_session_factory(engine)


@pytest.fixture
def fake_session():
    return FakeSession
