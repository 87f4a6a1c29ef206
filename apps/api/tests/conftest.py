"""
Pytest configuration and fixtures

Tests run against an in-memory SQLite database. Every test gets a freshly
created schema that is dropped afterwards, so nothing leaks between tests.
"""
import os
import sys
import threading
from uuid import uuid4

import pytest

# Must be set before core.database is imported anywhere
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("ENVIRONMENT", "test")

# Add the parent directory to the path so we can import from services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from core.database import Base
from models import Athlete

# One shared connection so the in-memory database is visible from the
# TestClient's worker threads too
test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSessionLocal = sessionmaker(bind=test_engine, autocommit=False, autoflush=False, expire_on_commit=False)


class FakeRedis:
    """Minimal in-memory Redis mock for unit tests (counter subset, thread-safe)."""

    def __init__(self):
        self._store: dict = {}
        self._ttls: dict = {}
        self._lock = threading.Lock()

    def get(self, key):
        with self._lock:
            value = self._store.get(key)
        return None if value is None else str(value)

    def incr(self, key):
        with self._lock:
            self._store[key] = int(self._store.get(key, 0)) + 1
            return self._store[key]

    def decr(self, key):
        with self._lock:
            self._store[key] = int(self._store.get(key, 0)) - 1
            return self._store[key]

    def expire(self, key, ttl):
        with self._lock:
            if key not in self._store:
                return False
            self._ttls[key] = ttl
            return True

    def ttl(self, key):
        with self._lock:
            if key not in self._store:
                return -2
            return self._ttls.get(key, -1)

    def count(self, key) -> int:
        return int(self._store.get(key, 0))


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture(scope="function")
def db_session():
    """
    Create a database session over a fresh schema.

    All tables are dropped after the test completes.
    """
    Base.metadata.create_all(bind=test_engine)
    session = TestSessionLocal()

    yield session

    session.close()
    Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def test_athlete(db_session):
    """Create a test athlete."""
    athlete = Athlete(
        email=f"test_{uuid4()}@example.com",
        display_name="Test Athlete",
    )
    db_session.add(athlete)
    db_session.commit()
    db_session.refresh(athlete)

    return athlete
