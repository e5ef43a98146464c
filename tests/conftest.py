"""
Shared fixtures.

The database URL is pointed at a throwaway SQLite file before anything from
marketsync is imported, because settings and the engine are built at import.
"""
import os
import tempfile
from datetime import datetime, timedelta

_DB_DIR = tempfile.mkdtemp(prefix="marketsync-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ["LOG_TO_FILE"] = "false"
os.environ["ENABLE_SCHEDULER"] = "false"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["RATE_LIMIT_MIN_INTERVAL_SECONDS"] = "0"

import pytest  # noqa: E402

import marketsync.models  # noqa: E402,F401
from marketsync.models.base import SessionLocal, reset_db  # noqa: E402
from marketsync.models.connection import CONNECTION_ACTIVE, PlatformConnection  # noqa: E402
from marketsync.services import advisories  # noqa: E402
from marketsync.services.rate_limiter import get_rate_limiter  # noqa: E402


@pytest.fixture(autouse=True)
def db():
    """Fresh schema and limiter state for every test; yields the session factory."""
    reset_db()
    get_rate_limiter().reset()
    advisories._advisories.clear()
    yield SessionLocal
    get_rate_limiter().reset()


@pytest.fixture
def make_connection():
    """Insert a platform connection and return its id."""
    def _make(tenant_id="acme", platform="shopify", status=CONNECTION_ACTIVE,
              external_account_id=None, timezone="UTC", access_token="token"):
        if external_account_id is None:
            external_account_id = "acme.myshopify.com" if platform == "shopify" else "act_123"
        session = SessionLocal()
        try:
            connection = PlatformConnection(
                tenant_id=tenant_id,
                platform=platform,
                status=status,
                external_account_id=external_account_id,
                timezone=timezone,
                access_token=access_token,
            )
            session.add(connection)
            session.commit()
            return connection.id
        finally:
            session.close()
    return _make


class FakeClock:
    """Manually advanced clock for the rate limiter (monotonic seconds)."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


class FakeNow:
    """Manually advanced naive-UTC wall clock for the queue and ledger."""

    def __init__(self, start: datetime = datetime(2024, 6, 15, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def now():
    return FakeNow()
