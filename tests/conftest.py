"""
Shared fixtures: temporary SQLite repositories, ledgers and a fake clock.
"""

import os
from datetime import datetime, timezone

import pytest
import pytest_asyncio

from ai_credit_guard.billing.ledger import InMemoryCreditLedger
from ai_credit_guard.storage.repository import UsageRepository

FIXED_NOW = datetime(2024, 3, 15, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_path(tmp_path):
    return os.path.join(str(tmp_path), "test.db")


@pytest_asyncio.fixture
async def repository(db_path):
    repo = UsageRepository(db_path)
    await repo.initialize_schema()
    return repo


@pytest.fixture
def ledger():
    return InMemoryCreditLedger()
