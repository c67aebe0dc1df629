"""Shared test fixtures."""

from datetime import datetime, timedelta, timezone

import pytest

from ai_credit_ledger.config.loader import DatabaseConfig, LedgerConfig
from ai_credit_ledger.core.services import build_services


class FixedClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)

    def set(self, now: datetime) -> None:
        self.now = now


@pytest.fixture
def clock():
    """Clock fixed in the middle of March 2024."""
    return FixedClock(datetime(2024, 3, 15, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "ledger.db")


@pytest.fixture
def services(db_path, clock):
    """Fully wired ledger on a fresh database."""
    config = LedgerConfig(database=DatabaseConfig(path=db_path, busy_timeout_seconds=30.0))
    return build_services(config, clock=clock)
