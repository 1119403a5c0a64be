"""
Shared fixtures for the token billing tests.

Every test gets a fresh in-memory store and a controllable clock, so time
based behaviour (billing dates, analytics windows, grace periods) is
deterministic.
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from token_billing.config import BillingSettings
from token_billing.service import BillingService
from token_billing.store import InMemoryBillingStore

# A Thursday
START = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryBillingStore()


@pytest.fixture
def settings():
    return BillingSettings(
        ledger_retry_backoff_seconds=0,
        webhook_secret="test-webhook-secret"
    )


@pytest.fixture
def service(store, settings, clock):
    return BillingService(store, settings, clock=clock)
