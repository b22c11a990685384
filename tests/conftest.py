"""
Pytest configuration for salesdigest tests

Shared fixtures: a temporary SQLite ledger driven by a controllable clock,
an unthrottled rate limiter and clean telemetry per test.  Fakes and model
builders live in factories.py.
"""

from __future__ import annotations

import pytest
from factories import FakeClock

from salesdigest.digest.rate_limit import TokenBucket
from salesdigest.observability import telemetry
from salesdigest.storage.ledger import SQLiteLedger


@pytest.fixture(autouse=True)
def reset_telemetry():
    telemetry.reset()
    yield
    telemetry.reset()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ledger(tmp_path, clock):
    with SQLiteLedger(tmp_path / "ledger.db", clock=clock) as opened:
        yield opened


@pytest.fixture
def no_throttle() -> TokenBucket:
    return TokenBucket.from_interval(0)
