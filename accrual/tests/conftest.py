from datetime import datetime, timedelta, timezone
from uuid import UUID

import pytest

from accrual.config import Settings
from accrual.gateway import InMemoryLedger
from accrual.service import build_engine
from accrual.storage import InMemoryStorage


REFERRER_ID = UUID("550e8400-e29b-41d4-a716-446655440000")
REFERRED_ID = UUID("660e8400-e29b-41d4-a716-446655440001")


class FakeClock:
    def __init__(self, start: datetime = datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class SleepRecorder:
    def __init__(self):
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeps():
    return SleepRecorder()


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def settings():
    return Settings(propagation_delay_sec=0, reference_lookup_delay_sec=0)


@pytest.fixture
def engine(storage, ledger, settings, clock, sleeps):
    return build_engine(storage=storage, gateway=ledger, settings=settings, clock=clock, sleep=sleeps)
