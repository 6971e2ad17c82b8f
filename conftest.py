from datetime import datetime, timedelta, timezone

import pytest

from audit_log import AuditLogStore, InMemoryKeyValueStore


class FakeClock:
    """Single manual clock driving both record timestamps and store expiry."""

    def __init__(self, start: datetime = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)):
        self._now = start

    def now(self) -> datetime:
        return self._now

    def time(self) -> float:
        return self._now.timestamp()

    def advance(self, **kwargs) -> None:
        self._now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def kv(clock):
    return InMemoryKeyValueStore(clock=clock.time)


@pytest.fixture
def store(kv, clock):
    return AuditLogStore(kv, clock=clock.now)
