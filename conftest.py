"""Shared test fixtures."""

from datetime import UTC, datetime, timedelta

import pytest

from watchwise_shared.notifications import NotificationDispatcher
from watchwise_shared.store import MemoryStore


class FakeClock:
    """A clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 3, 15, 12, 0, tzinfo=UTC))


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def dispatcher(store: MemoryStore, clock: FakeClock) -> NotificationDispatcher:
    return NotificationDispatcher(store, clock=clock)
