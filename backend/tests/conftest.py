"""Shared test fixtures and configuration for roomsync tests."""
from datetime import datetime, timedelta, timezone

import pytest

from roomsync.datasource.memory import InMemoryDataService
from roomsync.unread.counter import UnreadCounter
from roomsync.unread.store import WatermarkStore

ME = "me"
BASE_TIME = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)


class ManualClock:
    """Wall clock the test advances by hand."""

    def __init__(self, start: datetime = BASE_TIME) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, hour: int, minute: int) -> datetime:
        self.now = self.now.replace(hour=hour, minute=minute, second=0, microsecond=0)
        return self.now


class Ticker:
    """Monotonic clock (seconds) the test advances by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def ticker():
    return Ticker()


@pytest.fixture
def service(clock):
    """In-memory backend with two rooms and a few named users."""
    svc = InMemoryDataService(clock=clock)
    svc.add_room("general", "General", created_at=BASE_TIME - timedelta(days=2))
    svc.add_room("random", "Random", created_at=BASE_TIME - timedelta(days=1))
    for user_id, name in (("alice", "Alice"), ("bob", "Bob"), ("carol", "Carol"), (ME, "Me")):
        svc.set_profile(user_id, name)
    return svc


@pytest.fixture
def store():
    """Watermark store backed by an in-memory DuckDB."""
    wm_store = WatermarkStore(db_path=":memory:")
    yield wm_store
    wm_store.close()


@pytest.fixture
def counter(service, store, clock):
    return UnreadCounter(service, store, ME, clock=clock)
