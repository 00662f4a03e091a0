import datetime as dt
import random

import pytest

from trust import monitoring
from trust.conf import EscalationPolicy
from trust.fraud import FraudLedger
from trust.memory import InMemoryEnrollmentStore, InMemoryLocationHistory, InMemoryLogSink


class ManualClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, start: dt.datetime | None = None) -> None:
        self.current = start or dt.datetime(2026, 3, 2, 8, 0, tzinfo=dt.timezone.utc)

    def now(self) -> dt.datetime:
        return self.current

    def advance(self, **delta) -> dt.datetime:
        self.current += dt.timedelta(**delta)
        return self.current


@pytest.fixture(scope="session", autouse=True)
def close_database_connections():
    """Ensure all database connections are properly closed after tests.

    This fixture runs at the end of the test session to prevent the
    'database is being accessed by other users' error during teardown.
    """
    yield
    from django.db import connections

    for conn in connections.all():
        conn.close()


@pytest.fixture(autouse=True)
def _reset_monitoring():
    monitoring.reset_for_tests()
    yield


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def sink() -> InMemoryLogSink:
    return InMemoryLogSink()


@pytest.fixture
def history() -> InMemoryLocationHistory:
    return InMemoryLocationHistory()


@pytest.fixture
def enrollments() -> InMemoryEnrollmentStore:
    return InMemoryEnrollmentStore()


@pytest.fixture
def ledger(sink, clock) -> FraudLedger:
    return FraudLedger(sink, clock=clock, policy=EscalationPolicy())


@pytest.fixture
def rng() -> random.Random:
    return random.Random(1234)


def face_image(tag: str, size: int = 1200) -> bytes:
    """Deterministic payload large enough to pass the minimum image size."""

    seed = tag.encode()
    return (seed * (size // len(seed) + 1))[:size]


@pytest.fixture
def image_factory():
    return face_image
