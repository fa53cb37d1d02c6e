"""
Shared test fixtures.
"""

from datetime import datetime, timezone

import pytest

from clinical_ai_guard.storage.store import MemoryStore

# Tuesday 2026-03-10 12:00:00 UTC
START = datetime(2026, 3, 10, 12, 0, 0, tzinfo=timezone.utc).timestamp()


class FakeClock:
    """Manually advanced clock returning Unix timestamps."""

    def __init__(self, start: float = START):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return MemoryStore(clock=clock)


@pytest.fixture
def pattern_store(clock):
    return MemoryStore(clock=clock, pattern_matching=True)
