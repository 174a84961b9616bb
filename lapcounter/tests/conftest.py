"""
Shared fixtures: a controllable clock, deterministic ids, fresh sessions.
"""

import itertools
from datetime import datetime, timedelta, timezone

import pytest

from lapcounter.race.state_machine import create_session

T0 = datetime(2024, 5, 1, 9, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


def sequential_ids(prefix: str = "id"):
    counter = itertools.count(1)
    return lambda: f"{prefix}-{next(counter)}"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def new_session():
    """Factory for a SETUP session with predictable ids (session id-1, participants id-2...)."""
    def factory(names=("Ann", "Bo"), total_laps=3, name="5K"):
        return create_session(
            name, total_laps, list(names), T0, id_factory=sequential_ids(),
        ).unwrap()
    return factory
