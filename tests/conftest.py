"""
Shared fixtures: controllable clocks and sleepers, temporary databases.
"""

import os
import shutil
import tempfile

import pytest


class FakeClock:
    """Monotonic clock advanced by hand or by FakeSleeper."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSleeper:
    """Records requested sleeps and advances the clock instead of blocking."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.sleeps = []

    def __call__(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.clock.advance(seconds)


class ZeroJitter:
    """random.Random stand-in whose uniform() always returns the lower bound."""

    def uniform(self, a, b):
        return a


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeper(clock):
    return FakeSleeper(clock)


@pytest.fixture
def zero_jitter():
    return ZeroJitter()


@pytest.fixture
def db_path():
    temp_dir = tempfile.mkdtemp()
    yield os.path.join(temp_dir, "test.db")
    shutil.rmtree(temp_dir, ignore_errors=True)
