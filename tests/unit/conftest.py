"""Shared fixtures for the unit tests."""

from __future__ import annotations

import pytest

from tests.unit.helpers import FakeClock, FakeWallClock, SleepRecorder


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def wall_clock() -> FakeWallClock:
    return FakeWallClock()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()
