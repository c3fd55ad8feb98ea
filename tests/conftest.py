"""Shared test fixtures."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from tests.fakes import FakeClock, FakeWallClock


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def wall_clock() -> FakeWallClock:
    return FakeWallClock(datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc))
