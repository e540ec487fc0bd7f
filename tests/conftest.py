"""
Global pytest configuration and fixtures for Randevu Platform Services tests.
"""

import os
from datetime import UTC, datetime

# Keep tests away from any developer .env database
os.environ.pop("DATABASE_URL", None)
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("OBSERVABILITY__LOG_FORMAT", "console")

import pytest  # noqa: E402

from randevu.platform.clock import FrozenClock  # noqa: E402

START = datetime(2026, 1, 1, 9, 0, tzinfo=UTC)


@pytest.fixture
def clock() -> FrozenClock:
    """Clock pinned to 2026-01-01 09:00 UTC."""
    return FrozenClock(START)
