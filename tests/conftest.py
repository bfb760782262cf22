"""Shared fixtures for the CRM list cache tests.

All tests run without Redis or Graph: the feed, store and clock are
in-memory doubles from tests/fakes.py.
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from src.leadsync.cache.store import MemoryStore
from tests.fakes import FrozenClock, ScriptedFeed


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def feed() -> ScriptedFeed:
    return ScriptedFeed()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc))
