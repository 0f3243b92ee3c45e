"""Global test fixtures and utilities for discovery engine tests"""
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock
from uuid import uuid4

from discovery_engine.api.middleware import limiter
from discovery_engine.models.event import HealthEvent
from discovery_engine.services.discovery_engine import DiscoveryEngine
from discovery_engine.services.discovery_repository import InMemoryDiscoveryRepository


# Monday 2024-03-04 08:00 UTC
BASE_TIME = datetime(2024, 3, 4, 8, 0, tzinfo=timezone.utc)


# ============================================================================
# User Fixtures
# ============================================================================

@pytest.fixture
def test_user_id():
    """Standard test user ID"""
    return "user-123"


# ============================================================================
# Event Fixtures
# ============================================================================

@pytest.fixture
def base_time():
    return BASE_TIME


@pytest.fixture
def make_event(test_user_id):
    """
    Factory for HealthEvent records

    Usage:
        make_event(days=1, hours=2, kind="flare", severity="moderate")
    """
    def _make(days: float = 0, hours: float = 0, kind: str = "wellness", **fields):
        fields.setdefault("id", str(uuid4()))
        fields.setdefault("user_id", test_user_id)
        return HealthEvent(
            occurred_at=BASE_TIME + timedelta(days=days, hours=hours),
            kind=kind,
            **fields
        )

    return _make


@pytest.fixture
def eggs_history(make_event):
    """
    20 events, 5 flares (base rate 0.25).

    Eggs eaten 4 times; 3 of those followed by a moderate flare 2 hours later.
    """
    events = []
    for day in (0, 3, 6, 9):
        events.append(make_event(days=day, kind="meal", note="Had eggs for breakfast"))
    for day in (0, 3, 6):
        events.append(make_event(days=day, hours=2, kind="flare", severity="moderate"))
    for day in (15, 18):
        events.append(make_event(days=day, hours=2, kind="flare", severity="mild"))
    for day in range(21, 32):
        events.append(make_event(days=day, kind="wellness"))
    return events


# ============================================================================
# Engine Fixtures
# ============================================================================

@pytest.fixture
def repository():
    """Empty in-memory discovery repository"""
    return InMemoryDiscoveryRepository()


@pytest.fixture
def make_engine(repository):
    """Build an engine whose event source returns the given events"""
    def _make(events, **kwargs):
        source = AsyncMock(return_value=list(events))
        return DiscoveryEngine(event_source=source, repository=repository, **kwargs)

    return _make


# ============================================================================
# API Fixtures
# ============================================================================

@pytest.fixture(autouse=True)
def disable_rate_limiting():
    """Rate limits are exercised in deployment, not in unit tests"""
    enabled = limiter.enabled
    limiter.enabled = False
    yield
    limiter.enabled = enabled
