"""
Pytest configuration and fixtures
==================================
"""

import os
import pytest
from typing import List

# Set test environment variables
os.environ["PROBE_STORE_BACKEND"] = "memory"
os.environ["REDIS_URL"] = "redis://localhost:6379"
os.environ["HEALTH_CHECK_INTERVAL"] = "3600"
os.environ.pop("BACKEND_HEALTH_URL", None)
os.environ.pop("ALERT_WEBHOOK_URL", None)
os.environ.pop("SLACK_WEBHOOK_URL", None)


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class RecordingSleep:
    """Awaitable sleep that records requested delays and returns immediately."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


class FixedRandom:
    """RNG stand-in whose uniform() always returns the low or high bound."""

    def __init__(self, high: bool = False):
        self.high = high

    def uniform(self, a: float, b: float) -> float:
        return b if self.high else a


@pytest.fixture
def clock():
    """Fake clock starting at a fixed instant."""
    return FakeClock()


@pytest.fixture
def recording_sleep():
    """Sleep replacement for retry tests."""
    return RecordingSleep()


@pytest.fixture
async def redis_client():
    """Redis client fixture for integration tests."""
    try:
        import redis.asyncio as redis
        client = redis.from_url(os.getenv("REDIS_URL", "redis://localhost:6379"))
        await client.ping()
    except Exception:
        pytest.skip("Redis not available")
    yield client
    await client.flushdb()
    await client.aclose()


@pytest.fixture
def service_env():
    """Environment with a subset of service credentials present."""
    return {
        "SUPABASE_URL": "https://example.supabase.co",
        "SUPABASE_SERVICE_ROLE_KEY": "service-role",
        "STRIPE_SECRET_KEY": "sk_test_123",
        "GBIF_EMAIL": "ops@example.com",
    }
