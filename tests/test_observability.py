"""
Tests for observability module
===============================
"""

import logging

import pytest

from resilient_ops.observability import (
    EventKind,
    ResilienceEvent,
    EventObserver,
    LoggingObserver,
    MetricsObserver,
    CompositeObserver,
    emit_safely,
    HealthProbeResult,
    ProbeStatus,
    InMemoryProbeStore,
    RedisProbeStore,
    create_probe_store,
    build_service_configuration,
    enabled_services,
    SERVICE_CATALOG,
    ResponseTimeTracker,
    percentile,
)


class ExplodingObserver(EventObserver):
    def emit(self, event):
        raise RuntimeError("observer down")


class FakeRedis:
    """Minimal list-command double for RedisProbeStore."""

    def __init__(self):
        self.lists = {}
        self.closed = False

    async def lpush(self, key, value):
        self.lists.setdefault(key, []).insert(0, value)

    async def ltrim(self, key, start, end):
        self.lists[key] = self.lists.get(key, [])[start:end + 1]

    async def lindex(self, key, index):
        items = self.lists.get(key, [])
        return items[index] if len(items) > index else None

    async def lrange(self, key, start, end):
        return self.lists.get(key, [])[start:end + 1]

    async def aclose(self):
        self.closed = True


class TestEvents:
    """Tests for event observers."""

    def test_metrics_observer_counts(self):
        metrics = MetricsObserver()
        metrics.emit(ResilienceEvent(EventKind.RETRY, "get_user", attempt=1))
        metrics.emit(ResilienceEvent(EventKind.RETRY, "get_user", attempt=2))
        metrics.emit(ResilienceEvent(EventKind.RETRY, "search", attempt=1))
        metrics.emit(ResilienceEvent(EventKind.OPERATION_SUCCEEDED, "get_user", latency_ms=30.0))
        metrics.emit(ResilienceEvent(EventKind.OPERATION_SUCCEEDED, "get_user", latency_ms=10.0))

        assert metrics.count(EventKind.RETRY) == 3
        assert metrics.count(EventKind.RETRY, "get_user") == 2
        assert metrics.average_latency_ms("get_user") == 20.0
        assert metrics.average_latency_ms("search") is None
        assert metrics.snapshot()["get_user"]["retry"] == 2

    def test_composite_isolates_failures(self):
        metrics = MetricsObserver()
        composite = CompositeObserver([ExplodingObserver(), metrics])
        composite.emit(ResilienceEvent(EventKind.FALLBACK_SERVED, "user:1"))
        assert metrics.count(EventKind.FALLBACK_SERVED) == 1

    def test_emit_safely(self):
        emit_safely(None, ResilienceEvent(EventKind.RETRY, "x"))
        emit_safely(ExplodingObserver(), ResilienceEvent(EventKind.RETRY, "x"))

    def test_logging_observer(self, caplog):
        observer = LoggingObserver(logging.getLogger("resilience-test"))
        with caplog.at_level(logging.INFO, logger="resilience-test"):
            observer.emit(ResilienceEvent(EventKind.OPERATION_FAILED, "get_user", error="boom"))
        assert "get_user" in caplog.text

    def test_event_to_dict(self):
        data = ResilienceEvent(EventKind.RETRY, "get_user", backend="db", attempt=2, delay=0.5).to_dict()
        assert data["kind"] == "retry"
        assert data["backend"] == "db"
        assert data["attempt"] == 2


@pytest.mark.asyncio
class TestProbeStores:
    """Tests for probe history stores."""

    async def test_in_memory_latest_and_history(self):
        store = InMemoryProbeStore(max_per_service=2)
        for status in (ProbeStatus.HEALTHY, ProbeStatus.DEGRADED, ProbeStatus.DOWN):
            await store.save(HealthProbeResult("stripe", status))

        assert (await store.latest("stripe")).status == ProbeStatus.DOWN
        history = await store.history("stripe")
        assert [r.status for r in history] == [ProbeStatus.DOWN, ProbeStatus.DEGRADED]
        assert await store.latest("unknown") is None

    async def test_redis_store_with_client(self):
        client = FakeRedis()
        store = RedisProbeStore(client=client, max_per_service=2)
        await store.save(HealthProbeResult("gbif", ProbeStatus.HEALTHY, response_time=12.5))
        await store.save(HealthProbeResult("gbif", ProbeStatus.DOWN, error_message="Status 503"))
        await store.save(HealthProbeResult("gbif", ProbeStatus.DEGRADED))

        latest = await store.latest("gbif")
        assert latest.status == ProbeStatus.DEGRADED
        assert len(client.lists["health_probe:gbif"]) == 2
        history = await store.history("gbif")
        assert history[1].error_message == "Status 503"

        await store.close()
        assert client.closed

    async def test_redis_integration(self, redis_client):
        store = RedisProbeStore(client=redis_client, prefix="test_probe")
        await store.save(HealthProbeResult("mapbox", ProbeStatus.HEALTHY, quota_used=10, quota_limit=100))
        latest = await store.latest("mapbox")
        assert latest.quota_percent == 10.0

    async def test_factory(self):
        assert isinstance(create_probe_store("memory"), InMemoryProbeStore)
        assert isinstance(create_probe_store("redis", "redis://cache:6379"), RedisProbeStore)


class TestProbeResult:
    """Tests for HealthProbeResult."""

    def test_round_trip_dict(self):
        result = HealthProbeResult("stripe", ProbeStatus.DEGRADED, response_time=120.0, metadata={"code": 429})
        restored = HealthProbeResult.from_dict(result.to_dict())
        assert restored == result

    def test_unknown(self):
        result = HealthProbeResult.unknown("gemini")
        assert result.status == ProbeStatus.UNKNOWN
        assert result.checked_at is None


class TestServiceConfiguration:
    """Tests for the service catalogue."""

    def test_enabled_by_credentials(self, service_env):
        config = build_service_configuration(service_env)

        assert set(config) == {spec.name for spec in SERVICE_CATALOG}
        assert config["supabase"].enabled
        assert config["stripe"].enabled
        assert config["stripe"].critical
        assert not config["anthropic"].enabled
        # GBIF needs both email and password
        assert not config["gbif"].enabled

    def test_enabled_services(self, service_env):
        enabled = enabled_services(build_service_configuration(service_env))
        assert sorted(enabled) == ["stripe", "supabase"]

    def test_empty_value_is_disabled(self):
        config = build_service_configuration({"STRIPE_SECRET_KEY": ""})
        assert not config["stripe"].enabled


class TestResponseTimes:
    """Tests for ResponseTimeTracker."""

    def test_percentile(self):
        values = sorted(float(v) for v in range(1, 101))
        assert percentile(values, 50) == 50.0
        assert percentile(values, 95) == 95.0
        assert percentile(values, 99) == 99.0
        assert percentile([], 95) == 0.0

    def test_stats(self):
        tracker = ResponseTimeTracker(max_metrics=3)
        tracker.record("GET", "/a", 200, 10.0)
        tracker.record("GET", "/b", 500, 30.0)
        tracker.record("GET", "/a", 200, 20.0)
        tracker.record("GET", "/c", 200, 40.0)

        stats = tracker.get_stats()
        assert stats["total_requests"] == 4
        assert stats["recent_requests"] == 3
        assert stats["avg_response_time"] == 25.0
        assert stats["slowest_endpoints"][0] == {"path": "/c", "avg_time": 40.0}
        assert stats["error_rate"] == pytest.approx(100 / 3)
