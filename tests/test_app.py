"""
Tests for the FastAPI application
==================================
"""

import httpx
import pytest
from fastapi.testclient import TestClient

import main
from resilient_ops.reliability import CircuitState


BACKEND_ITEMS = {
    "/data/plants/1": {"id": 1, "name": "Lavender"},
    "/data/plants/2": {"id": 2, "name": "Rosemary"},
}


@pytest.fixture
def backend(monkeypatch):
    """Serve backend reads from BACKEND_ITEMS; unknown paths are 404."""
    requests = []

    def handler(request: httpx.Request):
        requests.append(request.url.path)
        item = BACKEND_ITEMS.get(request.url.path)
        if item is None:
            return httpx.Response(404, json={"error": "not found"})
        return httpx.Response(200, json=item)

    monkeypatch.setattr(main.config, "BACKEND_URL", "https://backend.example/data")
    monkeypatch.setattr(main, "backend_client", lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler)))

    main.backend_breaker.reset()
    main.fallback_cache.clear()
    main.fallback_cache.disable()
    yield requests
    main.backend_breaker.reset()
    main.fallback_cache.clear()
    main.fallback_cache.disable()


def open_backend_circuit():
    for _ in range(main.config.CIRCUIT_FAILURE_THRESHOLD):
        main.backend_breaker.record_failure(ConnectionResetError("backend reset"))
    assert main.backend_breaker.state == CircuitState.OPEN


class TestApp:
    """Smoke tests for the wired application."""

    def test_root_and_health(self):
        with TestClient(main.app) as client:
            root = client.get("/")
            assert root.status_code == 200
            assert root.json()["endpoints"]["metrics"] == "/metrics"

            health = client.get("/health/backend")
            assert health.status_code == 200
            assert health.json()["is_healthy"] is True
            assert "X-Response-Time" in health.headers

    def test_metrics(self):
        with TestClient(main.app) as client:
            client.get("/")
            metrics = client.get("/metrics").json()

        assert main.config.BACKEND_NAME in metrics["circuits"]
        assert metrics["response_times"]["total_requests"] >= 1
        assert metrics["fallback_cache"]["active"] is False
        assert set(metrics["degradation"]) >= {"primary_success", "fallback_used"}

    def test_data_without_backend(self):
        with TestClient(main.app) as client:
            response = client.get("/data/users/1")
        assert response.status_code == 404

    def test_default_service_probes(self, service_env):
        config = main.build_service_configuration(service_env)
        probes = main.default_service_probes(config, service_env)
        assert [p.name for p in probes] == ["stripe"]
        assert probes[0].headers["Authorization"] == "Bearer sk_test_123"


class TestDataReads:
    """Tests for the /data read path."""

    def test_read_through_fills_cache(self, backend):
        with TestClient(main.app) as client:
            response = client.get("/data/plants/1")

        assert response.status_code == 200
        assert response.json() == {
            "status": "ok",
            "data": {"id": 1, "name": "Lavender"},
            "stale": False,
        }
        assert main.fallback_cache.get("plants/1") == {"id": 1, "name": "Lavender"}
        assert backend == ["/data/plants/1"]

    def test_cached_entry_served_when_circuit_open(self, backend):
        with TestClient(main.app) as client:
            assert client.get("/data/plants/1").status_code == 200
            open_backend_circuit()

            response = client.get("/data/plants/1")

        body = response.json()
        assert response.status_code == 200
        assert body["status"] == "degraded"
        assert body["stale"] is True
        assert body["data"] == {"id": 1, "name": "Lavender"}
        assert body["fallback_reason"] == "circuit_open"
        assert backend == ["/data/plants/1"]

    def test_open_circuit_without_cache_returns_503(self, backend):
        with TestClient(main.app) as client:
            open_backend_circuit()
            response = client.get("/data/plants/2")

        assert response.status_code == 503
        assert response.json()["retry_after"] == int(main.config.CIRCUIT_RESET_TIMEOUT)
        assert backend == []

    def test_client_error_status_passes_through(self, backend):
        with TestClient(main.app) as client:
            response = client.get("/data/connection-pool")

        assert response.status_code == 404
        assert backend == ["/data/connection-pool"]

    def test_missing_keys_do_not_open_circuit(self, backend):
        with TestClient(main.app) as client:
            for _ in range(main.config.CIRCUIT_FAILURE_THRESHOLD + 1):
                assert client.get("/data/network-settings").status_code == 404

            response = client.get("/data/plants/2")

        assert main.backend_breaker.state == CircuitState.CLOSED
        assert response.status_code == 200
        assert response.json()["data"]["name"] == "Rosemary"
