"""
Resilient Ops - Main Entry Point
================================
Wires the resilience layer into a FastAPI service: backend health
monitoring with fallback cache, third-party service probes with alerting,
and status endpoints.
"""

import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Optional, Dict, List, Mapping

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
import httpx
import uvicorn

from resilient_ops.reliability import (
    CircuitBreakerRegistry,
    CircuitOpenError,
    PermanentClientError,
    RetryPolicies,
    ResilientOperation,
    DegradationManager,
    DegradedResponse,
    BackendHealthMonitor,
    ServiceHealthMonitor,
    HttpServiceProbe,
    ServiceProbe,
    breaker_event_hook,
    create_health_routes,
    get_status_code,
)
from resilient_ops.memory import FallbackCache
from resilient_ops.observability import (
    LoggingObserver,
    MetricsObserver,
    CompositeObserver,
    AlertEvaluator,
    AlertRule,
    AlertType,
    ResponseTimeTracker,
    ServiceConfig,
    build_service_configuration,
    create_alert_dispatcher,
    create_probe_store,
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
)
logger = logging.getLogger(__name__)


# =============================================================================
# Configuration
# =============================================================================

class Config:
    """Application configuration."""

    # Server
    HOST: str = os.getenv("HOST", "0.0.0.0")
    PORT: int = int(os.getenv("PORT", "8080"))

    # Primary backend
    BACKEND_NAME: str = os.getenv("BACKEND_NAME", "primary-db")
    BACKEND_URL: Optional[str] = os.getenv("BACKEND_URL")
    BACKEND_HEALTH_URL: Optional[str] = os.getenv("BACKEND_HEALTH_URL")
    HEALTH_CHECK_INTERVAL: float = float(os.getenv("HEALTH_CHECK_INTERVAL", "30"))
    CACHE_MAX_ENTRIES: int = int(os.getenv("CACHE_MAX_ENTRIES", "10000"))
    CACHE_RETENTION: float = float(os.getenv("CACHE_RETENTION", "86400"))

    # Circuit breaker
    CIRCUIT_FAILURE_THRESHOLD: int = int(os.getenv("CIRCUIT_FAILURE_THRESHOLD", "5"))
    CIRCUIT_RESET_TIMEOUT: float = float(os.getenv("CIRCUIT_RESET_TIMEOUT", "60"))
    CIRCUIT_HALF_OPEN_ATTEMPTS: int = int(os.getenv("CIRCUIT_HALF_OPEN_ATTEMPTS", "3"))

    # Probe history
    PROBE_STORE_BACKEND: str = os.getenv("PROBE_STORE_BACKEND", "memory")
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379")

    # Alerting
    ALERT_WEBHOOK_URL: Optional[str] = os.getenv("ALERT_WEBHOOK_URL")
    SLACK_WEBHOOK: Optional[str] = os.getenv("SLACK_WEBHOOK_URL")
    SLOW_RESPONSE_MS: float = float(os.getenv("SLOW_RESPONSE_MS", "5000"))
    QUOTA_WARNING_PERCENT: float = float(os.getenv("QUOTA_WARNING_PERCENT", "80"))


config = Config()


def default_service_probes(
    service_config: Mapping[str, ServiceConfig],
    env: Optional[Mapping[str, str]] = None,
) -> List[ServiceProbe]:
    """Read-only HTTP probes for the enabled services that expose one."""
    env = os.environ if env is None else env
    candidates: Dict[str, HttpServiceProbe] = {
        "anthropic": HttpServiceProbe(
            "anthropic",
            "https://api.anthropic.com/v1/models",
            headers={
                "x-api-key": env.get("ANTHROPIC_API_KEY", ""),
                "anthropic-version": "2023-06-01",
            },
            critical=True,
        ),
        "perenual": HttpServiceProbe(
            "perenual",
            f"https://perenual.com/api/species-list?key={env.get('PERENUAL_API_KEY', '')}&page=1",
        ),
        "gbif": HttpServiceProbe(
            "gbif",
            "https://api.gbif.org/v1/species/search?q=test&limit=1",
        ),
        "mapbox": HttpServiceProbe(
            "mapbox",
            "https://api.mapbox.com/geocoding/v5/mapbox.places/London.json"
            f"?access_token={env.get('MAPBOX_API_KEY', '')}&limit=1",
        ),
        "visual_crossing": HttpServiceProbe(
            "visual_crossing",
            "https://weather.visualcrossing.com/VisualCrossingWebServices/rest/services/timeline/London"
            f"?key={env.get('VISUAL_CROSSING_API_KEY', '')}&include=current",
        ),
        "stripe": HttpServiceProbe(
            "stripe",
            "https://api.stripe.com/v1/balance",
            headers={"Authorization": f"Bearer {env.get('STRIPE_SECRET_KEY', '')}"},
            critical=True,
        ),
    }
    return [
        probe for name, probe in candidates.items()
        if name in service_config and service_config[name].enabled
    ]


# =============================================================================
# Initialize Components
# =============================================================================

# Observability
metrics_observer = MetricsObserver()
observer = CompositeObserver([LoggingObserver(), metrics_observer])
response_times = ResponseTimeTracker(max_metrics=100)

# Reliability
circuit_registry = CircuitBreakerRegistry()
backend_breaker = circuit_registry.get_or_create(
    config.BACKEND_NAME,
    failure_threshold=config.CIRCUIT_FAILURE_THRESHOLD,
    reset_timeout=config.CIRCUIT_RESET_TIMEOUT,
    half_open_max_attempts=config.CIRCUIT_HALF_OPEN_ATTEMPTS,
    excluded_exceptions=(PermanentClientError,),
    on_state_change=breaker_event_hook(observer, config.BACKEND_NAME),
)

# Memory
fallback_cache = FallbackCache(max_entries=config.CACHE_MAX_ENTRIES)
degradation_manager = DegradationManager(fallback_cache, observer=observer)


def backend_client() -> httpx.AsyncClient:
    """HTTP client for backend reads and health probes."""
    return httpx.AsyncClient(timeout=10.0)


async def probe_backend() -> bool:
    """Cheap request against the backend; any non-2xx counts as down."""
    if not config.BACKEND_HEALTH_URL:
        return True
    async with backend_client() as client:
        response = await client.get(config.BACKEND_HEALTH_URL)
        response.raise_for_status()
    return True


backend_monitor = BackendHealthMonitor(
    config.BACKEND_NAME,
    probe=probe_backend,
    breaker=backend_breaker,
    cache=fallback_cache,
    interval=config.HEALTH_CHECK_INTERVAL,
    cache_retention=config.CACHE_RETENTION,
    observer=observer,
)

# Third-party services
service_config = build_service_configuration()
alert_dispatcher = create_alert_dispatcher(
    webhook_url=config.ALERT_WEBHOOK_URL,
    slack_webhook=config.SLACK_WEBHOOK,
)
alert_evaluator = AlertEvaluator(sinks=[alert_dispatcher], observer=observer)
service_monitor = ServiceHealthMonitor(
    store=create_probe_store(config.PROBE_STORE_BACKEND, config.REDIS_URL),
    evaluator=alert_evaluator,
    interval=config.HEALTH_CHECK_INTERVAL,
    observer=observer,
)

for probe in default_service_probes(service_config):
    service_monitor.add_probe(probe)
    alert_evaluator.add_rule(AlertRule(probe.name, AlertType.SERVICE_DOWN))
    alert_evaluator.add_rule(AlertRule(probe.name, AlertType.SLOW_RESPONSE, threshold=config.SLOW_RESPONSE_MS))
    alert_evaluator.add_rule(AlertRule(probe.name, AlertType.QUOTA_WARNING, threshold=config.QUOTA_WARNING_PERCENT))


# =============================================================================
# FastAPI Application
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    backend_monitor.start()
    service_monitor.start()
    logger.info(f"Monitoring backend '{config.BACKEND_NAME}' and {len(service_monitor.services)} services")
    yield
    await service_monitor.stop()
    await backend_monitor.stop()


app = FastAPI(
    title="Resilient Ops",
    description="Retry, circuit breaking, fallback cache and health monitoring for remote dependencies",
    version="1.0.0",
    lifespan=lifespan,
)

# Include health check routes
app.include_router(create_health_routes(
    backend_monitor=backend_monitor,
    service_monitor=service_monitor,
    evaluator=alert_evaluator,
    service_config=service_config,
))


@app.middleware("http")
async def response_time_middleware(request: Request, call_next):
    """Record latency of every request."""
    start_time = time.time()
    response = await call_next(request)
    latency_ms = (time.time() - start_time) * 1000
    response_times.record(request.method, request.url.path, response.status_code, latency_ms)
    response.headers["X-Response-Time"] = f"{latency_ms:.1f}ms"
    return response


@app.get("/data/{key:path}")
async def read_data(key: str):
    """Read through the primary backend, serving cached data when it is down."""
    if not config.BACKEND_URL:
        return JSONResponse(status_code=404, content={"error": "No backend configured"})

    async def fetch():
        async with backend_client() as client:
            response = await client.get(f"{config.BACKEND_URL.rstrip('/')}/{key}")
        if 400 <= response.status_code < 500 and response.status_code not in (408, 429):
            raise PermanentClientError(
                f"Backend returned {response.status_code} for '{key}'",
                status_code=response.status_code,
            )
        response.raise_for_status()
        return response.json()

    operation = ResilientOperation(
        f"read:{key}",
        fetch,
        breaker=backend_breaker,
        policy=RetryPolicies.QUICK,
        observer=observer,
    )

    try:
        result = await degradation_manager.execute(key, operation)
    except CircuitOpenError as e:
        return JSONResponse(
            status_code=503,
            content={"error": str(e), "retry_after": int(config.CIRCUIT_RESET_TIMEOUT)},
        )
    except Exception as e:
        logger.error(f"Read of '{key}' failed: {e}")
        status = get_status_code(e)
        return JSONResponse(
            status_code=status if status and 400 <= status < 500 else 502,
            content={"error": "Backend unavailable"},
        )

    return DegradedResponse.for_api(result)


@app.get("/metrics")
async def metrics():
    """Get resilience metrics."""
    return {
        "events": metrics_observer.snapshot(),
        "response_times": response_times.get_stats(),
        "circuits": {name: s.to_dict() for name, s in circuit_registry.get_all_status().items()},
        "fallback_cache": fallback_cache.status(),
        "degradation": degradation_manager.get_metrics(),
        "alerts_suppressed": alert_dispatcher.suppressed,
    }


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Resilient Ops",
        "version": "1.0.0",
        "status": "running",
        "endpoints": {
            "backend_health": "/health/backend",
            "services_health": "/health/services",
            "services": "/services",
            "alerts": "/alerts",
            "metrics": "/metrics",
        },
    }


# =============================================================================
# Run
# =============================================================================

def main():
    """Run the application."""
    uvicorn.run(
        app,
        host=config.HOST,
        port=config.PORT,
        log_level="info",
    )


if __name__ == "__main__":
    main()
