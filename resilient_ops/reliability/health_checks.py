"""
Health Checks
=============
Background health monitoring for remote dependencies.

Monitors:
- BackendHealthMonitor: Probes the primary backend and governs the
  fallback cache posture (enable on failure, disable + breaker reset on
  recovery). Call admission stays with the circuit breaker.
- ServiceHealthMonitor: Probes several third-party services in sequence,
  keeps the latest result per service, persists results best effort and
  feeds every result to the alert evaluator.

Probes:
- HttpServiceProbe: One cheap HTTP request via httpx
- CustomServiceProbe: Any callable returning bool, dict or a result
"""

import time
import asyncio
import logging
from typing import Optional, Dict, Any, List, Callable, Union
from dataclasses import dataclass
from abc import ABC, abstractmethod

import httpx

from .circuit_breaker import CircuitBreaker
from .retry_handler import run_with_timeout
from ..memory.fallback_cache import FallbackCache
from ..observability.alerting import AlertEvaluator
from ..observability.events import EventObserver, ResilienceEvent, EventKind, emit_safely
from ..observability.probe_store import HealthProbeResult, ProbeStatus, ProbeStore
from ..observability.service_config import ServiceConfig

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 30.0


class ServiceProbe(ABC):
    """Abstract probe for one external service."""

    critical: bool = False

    @property
    @abstractmethod
    def name(self) -> str:
        """Service name."""
        pass

    @abstractmethod
    async def check(self) -> HealthProbeResult:
        """Probe the service. Should not raise, but callers guard anyway."""
        pass


def _parse_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


class HttpServiceProbe(ServiceProbe):
    """
    Probe a service with a single HTTP request.

    2xx is healthy; statuses in ``degraded_statuses`` (rate limited, out of
    credits) are degraded; anything else, or no connection, is down.

    Example:
        probe = HttpServiceProbe(
            "stripe",
            "https://api.stripe.com/v1/balance",
            headers={"Authorization": f"Bearer {key}"},
            critical=True,
        )
    """

    def __init__(
        self,
        name: str,
        url: str,
        method: str = "GET",
        headers: Optional[Dict[str, str]] = None,
        json: Optional[Any] = None,
        critical: bool = False,
        timeout: float = 10.0,
        degraded_statuses: tuple = (429, 402),
        quota_remaining_header: Optional[str] = None,
        quota_limit_header: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize HTTP probe.

        Args:
            name: Service name
            url: Endpoint to hit
            method: HTTP method
            headers: Request headers (credentials)
            json: Optional JSON body
            critical: Whether the application depends on this service
            timeout: Request timeout in seconds
            degraded_statuses: Statuses meaning "reachable but impaired"
            quota_remaining_header: Header carrying remaining quota
            quota_limit_header: Header carrying the quota limit
            client: Shared httpx client
        """
        self._name = name
        self.url = url
        self.method = method
        self.headers = headers or {}
        self.json = json
        self.critical = critical
        self.timeout = timeout
        self.degraded_statuses = degraded_statuses
        self.quota_remaining_header = quota_remaining_header
        self.quota_limit_header = quota_limit_header
        self._client = client

    @property
    def name(self) -> str:
        return self._name

    async def _request(self) -> httpx.Response:
        kwargs = {"headers": self.headers, "timeout": self.timeout}
        if self.json is not None:
            kwargs["json"] = self.json
        if self._client is not None:
            return await self._client.request(self.method, self.url, **kwargs)
        async with httpx.AsyncClient() as client:
            return await client.request(self.method, self.url, **kwargs)

    def _quota(self, response: httpx.Response):
        if not self.quota_limit_header:
            return None, None
        limit = _parse_int(response.headers.get(self.quota_limit_header))
        remaining = _parse_int(response.headers.get(self.quota_remaining_header)) if self.quota_remaining_header else None
        if limit is None or remaining is None:
            return None, limit
        return max(limit - remaining, 0), limit

    async def check(self) -> HealthProbeResult:
        start = time.monotonic()
        try:
            response = await self._request()
        except httpx.HTTPError as e:
            return HealthProbeResult(
                service=self._name,
                status=ProbeStatus.DOWN,
                response_time=(time.monotonic() - start) * 1000,
                error_message=f"Connection failed: {e}",
            )

        latency = (time.monotonic() - start) * 1000
        quota_used, quota_limit = self._quota(response)

        if 200 <= response.status_code < 300:
            status = ProbeStatus.HEALTHY
            message = None
        elif response.status_code in self.degraded_statuses:
            status = ProbeStatus.DEGRADED
            message = f"Status {response.status_code}"
        else:
            status = ProbeStatus.DOWN
            message = f"Status {response.status_code}: {response.text[:200]}"

        return HealthProbeResult(
            service=self._name,
            status=status,
            response_time=latency,
            error_message=message,
            quota_used=quota_used,
            quota_limit=quota_limit,
        )


class CustomServiceProbe(ServiceProbe):
    """
    Probe from a function.

    The function may return a bool, a dict with ``status`` (and optional
    ``message``, ``quota_used``, ``quota_limit``) or a HealthProbeResult.

    Example:
        probe = CustomServiceProbe("queue", check_func=lambda: queue.ping())
    """

    def __init__(
        self,
        name: str,
        check_func: Callable[[], Any],
        critical: bool = False,
        timeout: float = 5.0,
    ):
        self._name = name
        self._check_func = check_func
        self.critical = critical
        self.timeout = timeout

    @property
    def name(self) -> str:
        return self._name

    def _to_result(self, value: Any, latency: float) -> HealthProbeResult:
        if isinstance(value, HealthProbeResult):
            if value.response_time is None:
                value.response_time = latency
            return value

        if isinstance(value, dict):
            raw = value.get("status", "healthy")
            try:
                status = raw if isinstance(raw, ProbeStatus) else ProbeStatus(str(raw))
            except ValueError:
                status = ProbeStatus.DOWN
            return HealthProbeResult(
                service=self._name,
                status=status,
                response_time=latency,
                error_message=value.get("message"),
                quota_used=value.get("quota_used"),
                quota_limit=value.get("quota_limit"),
                metadata={k: v for k, v in value.items()
                          if k not in ("status", "message", "quota_used", "quota_limit")},
            )

        healthy = value is None or bool(value)
        return HealthProbeResult(
            service=self._name,
            status=ProbeStatus.HEALTHY if healthy else ProbeStatus.DOWN,
            response_time=latency,
            error_message=None if healthy else "Probe returned false",
        )

    async def check(self) -> HealthProbeResult:
        start = time.monotonic()
        try:
            value = await run_with_timeout(self._check_func, self.timeout)
        except Exception as e:
            return HealthProbeResult(
                service=self._name,
                status=ProbeStatus.DOWN,
                response_time=(time.monotonic() - start) * 1000,
                error_message=str(e) or type(e).__name__,
            )
        return self._to_result(value, (time.monotonic() - start) * 1000)


class _PeriodicTask:
    """Runs ``tick`` immediately and then every ``interval`` seconds."""

    def __init__(self, name: str, tick: Callable[[], Any], interval: float):
        self.name = name
        self.interval = interval
        self._tick = tick
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _loop(self):
        while True:
            try:
                await self._tick()
            except Exception as e:
                logger.error(f"{self.name} tick failed: {e}")
            await asyncio.sleep(self.interval)

    def start(self):
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._loop(), name=self.name)
        logger.info(f"{self.name} started (interval {self.interval}s)")

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info(f"{self.name} stopped")


@dataclass
class BackendHealthStatus:
    """Snapshot for the health status endpoint."""
    is_healthy: bool
    last_health_check: Optional[float]
    circuit_breaker: Optional[Dict[str, Any]]
    fallback_active: bool
    last_latency_ms: Optional[float] = None
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_healthy": self.is_healthy,
            "last_health_check": self.last_health_check,
            "circuit_breaker": self.circuit_breaker,
            "fallback_active": self.fallback_active,
            "last_latency_ms": self.last_latency_ms,
            "last_error": self.last_error,
        }


class BackendHealthMonitor:
    """
    Periodic probe of the primary backend.

    Governs cache posture only: a failed probe enables the fallback cache,
    a successful probe after an outage disables it and resets the breaker.
    The breaker keeps counting call failures on its own.

    Example:
        monitor = BackendHealthMonitor(
            "primary-db",
            probe=lambda: client.table("profiles").select("count").limit(1).execute(),
            breaker=registry.get_or_create("primary-db"),
            cache=fallback_cache,
        )
        monitor.start()
        ...
        await monitor.stop()
    """

    def __init__(
        self,
        name: str,
        probe: Callable[[], Any],
        breaker: Optional[CircuitBreaker],
        cache: FallbackCache,
        interval: float = DEFAULT_INTERVAL,
        probe_timeout: float = 10.0,
        cache_retention: Optional[float] = None,
        observer: Optional[EventObserver] = None,
    ):
        """
        Initialize backend monitor.

        Args:
            name: Backend name
            probe: Cheap zero-argument request; raising or returning False is a failure
            breaker: Breaker reset on confirmed recovery
            cache: Fallback cache whose active flag this monitor owns
            interval: Seconds between probes
            probe_timeout: Timeout for a single probe
            cache_retention: Sweep cache entries older than this each tick (None disables)
            observer: Optional EventObserver for health transitions
        """
        self.name = name
        self.breaker = breaker
        self.cache = cache
        self.probe_timeout = probe_timeout
        self.cache_retention = cache_retention
        self._probe = probe
        self._observer = observer

        self._is_healthy = True
        self._last_health_check: Optional[float] = None
        self._last_latency_ms: Optional[float] = None
        self._last_error: Optional[str] = None
        self._periodic = _PeriodicTask(f"health-monitor:{name}", self._tick, interval)

    @property
    def is_healthy(self) -> bool:
        return self._is_healthy

    async def _tick(self):
        await self.check_health()
        if self.cache_retention is not None:
            self.cache.sweep_expired(self.cache_retention)

    async def check_health(self) -> bool:
        """Run one probe and apply the resulting transition. Never raises."""
        start = time.monotonic()
        try:
            outcome = await run_with_timeout(self._probe, self.probe_timeout)
        except Exception as e:
            self._handle_failure(e)
            return False

        if outcome is False:
            self._handle_failure(RuntimeError("probe returned false"))
            return False

        self._handle_success((time.monotonic() - start) * 1000)
        return True

    def _emit(self, outcome: str, latency_ms: Optional[float] = None, error: Optional[str] = None):
        emit_safely(self._observer, ResilienceEvent(
            kind=EventKind.BACKEND_HEALTH_CHANGED,
            operation=self.name,
            backend=self.name,
            outcome=outcome,
            latency_ms=latency_ms,
            error=error,
        ))

    def _handle_success(self, latency_ms: float):
        if not self._is_healthy:
            logger.info(f"Backend '{self.name}' connection restored (latency: {latency_ms:.0f}ms)")
            self.cache.disable()
            if self.breaker is not None:
                self.breaker.reset()
            self._emit("healthy", latency_ms=latency_ms)
        self._is_healthy = True
        self._last_health_check = time.time()
        self._last_latency_ms = latency_ms
        self._last_error = None
        self.cache.update_sync_time()

    def _handle_failure(self, error: BaseException):
        message = str(error) or type(error).__name__
        if self._is_healthy:
            logger.error(f"Backend '{self.name}' connection lost: {message}")
            logger.warning("Enabling fallback cache")
            self.cache.enable()
            self._emit("unhealthy", error=message)
        self._is_healthy = False
        self._last_health_check = time.time()
        self._last_error = message

    def get_health_status(self) -> BackendHealthStatus:
        """Read-only snapshot for dashboards."""
        breaker_status = None
        if self.breaker is not None:
            breaker_status = self.breaker.get_status().to_dict()
        return BackendHealthStatus(
            is_healthy=self._is_healthy,
            last_health_check=self._last_health_check,
            circuit_breaker=breaker_status,
            fallback_active=self.cache.is_active(),
            last_latency_ms=self._last_latency_ms,
            last_error=self._last_error,
        )

    def start(self):
        """Start the periodic probe loop on the running event loop."""
        self._periodic.start()

    async def stop(self):
        await self._periodic.stop()


class ServiceHealthMonitor:
    """
    Sequential multi-service probing with alert evaluation.

    Example:
        monitor = ServiceHealthMonitor(store=InMemoryProbeStore(), evaluator=evaluator)
        monitor.add_probe(HttpServiceProbe("stripe", "https://api.stripe.com/v1/balance"))
        results = await monitor.run_health_checks()
    """

    def __init__(
        self,
        store: Optional[ProbeStore] = None,
        evaluator: Optional[AlertEvaluator] = None,
        interval: float = DEFAULT_INTERVAL,
        observer: Optional[EventObserver] = None,
    ):
        self.store = store
        self.evaluator = evaluator
        self._observer = observer
        self._probes: Dict[str, ServiceProbe] = {}
        self._latest: Dict[str, HealthProbeResult] = {}
        self._last_health_check: Optional[float] = None
        self._periodic = _PeriodicTask("service-health-monitor", self.run_health_checks, interval)

    def add_probe(self, probe: ServiceProbe):
        """Register a service probe."""
        self._probes[probe.name] = probe

    @property
    def services(self) -> List[str]:
        return list(self._probes)

    @property
    def last_health_check(self) -> Optional[float]:
        return self._last_health_check

    async def _probe_one(self, probe: ServiceProbe) -> HealthProbeResult:
        try:
            result = await probe.check()
        except Exception as e:
            logger.error(f"Health check failed for {probe.name}: {e}")
            return HealthProbeResult(
                service=probe.name,
                status=ProbeStatus.DOWN,
                error_message=str(e) or type(e).__name__,
            )
        if result.service != probe.name:
            result.service = probe.name
        return result

    async def run_health_checks(self) -> List[HealthProbeResult]:
        """Probe every registered service once, in registration order."""
        results: List[HealthProbeResult] = []

        for probe in list(self._probes.values()):
            result = await self._probe_one(probe)
            self._latest[probe.name] = result

            if self.store is not None:
                try:
                    await self.store.save(result)
                except Exception as e:
                    logger.warning(f"Failed to store health check for {probe.name}: {e}")

            if self.evaluator is not None:
                try:
                    await self.evaluator.process(result)
                except Exception as e:
                    logger.warning(f"Failed to check alerts for {probe.name}: {e}")

            emit_safely(self._observer, ResilienceEvent(
                kind=EventKind.PROBE_COMPLETED,
                operation=probe.name,
                outcome=result.status.value,
                latency_ms=result.response_time,
                error=result.error_message,
            ))
            results.append(result)

        self._last_health_check = time.time()
        return results

    async def get_health_status(self) -> List[HealthProbeResult]:
        """Latest result per registered service; ``unknown`` if never probed."""
        statuses: List[HealthProbeResult] = []
        for service in self._probes:
            result = self._latest.get(service)
            if result is None and self.store is not None:
                try:
                    result = await self.store.latest(service)
                except Exception as e:
                    logger.warning(f"Probe store unavailable for {service}: {e}")
            statuses.append(result or HealthProbeResult.unknown(service))
        return statuses

    def latest(self, service: str) -> Optional[HealthProbeResult]:
        return self._latest.get(service)

    def start(self):
        self._periodic.start()

    async def stop(self):
        await self._periodic.stop()


def create_health_routes(
    backend_monitor: Optional[BackendHealthMonitor] = None,
    service_monitor: Optional[ServiceHealthMonitor] = None,
    evaluator: Optional[AlertEvaluator] = None,
    service_config: Optional[Dict[str, ServiceConfig]] = None,
    prefix: str = "",
):
    """
    Create FastAPI routes exposing the health snapshots.

    Example:
        app.include_router(create_health_routes(backend_monitor, service_monitor))
    """
    from fastapi import APIRouter, Query
    from fastapi.responses import JSONResponse

    router = APIRouter(prefix=prefix)

    if backend_monitor is not None:
        @router.get("/health/backend")
        async def backend_health():
            status = backend_monitor.get_health_status()
            return JSONResponse(
                content=status.to_dict(),
                status_code=200 if status.is_healthy else 503,
            )

    if service_monitor is not None:
        @router.get("/health/services")
        async def services_health():
            results = await service_monitor.get_health_status()
            return {
                "last_health_check": service_monitor.last_health_check,
                "services": [r.to_dict() for r in results],
            }

    if service_config is not None:
        @router.get("/services")
        async def services():
            return {name: cfg.to_dict() for name, cfg in service_config.items()}

    if evaluator is not None:
        @router.get("/alerts")
        async def alerts(limit: int = Query(50, ge=1, le=500)):
            return {
                "rules": [rule.to_dict() for rule in evaluator.rules],
                "recent": [a.to_dict() for a in evaluator.history[-limit:]],
            }

    return router


# Export public API
__all__ = [
    'ServiceProbe',
    'HttpServiceProbe',
    'CustomServiceProbe',
    'BackendHealthMonitor',
    'BackendHealthStatus',
    'ServiceHealthMonitor',
    'create_health_routes',
]
