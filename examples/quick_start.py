"""
Quick Start Example
===================
Minimal example of using Resilient Ops.
"""

import asyncio
import random

from resilient_ops.reliability import (
    CircuitBreaker,
    CircuitOpenError,
    RetryPolicies,
    RetryPolicy,
    RetryHandler,
    TransientNetworkError,
    PermanentClientError,
    make_resilient_operation,
    DegradationManager,
    BackendHealthMonitor,
    ServiceHealthMonitor,
    CustomServiceProbe,
    classify,
)
from resilient_ops.memory import FallbackCache
from resilient_ops.observability import (
    AlertEvaluator,
    AlertRule,
    AlertType,
    MetricsObserver,
    build_service_configuration,
)


async def main():
    """Quick start demo."""
    print("=" * 60)
    print("Resilient Ops - Quick Start")
    print("=" * 60)

    # 1. Error Classification
    print("\n1. Error Classification")
    print("-" * 40)
    for error in (
        TransientNetworkError("connection reset"),
        PermanentClientError("not found", status_code=404),
        TimeoutError("read timed out"),
    ):
        print(f"   - {type(error).__name__}: {classify(error).value}")

    # 2. Retry
    print("\n2. Retry Handler")
    print("-" * 40)
    calls = {"count": 0}

    async def flaky():
        calls["count"] += 1
        if calls["count"] < 3:
            raise TransientNetworkError("connection reset")
        return "ok"

    handler = RetryHandler(RetryPolicy(max_retries=3, base_delay=0.05, max_delay=0.5))
    result = await handler.execute(flaky)
    print(f"   - Outcome: {result.outcome.value}")
    print(f"   - Attempts: {len(result.attempts)}")
    print(f"   - Delays: {[round(d, 3) for d in result.delays]}")

    # 3. Circuit Breaker
    print("\n3. Circuit Breaker")
    print("-" * 40)
    breaker = CircuitBreaker("demo-backend", failure_threshold=2, reset_timeout=1.0)

    async def always_down():
        raise TransientNetworkError("connection refused")

    for _ in range(3):
        try:
            await breaker.execute(always_down)
        except CircuitOpenError as e:
            print(f"   - Rejected: {e}")
        except TransientNetworkError:
            print(f"   - Failure recorded, state={breaker.state.value}")

    # 4. Resilient Operation + Fallback
    print("\n4. Resilient Operation with Fallback Cache")
    print("-" * 40)
    cache = FallbackCache()
    manager = DegradationManager(cache)
    backend_up = {"value": True}
    db_breaker = CircuitBreaker("demo-db", failure_threshold=5)

    async def fetch_profile():
        if not backend_up["value"]:
            raise TransientNetworkError("connection reset")
        return {"id": "user-1", "name": "Ada"}

    get_profile = make_resilient_operation(
        "get_profile",
        fetch_profile,
        breaker=db_breaker,
        policy=RetryPolicy(max_retries=1, base_delay=0.01, max_delay=0.05),
    )

    fresh = await manager.execute("user:user-1", get_profile)
    print(f"   - Fresh read: {fresh.value} (stale={fresh.stale})")

    backend_up["value"] = False
    stale = await manager.execute("user:user-1", get_profile)
    print(f"   - During outage: {stale.value} (stale={stale.stale}, reason={stale.reason.value})")

    # 5. Health Monitoring
    print("\n5. Health Monitoring")
    print("-" * 40)
    monitor = BackendHealthMonitor(
        "demo-db",
        probe=lambda: backend_up["value"],
        breaker=db_breaker,
        cache=cache,
    )
    await monitor.check_health()
    print(f"   - Healthy: {monitor.is_healthy}, fallback active: {cache.is_active()}")
    backend_up["value"] = True
    await monitor.check_health()
    print(f"   - Healthy: {monitor.is_healthy}, fallback active: {cache.is_active()}")

    # 6. Alerting
    print("\n6. Service Probes and Alerts")
    print("-" * 40)
    evaluator = AlertEvaluator(rules=[
        AlertRule("search", AlertType.SERVICE_DOWN),
        AlertRule("search", AlertType.SLOW_RESPONSE, threshold=100),
    ])
    services = ServiceHealthMonitor(evaluator=evaluator, observer=MetricsObserver())
    services.add_probe(CustomServiceProbe("search", lambda: random.random() > 0.5))
    results = await services.run_health_checks()
    for probe_result in results:
        print(f"   - {probe_result.service}: {probe_result.status.value}")
    print(f"   - Alerts fired: {len(evaluator.history)}")

    enabled = [n for n, c in build_service_configuration().items() if c.enabled]
    print(f"   - Configured services: {enabled or 'none'}")
    print(f"   - Retry tiers: {list(RetryPolicies.all())}")

    print("\n" + "=" * 60)
    print("Quick start complete!")
    print("=" * 60)


if __name__ == "__main__":
    asyncio.run(main())
