"""
Observability Module
====================
Visibility into remote dependencies.

Components:
- EventObserver: Structured resilience events (retries, breaker transitions, fallbacks)
- ProbeStore: Health probe history, in memory or in Redis
- AlertEvaluator: Threshold rules over probe results, with dispatch channels
- ResponseTimeTracker: Rolling request latency statistics
"""

from .events import (
    EventKind,
    ResilienceEvent,
    EventObserver,
    LoggingObserver,
    MetricsObserver,
    CompositeObserver,
    emit_safely,
)

from .probe_store import (
    ProbeStatus,
    HealthProbeResult,
    ProbeStore,
    InMemoryProbeStore,
    RedisProbeStore,
    create_probe_store,
)

from .alerting import (
    AlertType,
    AlertRule,
    TriggeredAlert,
    AlertSink,
    AlertEvaluator,
    AlertResult,
    AlertChannel,
    LogChannel,
    WebhookChannel,
    SlackChannel,
    AlertDispatcher,
    create_alert_dispatcher,
    should_trigger,
)

from .service_config import (
    ServiceSpec,
    ServiceConfig,
    SERVICE_CATALOG,
    build_service_configuration,
    enabled_services,
)

from .response_times import (
    RequestMetric,
    ResponseTimeTracker,
    percentile,
)


__all__ = [
    # Events
    'EventKind',
    'ResilienceEvent',
    'EventObserver',
    'LoggingObserver',
    'MetricsObserver',
    'CompositeObserver',
    'emit_safely',

    # Probe Store
    'ProbeStatus',
    'HealthProbeResult',
    'ProbeStore',
    'InMemoryProbeStore',
    'RedisProbeStore',
    'create_probe_store',

    # Alerting
    'AlertType',
    'AlertRule',
    'TriggeredAlert',
    'AlertSink',
    'AlertEvaluator',
    'AlertResult',
    'AlertChannel',
    'LogChannel',
    'WebhookChannel',
    'SlackChannel',
    'AlertDispatcher',
    'create_alert_dispatcher',
    'should_trigger',

    # Service Configuration
    'ServiceSpec',
    'ServiceConfig',
    'SERVICE_CATALOG',
    'build_service_configuration',
    'enabled_services',

    # Response Times
    'RequestMetric',
    'ResponseTimeTracker',
    'percentile',
]
