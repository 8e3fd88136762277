"""
Reliability Module
==================
Resilience patterns for remote operations.

Components:
- errors: Failure taxonomy and classification
- CircuitBreaker: Fail fast while a backend is down
- RetryHandler: Exponential backoff with jitter and Retry-After support
- ResilientOperation: Breaker wrapped around retry, with tiered policies
- DegradationManager: Serve cached data while the backend is unavailable
- BackendHealthMonitor / ServiceHealthMonitor: Background probes
"""

from .errors import (
    ResilienceError,
    TransientNetworkError,
    OperationTimeoutError,
    RateLimitedError,
    ServerFaultError,
    PermanentClientError,
    ErrorCategory,
    classify,
    is_retryable,
    is_rate_limited,
    get_status_code,
    parse_retry_after,
    retry_after,
)

from .circuit_breaker import (
    CircuitBreaker,
    CircuitState,
    CircuitConfig,
    CircuitMetrics,
    CircuitSnapshot,
    CircuitOpenError,
    CircuitBreakerRegistry,
)

from .retry_handler import (
    RetryHandler,
    RetryPolicy,
    RetryResult,
    RetryOutcome,
    Attempt,
    BatchResult,
    BatchFailure,
    calculate_backoff_delay,
    compute_retry_delay,
    with_retry,
    batch_with_retry,
    run_with_timeout,
)

from .resilient_operation import (
    RetryPolicies,
    ResilientOperation,
    make_resilient_operation,
    breaker_event_hook,
)

from .graceful_degradation import (
    DegradationManager,
    FallbackResult,
    FallbackReason,
    DegradedResponse,
)

from .health_checks import (
    ServiceProbe,
    HttpServiceProbe,
    CustomServiceProbe,
    BackendHealthMonitor,
    BackendHealthStatus,
    ServiceHealthMonitor,
    create_health_routes,
)


__all__ = [
    # Errors
    'ResilienceError',
    'TransientNetworkError',
    'OperationTimeoutError',
    'RateLimitedError',
    'ServerFaultError',
    'PermanentClientError',
    'ErrorCategory',
    'classify',
    'is_retryable',
    'is_rate_limited',
    'get_status_code',
    'parse_retry_after',
    'retry_after',

    # Circuit Breaker
    'CircuitBreaker',
    'CircuitState',
    'CircuitConfig',
    'CircuitMetrics',
    'CircuitSnapshot',
    'CircuitOpenError',
    'CircuitBreakerRegistry',

    # Retry Handler
    'RetryHandler',
    'RetryPolicy',
    'RetryResult',
    'RetryOutcome',
    'Attempt',
    'BatchResult',
    'BatchFailure',
    'calculate_backoff_delay',
    'compute_retry_delay',
    'with_retry',
    'batch_with_retry',
    'run_with_timeout',

    # Resilient Operation
    'RetryPolicies',
    'ResilientOperation',
    'make_resilient_operation',
    'breaker_event_hook',

    # Graceful Degradation
    'DegradationManager',
    'FallbackResult',
    'FallbackReason',
    'DegradedResponse',

    # Health Monitors
    'ServiceProbe',
    'HttpServiceProbe',
    'CustomServiceProbe',
    'BackendHealthMonitor',
    'BackendHealthStatus',
    'ServiceHealthMonitor',
    'create_health_routes',
]
