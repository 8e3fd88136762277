"""
Tests for resilient operations
===============================
"""

import pytest

from resilient_ops.reliability import (
    CircuitBreaker,
    CircuitOpenError,
    CircuitState,
    ResilientOperation,
    RetryPolicy,
    RetryPolicies,
    ServerFaultError,
    PermanentClientError,
    make_resilient_operation,
    breaker_event_hook,
)
from resilient_ops.observability import MetricsObserver, EventKind

FAST = RetryPolicy(max_retries=2, base_delay=0.001, max_delay=0.01)


def counting(errors, value="ok"):
    remaining = list(errors)
    calls = []

    async def operation():
        calls.append(True)
        if remaining:
            raise remaining.pop(0)
        return value

    return operation, calls


@pytest.mark.asyncio
class TestResilientOperation:
    """Tests for breaker + retry composition."""

    async def test_retries_then_succeeds(self):
        observer = MetricsObserver()
        operation, calls = counting([ServerFaultError("boom", 503)])
        op = ResilientOperation("get_item", operation, policy=FAST, observer=observer)

        assert await op() == "ok"
        assert len(calls) == 2
        assert observer.count(EventKind.RETRY, "get_item") == 1
        assert observer.count(EventKind.OPERATION_SUCCEEDED, "get_item") == 1
        assert observer.average_latency_ms("get_item") is not None

    async def test_breaker_counts_one_failure_per_call(self):
        breaker = CircuitBreaker("db", failure_threshold=2)
        operation, calls = counting([ServerFaultError("boom", 500)] * 10)
        op = make_resilient_operation("write", operation, breaker=breaker, policy=FAST)

        with pytest.raises(ServerFaultError):
            await op()

        assert len(calls) == 3
        assert breaker.get_status().failure_count == 1
        assert breaker.state == CircuitState.CLOSED

    async def test_open_breaker_rejects_without_calling(self):
        breaker = CircuitBreaker("db", failure_threshold=1)
        observer = MetricsObserver()
        operation, calls = counting([PermanentClientError("bad", 400)])
        op = ResilientOperation("read", operation, breaker=breaker, policy=FAST, observer=observer)

        with pytest.raises(PermanentClientError):
            await op()
        assert breaker.state == CircuitState.OPEN
        assert len(calls) == 1

        with pytest.raises(CircuitOpenError):
            await op()
        assert len(calls) == 1
        assert observer.count(EventKind.OPERATION_FAILED, "read") == 2

    async def test_non_idempotent_without_key_single_attempt(self):
        operation, calls = counting([ServerFaultError("boom", 503)])
        op = ResilientOperation("create_order", operation, policy=FAST, idempotent=False)

        assert op.policy.max_retries == 0
        with pytest.raises(ServerFaultError):
            await op()
        assert len(calls) == 1

    async def test_non_idempotent_with_key_retries(self):
        operation, calls = counting([ServerFaultError("boom", 503)])
        op = ResilientOperation(
            "create_order", operation, policy=FAST,
            idempotent=False, idempotency_key="order-123",
        )

        assert await op() == "ok"
        assert len(calls) == 2

    async def test_breaker_event_hook(self):
        observer = MetricsObserver()
        breaker = CircuitBreaker(
            "db", failure_threshold=1,
            on_state_change=breaker_event_hook(observer, "db"),
        )
        operation, _ = counting([PermanentClientError("bad", 400)])

        with pytest.raises(PermanentClientError):
            await ResilientOperation("read", operation, breaker=breaker, policy=FAST)()

        assert observer.count(EventKind.CIRCUIT_STATE_CHANGE, "db") == 1

    async def test_default_policy(self):
        op = ResilientOperation("noop", lambda: None)
        assert op.policy is RetryPolicies.DEFAULT
        assert op.backend is None
