"""
Resilient Operation
===================
Composes a CircuitBreaker and a RetryHandler around one unit of work.

Invocation order:
    breaker.execute(lambda: with_retry(func, policy))

The breaker therefore sees one outcome per logical call, not one per
attempt. Observability for the call (events and logs naming the
operation) lives here, not inside ``func``.
"""

import time
import logging
from dataclasses import replace
from typing import Optional, Callable, Any, Dict

from .circuit_breaker import CircuitBreaker
from .errors import CircuitOpenError, classify
from .retry_handler import RetryHandler, RetryPolicy
from ..observability.events import EventObserver, ResilienceEvent, EventKind, emit_safely

logger = logging.getLogger(__name__)


class RetryPolicies:
    """Standard retry tiers, chosen per call-site by criticality."""

    # Operations the caller cannot function without (e.g. identity resolution)
    CRITICAL = RetryPolicy(max_retries=5, base_delay=0.5, max_delay=15.0, timeout=60.0)

    DEFAULT = RetryPolicy(max_retries=3, base_delay=1.0, max_delay=30.0, timeout=30.0)

    # Latency-sensitive reads where a fast fallback beats a slow retry
    QUICK = RetryPolicy(max_retries=2, base_delay=0.5, max_delay=5.0, timeout=15.0)

    @classmethod
    def all(cls) -> Dict[str, RetryPolicy]:
        return {"critical": cls.CRITICAL, "default": cls.DEFAULT, "quick": cls.QUICK}

    @classmethod
    def for_tier(cls, tier: str) -> RetryPolicy:
        """Resolve a tier by name."""
        try:
            return cls.all()[tier.lower()]
        except KeyError:
            raise ValueError(f"Unknown retry tier: {tier}") from None


class ResilientOperation:
    """
    Zero-argument async callable wrapping ``func`` with breaker and retry.

    Example:
        get_user = ResilientOperation(
            "get_user",
            lambda: client.fetch_profile(user_id),
            breaker=db_breaker,
            policy=RetryPolicies.CRITICAL,
        )
        user = await get_user()
    """

    def __init__(
        self,
        name: str,
        func: Callable[[], Any],
        breaker: Optional[CircuitBreaker] = None,
        policy: RetryPolicy = RetryPolicies.DEFAULT,
        observer: Optional[EventObserver] = None,
        on_retry: Optional[Callable[[int, BaseException], None]] = None,
        idempotent: bool = True,
        idempotency_key: Optional[str] = None,
    ):
        self.name = name
        self.func = func
        self.breaker = breaker
        self.observer = observer
        self.idempotency_key = idempotency_key

        if not idempotent and idempotency_key is None and policy.max_retries > 0:
            logger.warning(
                f"[{name}] non-idempotent operation without idempotency key; "
                f"automatic retry disabled"
            )
            policy = replace(policy, max_retries=0)
        self.policy = policy

        self._retry = RetryHandler(
            policy,
            on_retry=on_retry,
            observer=observer,
            name=name,
        )

    @property
    def backend(self) -> Optional[str]:
        return self.breaker.name if self.breaker is not None else None

    async def __call__(self) -> Any:
        start = time.monotonic()
        try:
            if self.breaker is not None:
                result = await self.breaker.execute(lambda: self._retry.run(self.func))
            else:
                result = await self._retry.run(self.func)
        except Exception as e:
            latency_ms = (time.monotonic() - start) * 1000
            if isinstance(e, CircuitOpenError):
                logger.warning(f"[{self.name}] rejected: {e}")
            else:
                logger.error(f"[{self.name}] operation failed after retries: {type(e).__name__}: {e}")
            emit_safely(self.observer, ResilienceEvent(
                kind=EventKind.OPERATION_FAILED,
                operation=self.name,
                backend=self.backend,
                outcome=classify(e).value,
                latency_ms=latency_ms,
                error=str(e),
            ))
            raise

        emit_safely(self.observer, ResilienceEvent(
            kind=EventKind.OPERATION_SUCCEEDED,
            operation=self.name,
            backend=self.backend,
            outcome="success",
            latency_ms=(time.monotonic() - start) * 1000,
        ))
        return result


def make_resilient_operation(
    name: str,
    func: Callable[[], Any],
    breaker: Optional[CircuitBreaker] = None,
    policy: RetryPolicy = RetryPolicies.DEFAULT,
    **kwargs,
) -> ResilientOperation:
    """
    Create a resilient wrapper for any zero-argument operation.

    Example:
        op = make_resilient_operation("search", lambda: api.search(q), breaker, RetryPolicies.QUICK)
        results = await op()
    """
    return ResilientOperation(name, func, breaker=breaker, policy=policy, **kwargs)


def breaker_event_hook(observer: EventObserver, backend: str) -> Callable:
    """Build an ``on_state_change`` callback that emits circuit events."""
    def on_state_change(old_state, new_state):
        emit_safely(observer, ResilienceEvent(
            kind=EventKind.CIRCUIT_STATE_CHANGE,
            operation=backend,
            backend=backend,
            outcome=f"{old_state.value}->{new_state.value}",
        ))
    return on_state_change


__all__ = [
    'RetryPolicies',
    'ResilientOperation',
    'make_resilient_operation',
    'breaker_event_hook',
]
