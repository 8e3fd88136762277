"""
Circuit Breaker
===============
Circuit breaker guarding calls to a single logical backend.

States:
- CLOSED: Normal operation, requests pass through
- OPEN: Circuit tripped, requests fail fast
- HALF_OPEN: A bounded number of probe requests test recovery

Features:
- Consecutive-failure threshold
- Timeout-driven recovery probing
- Thread-safe state transitions (lock never held across the call)
- Read-only status snapshots for health dashboards
- Registry holding one breaker per backend
"""

import time
import asyncio
import logging
from typing import Optional, Dict, Any, Callable, List, TypeVar, Awaitable
from dataclasses import dataclass, asdict
from enum import Enum
from functools import wraps
import threading

from .errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar('T')


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "CLOSED"          # Normal operation
    OPEN = "OPEN"              # Failing fast
    HALF_OPEN = "HALF_OPEN"    # Testing recovery


@dataclass(frozen=True)
class CircuitConfig:
    """Circuit breaker configuration."""
    failure_threshold: int = 5        # Consecutive failures before opening
    reset_timeout: float = 60.0       # Seconds in OPEN before probing
    half_open_max_attempts: int = 3   # Probe successes needed to close

    def __post_init__(self):
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.half_open_max_attempts < 1:
            raise ValueError("half_open_max_attempts must be >= 1")
        if self.reset_timeout < 0:
            raise ValueError("reset_timeout must be >= 0")


@dataclass
class CircuitMetrics:
    """Lifetime counters for a circuit."""
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    state_changes: int = 0


@dataclass(frozen=True)
class CircuitSnapshot:
    """Point-in-time view of a circuit."""
    name: str
    state: CircuitState
    failure_count: int
    success_count: int
    last_failure_time: Optional[float]
    time_since_last_failure: Optional[float]
    failure_threshold: int
    is_healthy: bool

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data


class CircuitBreaker:
    """
    Circuit breaker for protecting calls to one backend.

    Example:
        breaker = CircuitBreaker(name="primary-db", failure_threshold=5)

        result = await breaker.execute(lambda: fetch_profile(user_id))

        @breaker.protect
        async def fetch_profile(user_id: str):
            ...
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        half_open_max_attempts: int = 3,
        excluded_exceptions: tuple = (),
        on_state_change: Optional[Callable[[CircuitState, CircuitState], None]] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize circuit breaker.

        Args:
            name: Backend name for identification
            failure_threshold: Consecutive failures that trip the circuit
            reset_timeout: Seconds to stay OPEN before admitting probes
            half_open_max_attempts: Probe successes needed to close
            excluded_exceptions: Exceptions that don't count as failures
            on_state_change: Callback when state changes
            clock: Time source, overridable in tests
        """
        self.name = name
        self.config = CircuitConfig(
            failure_threshold=failure_threshold,
            reset_timeout=reset_timeout,
            half_open_max_attempts=half_open_max_attempts,
        )
        self.excluded_exceptions = excluded_exceptions
        self._on_state_change = on_state_change
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._half_open_in_flight = 0
        self._last_failure_time: Optional[float] = None

        self._lock = threading.Lock()
        self._metrics = CircuitMetrics()

    @property
    def state(self) -> CircuitState:
        """Get current circuit state."""
        with self._lock:
            return self._state

    @property
    def metrics(self) -> CircuitMetrics:
        """Get a copy of the lifetime counters."""
        with self._lock:
            return CircuitMetrics(**asdict(self._metrics))

    def _reset_timeout_elapsed(self) -> bool:
        if self._last_failure_time is None:
            return False
        return self._clock() - self._last_failure_time >= self.config.reset_timeout

    def _transition_to(self, new_state: CircuitState):
        """Transition to new state. Caller holds the lock."""
        old_state = self._state
        if old_state == new_state:
            return

        self._state = new_state
        self._metrics.state_changes += 1

        if new_state == CircuitState.CLOSED:
            self._failure_count = 0
            self._success_count = 0
            self._half_open_in_flight = 0
        elif new_state == CircuitState.HALF_OPEN:
            self._success_count = 0
            self._half_open_in_flight = 0
        elif new_state == CircuitState.OPEN:
            self._success_count = 0
            self._half_open_in_flight = 0

        logger.info(f"Circuit '{self.name}' state change: {old_state.value} -> {new_state.value}")

        if self._on_state_change:
            try:
                self._on_state_change(old_state, new_state)
            except Exception as e:
                logger.error(f"State change callback error: {e}")

    def _acquire(self) -> bool:
        """Admission check; moves OPEN -> HALF_OPEN when the timeout has elapsed."""
        with self._lock:
            if self._state == CircuitState.OPEN and self._reset_timeout_elapsed():
                self._transition_to(CircuitState.HALF_OPEN)

            if self._state == CircuitState.CLOSED:
                return True

            if self._state == CircuitState.HALF_OPEN:
                admitted = self._success_count + self._half_open_in_flight
                if admitted < self.config.half_open_max_attempts:
                    self._half_open_in_flight += 1
                    return True

            self._metrics.rejected_calls += 1
            return False

    def can_execute(self) -> bool:
        """Check whether a call would currently be admitted, without reserving a probe slot."""
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return True
            if self._state == CircuitState.OPEN:
                return self._reset_timeout_elapsed()
            return self._success_count + self._half_open_in_flight < self.config.half_open_max_attempts

    def record_success(self):
        """Record successful call."""
        with self._lock:
            self._metrics.total_calls += 1
            self._metrics.successful_calls += 1

            if self._state == CircuitState.HALF_OPEN:
                self._half_open_in_flight = max(0, self._half_open_in_flight - 1)
                self._success_count += 1
                if self._success_count >= self.config.half_open_max_attempts:
                    self._transition_to(CircuitState.CLOSED)
            elif self._state == CircuitState.CLOSED:
                self._failure_count = 0

    def record_failure(self, exception: Optional[BaseException] = None):
        """Record failed call."""
        if exception is not None and self.excluded_exceptions and isinstance(exception, self.excluded_exceptions):
            self._release_probe()
            return

        with self._lock:
            self._metrics.total_calls += 1
            self._metrics.failed_calls += 1
            self._failure_count += 1
            self._last_failure_time = self._clock()

            if self._state == CircuitState.HALF_OPEN:
                # Any failure in half-open trips back to open
                self._transition_to(CircuitState.OPEN)
            elif self._state == CircuitState.CLOSED:
                if self._failure_count >= self.config.failure_threshold:
                    self._transition_to(CircuitState.OPEN)

    def _release_probe(self):
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._half_open_in_flight = max(0, self._half_open_in_flight - 1)

    async def execute(self, func: Callable[[], Awaitable[T]]) -> T:
        """
        Run one call through the breaker.

        Raises CircuitOpenError without invoking ``func`` when the circuit
        rejects the call; otherwise re-raises whatever ``func`` raised.
        """
        if not self._acquire():
            raise CircuitOpenError(
                f"Circuit '{self.name}' is OPEN - service unavailable",
                circuit_name=self.name,
            )

        try:
            result = func()
            if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
                result = await result
        except asyncio.CancelledError:
            self._release_probe()
            raise
        except Exception as e:
            self.record_failure(e)
            raise

        self.record_success()
        return result

    def reset(self):
        """Force the circuit CLOSED with zeroed counters."""
        with self._lock:
            if self._state != CircuitState.CLOSED:
                self._transition_to(CircuitState.CLOSED)
            self._failure_count = 0
            self._success_count = 0
            self._half_open_in_flight = 0
            self._last_failure_time = None
        logger.info(f"Circuit '{self.name}' manually reset")

    def get_status(self) -> CircuitSnapshot:
        """Read-only snapshot for observability."""
        with self._lock:
            since = None
            if self._last_failure_time is not None:
                since = self._clock() - self._last_failure_time
            return CircuitSnapshot(
                name=self.name,
                state=self._state,
                failure_count=self._failure_count,
                success_count=self._success_count,
                last_failure_time=self._last_failure_time,
                time_since_last_failure=since,
                failure_threshold=self.config.failure_threshold,
                is_healthy=self._state == CircuitState.CLOSED,
            )

    def protect(self, func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        """
        Decorator to protect a coroutine function with the circuit breaker.

        Example:
            @breaker.protect
            async def call_api():
                ...
        """
        @wraps(func)
        async def wrapper(*args, **kwargs):
            return await self.execute(lambda: func(*args, **kwargs))

        return wrapper


class CircuitBreakerRegistry:
    """
    One circuit breaker per logical backend, created at process start.

    Example:
        registry = CircuitBreakerRegistry()
        db_circuit = registry.get_or_create("primary-db", failure_threshold=5)
        open_now = registry.get_open_circuits()
    """

    def __init__(self, default_config: Optional[CircuitConfig] = None):
        """Initialize registry with optional default config."""
        self.default_config = default_config or CircuitConfig()
        self._circuits: Dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get_or_create(
        self,
        name: str,
        failure_threshold: Optional[int] = None,
        reset_timeout: Optional[float] = None,
        half_open_max_attempts: Optional[int] = None,
        **kwargs,
    ) -> CircuitBreaker:
        """Get existing circuit or create new one."""
        with self._lock:
            if name not in self._circuits:
                self._circuits[name] = CircuitBreaker(
                    name=name,
                    failure_threshold=failure_threshold or self.default_config.failure_threshold,
                    reset_timeout=reset_timeout if reset_timeout is not None else self.default_config.reset_timeout,
                    half_open_max_attempts=half_open_max_attempts or self.default_config.half_open_max_attempts,
                    **kwargs,
                )
            return self._circuits[name]

    def get(self, name: str) -> Optional[CircuitBreaker]:
        """Get circuit by name."""
        return self._circuits.get(name)

    def get_all_status(self) -> Dict[str, CircuitSnapshot]:
        """Get snapshots for all circuits."""
        return {name: circuit.get_status() for name, circuit in self._circuits.items()}

    def get_open_circuits(self) -> List[str]:
        """Get names of all open circuits."""
        return [name for name, circuit in self._circuits.items() if circuit.state == CircuitState.OPEN]

    def reset_all(self):
        """Reset all circuits to closed state."""
        for circuit in self._circuits.values():
            circuit.reset()


# Export public API
__all__ = [
    'CircuitBreaker',
    'CircuitState',
    'CircuitConfig',
    'CircuitMetrics',
    'CircuitSnapshot',
    'CircuitOpenError',
    'CircuitBreakerRegistry',
]
