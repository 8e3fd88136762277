"""
Retry Handler
=============
Retry with exponential backoff for transient remote failures.

Features:
- Exponential backoff with 0-30% jitter
- Error classification (non-retryable errors propagate immediately)
- Server-provided Retry-After honoured, clamped to max_delay
- Per-attempt timeout and optional overall deadline
- Callback hooks and structured retry events
- Batch execution with per-item failure collection
"""

import time
import asyncio
import inspect
import random
import logging
from typing import Optional, Callable, TypeVar, Any, List, Awaitable, Iterable, Generic
from dataclasses import dataclass, field
from functools import wraps
from enum import Enum

from . import errors
from .errors import OperationTimeoutError
from ..observability.events import ResilienceEvent, EventKind, EventObserver, emit_safely

logger = logging.getLogger(__name__)

T = TypeVar('T')
R = TypeVar('R')

JITTER_RATIO = 0.3


class RetryOutcome(Enum):
    """Outcome of retry operation."""
    SUCCESS = "success"
    EXHAUSTED = "exhausted"
    ABORTED = "aborted"      # non-retryable error
    TIMEOUT = "timeout"      # overall deadline reached


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget for one call-site tier. Durations in seconds."""
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    timeout: float = 30.0
    total_timeout: Optional[float] = None

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay <= 0 or self.max_delay <= 0 or self.timeout <= 0:
            raise ValueError("delays and timeout must be positive")
        if self.base_delay > self.max_delay:
            raise ValueError("base_delay must not exceed max_delay")
        if self.total_timeout is not None and self.total_timeout <= 0:
            raise ValueError("total_timeout must be positive")

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1


@dataclass
class Attempt:
    """One attempt within a retry run."""
    index: int
    error: Optional[BaseException] = None
    delay_before_next: Optional[float] = None


@dataclass
class RetryResult(Generic[T]):
    """Result of retry operation."""
    outcome: RetryOutcome
    value: Optional[T] = None
    exception: Optional[BaseException] = None
    attempts: List[Attempt] = field(default_factory=list)
    total_time: float = 0.0

    @property
    def delays(self) -> List[float]:
        return [a.delay_before_next for a in self.attempts if a.delay_before_next is not None]


def calculate_backoff_delay(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    rng: Any = random,
) -> float:
    """
    Delay before retry ``attempt`` (1-indexed).

    Exponential growth capped at max_delay, plus up to 30% jitter so
    simultaneous callers spread out. Never exceeds ``max_delay * 1.3``.
    """
    if attempt < 1:
        raise ValueError("attempt is 1-indexed")
    exponential = min(base_delay * (2 ** (attempt - 1)), max_delay)
    jitter = rng.uniform(0, JITTER_RATIO) * exponential
    return exponential + jitter


def compute_retry_delay(
    error: BaseException,
    attempt: int,
    policy: RetryPolicy,
    rng: Any = random,
) -> float:
    """Pick the sleep before the next attempt for a retryable error."""
    server_delay = errors.retry_after(error)
    if server_delay is not None:
        return min(server_delay, policy.max_delay)

    base = policy.base_delay
    if errors.is_rate_limited(error):
        # Rate limits recover slower than generic transient faults
        base = min(base * 2, policy.max_delay)
    return calculate_backoff_delay(attempt, base, policy.max_delay, rng)


async def run_with_timeout(func: Callable[[], Any], timeout: float) -> Any:
    """
    Run one attempt raced against ``timeout``.

    Coroutine functions are cancelled when the timer wins. Plain functions
    run in the default executor and keep running after a timeout; only the
    waiter gives up.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout

    try:
        if inspect.iscoroutinefunction(func):
            return await asyncio.wait_for(func(), timeout=timeout)

        result = await asyncio.wait_for(loop.run_in_executor(None, func), timeout=timeout)
        # Lambdas wrapping coroutines are not coroutine functions
        if asyncio.iscoroutine(result):
            result = await asyncio.wait_for(result, timeout=max(deadline - loop.time(), 0))
        return result
    except asyncio.TimeoutError as e:
        raise OperationTimeoutError(f"Operation timed out after {timeout:.3f}s", timeout=timeout) from e


class RetryHandler:
    """
    Retry executor bound to one RetryPolicy.

    Example:
        handler = RetryHandler(RetryPolicies.DEFAULT)

        # Raises the final error
        profile = await handler.run(lambda: client.get_profile(user_id))

        # Inspect the run
        result = await handler.execute(fetch_profile)
        if result.outcome == RetryOutcome.SUCCESS:
            ...

        # As a decorator
        @RetryHandler(RetryPolicies.QUICK)
        async def fetch_profile():
            ...
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        on_retry: Optional[Callable[[int, BaseException], None]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Any = random,
        observer: Optional[EventObserver] = None,
        name: Optional[str] = None,
    ):
        """
        Initialize retry handler.

        Args:
            policy: Retry budget (defaults to RetryPolicy())
            on_retry: Callback before each retry sleep
            sleep: Awaitable sleep, overridable in tests
            rng: Source of jitter
            observer: Optional EventObserver for retry events
            name: Operation name used in events and logs
        """
        self.policy = policy or RetryPolicy()
        self._on_retry = on_retry
        self._sleep = sleep
        self._rng = rng
        self._observer = observer
        self.name = name or "operation"

    def _remaining(self, start: float) -> Optional[float]:
        if self.policy.total_timeout is None:
            return None
        return self.policy.total_timeout - (time.monotonic() - start)

    def _notify_retry(self, attempt: int, error: BaseException, delay: float):
        if self._on_retry:
            try:
                self._on_retry(attempt, error)
            except Exception as callback_error:
                logger.error(f"Retry callback error: {callback_error}")

        emit_safely(self._observer, ResilienceEvent(
            kind=EventKind.RETRY,
            operation=self.name,
            attempt=attempt,
            outcome=type(error).__name__,
            delay=delay,
            error=str(error),
        ))

    async def execute(self, func: Callable[[], Any]) -> RetryResult:
        """
        Execute function with retry logic.

        Args:
            func: Zero-argument coroutine function or plain function

        Returns:
            RetryResult with outcome, value and per-attempt records
        """
        start = time.monotonic()
        attempts: List[Attempt] = []
        last_exception: Optional[BaseException] = None
        max_attempts = self.policy.max_attempts

        for index in range(1, max_attempts + 1):
            timeout = self.policy.timeout
            remaining = self._remaining(start)
            if remaining is not None:
                if remaining <= 0:
                    return RetryResult(
                        outcome=RetryOutcome.TIMEOUT,
                        exception=last_exception or OperationTimeoutError(
                            "Overall deadline reached", timeout=self.policy.total_timeout),
                        attempts=attempts,
                        total_time=time.monotonic() - start,
                    )
                timeout = min(timeout, remaining)

            attempt = Attempt(index=index)
            attempts.append(attempt)

            try:
                value = await run_with_timeout(func, timeout)
                return RetryResult(
                    outcome=RetryOutcome.SUCCESS,
                    value=value,
                    attempts=attempts,
                    total_time=time.monotonic() - start,
                )
            except Exception as e:
                attempt.error = e
                last_exception = e

                if not errors.is_retryable(e):
                    return RetryResult(
                        outcome=RetryOutcome.ABORTED,
                        exception=e,
                        attempts=attempts,
                        total_time=time.monotonic() - start,
                    )

                if index == max_attempts:
                    break

                delay = compute_retry_delay(e, index, self.policy, self._rng)
                remaining = self._remaining(start)
                if remaining is not None and delay >= remaining:
                    return RetryResult(
                        outcome=RetryOutcome.TIMEOUT,
                        exception=e,
                        attempts=attempts,
                        total_time=time.monotonic() - start,
                    )

                attempt.delay_before_next = delay
                logger.debug(
                    f"[{self.name}] retry {index}/{self.policy.max_retries} after "
                    f"{type(e).__name__}: {str(e)[:100]}, delay={delay:.3f}s"
                )
                self._notify_retry(index, e, delay)
                await self._sleep(delay)

        return RetryResult(
            outcome=RetryOutcome.EXHAUSTED,
            exception=last_exception,
            attempts=attempts,
            total_time=time.monotonic() - start,
        )

    async def run(self, func: Callable[[], Any]) -> Any:
        """Execute with retry and return the value, raising the final error."""
        result = await self.execute(func)
        if result.outcome == RetryOutcome.SUCCESS:
            return result.value
        raise result.exception or RuntimeError("Retry failed without exception")

    def __call__(self, func: Callable) -> Callable:
        """
        Decorator for retry handling.

        Example:
            @RetryHandler(RetryPolicies.QUICK)
            async def my_function(arg):
                ...
        """
        @wraps(func)
        async def wrapper(*args, **kwargs):
            if inspect.iscoroutinefunction(func):
                async def call():
                    return await func(*args, **kwargs)
            else:
                def call():
                    return func(*args, **kwargs)
            return await self.run(call)

        return wrapper


async def with_retry(
    func: Callable[[], Any],
    policy: Optional[RetryPolicy] = None,
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
    **kwargs,
) -> Any:
    """
    Run ``func`` under ``policy``, raising the error of the final attempt.

    Example:
        user = await with_retry(lambda: db.fetch_user(user_id), RetryPolicies.CRITICAL)
    """
    return await RetryHandler(policy, on_retry=on_retry, **kwargs).run(func)


@dataclass
class BatchFailure(Generic[T]):
    item: T
    error: BaseException


@dataclass
class BatchResult(Generic[T, R]):
    """Outcome of batch_with_retry."""
    succeeded: List[R] = field(default_factory=list)
    failed: List[BatchFailure[T]] = field(default_factory=list)


async def batch_with_retry(
    items: Iterable[T],
    operation: Callable[[T], Awaitable[R]],
    policy: Optional[RetryPolicy] = None,
    batch_size: int = 5,
    on_item_error: Optional[Callable[[T, BaseException], None]] = None,
    **kwargs,
) -> BatchResult:
    """
    Apply ``operation`` to every item with retry.

    Items within a batch run concurrently; batches run one after another.
    A failing item never aborts the others.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")

    handler = RetryHandler(policy, **kwargs)
    result = BatchResult()
    pending = list(items)

    async def run_item(item):
        try:
            value = await handler.run(lambda: operation(item))
            result.succeeded.append(value)
        except Exception as e:
            result.failed.append(BatchFailure(item=item, error=e))
            if on_item_error:
                try:
                    on_item_error(item, e)
                except Exception as callback_error:
                    logger.error(f"Item error callback error: {callback_error}")

    for offset in range(0, len(pending), batch_size):
        batch = pending[offset:offset + batch_size]
        await asyncio.gather(*(run_item(item) for item in batch))

    return result


# Export public API
__all__ = [
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
]
