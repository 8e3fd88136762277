"""
Graceful Degradation
====================
Read policy that turns backend failures into stale-but-available data.

Policy:
1. If the fallback cache is active (backend known unhealthy), serve a
   cached entry before touching the network.
2. Otherwise call the operation; on success store the value (read-through).
3. If the operation fails, serve the cached entry as stale.
4. With no cached entry, re-raise the original error unchanged.
"""

import time
import logging
from typing import Optional, Dict, Any, Callable, TypeVar, Generic, Awaitable
from dataclasses import dataclass
from enum import Enum

from .errors import CircuitOpenError, ErrorCategory, classify
from ..memory.fallback_cache import FallbackCache, CacheEntry
from ..observability.events import EventObserver, ResilienceEvent, EventKind, emit_safely

logger = logging.getLogger(__name__)

T = TypeVar('T')


class FallbackReason(Enum):
    """Reason for serving cached data."""
    CACHE_PREFERRED = "cache_preferred"
    CIRCUIT_OPEN = "circuit_open"
    PRIMARY_TIMEOUT = "primary_timeout"
    PRIMARY_FAILED = "primary_failed"


@dataclass
class FallbackResult(Generic[T]):
    """Value plus whether it came from the fallback cache."""
    value: T
    stale: bool = False
    reason: Optional[FallbackReason] = None
    stored_at: Optional[float] = None
    error: Optional[str] = None

    @property
    def used_fallback(self) -> bool:
        return self.reason is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": self.value,
            "stale": self.stale,
            "fallback_reason": self.reason.value if self.reason else None,
            "stored_at": self.stored_at,
        }


def _reason_for(error: BaseException) -> FallbackReason:
    if isinstance(error, CircuitOpenError):
        return FallbackReason.CIRCUIT_OPEN
    if classify(error) == ErrorCategory.TIMEOUT:
        return FallbackReason.PRIMARY_TIMEOUT
    return FallbackReason.PRIMARY_FAILED


class DegradationManager:
    """
    Applies the fallback read policy against one FallbackCache.

    Example:
        manager = DegradationManager(cache)
        get_user = make_resilient_operation("get_user", fetch, breaker, RetryPolicies.CRITICAL)

        result = await manager.execute(f"user:{user_id}", get_user)
        if result.stale:
            response.headers["X-Data-Stale"] = "true"
    """

    def __init__(
        self,
        cache: FallbackCache,
        observer: Optional[EventObserver] = None,
    ):
        self.cache = cache
        self.observer = observer
        self._metrics: Dict[str, int] = {
            'primary_success': 0,
            'primary_failure': 0,
            'fallback_used': 0,
            'cache_preferred': 0,
        }

    def _served(self, key: str, entry: CacheEntry, reason: FallbackReason,
                error: Optional[BaseException] = None) -> FallbackResult:
        self._metrics['fallback_used'] += 1
        if reason == FallbackReason.CACHE_PREFERRED:
            self._metrics['cache_preferred'] += 1
        emit_safely(self.observer, ResilienceEvent(
            kind=EventKind.FALLBACK_SERVED,
            operation=key,
            outcome=reason.value,
            error=str(error) if error else None,
        ))
        return FallbackResult(
            value=entry.value,
            stale=True,
            reason=reason,
            stored_at=entry.stored_at,
            error=str(error) if error else None,
        )

    async def execute(
        self,
        key: str,
        operation: Callable[[], Awaitable[T]],
        cache_result: bool = True,
    ) -> FallbackResult[T]:
        """
        Fetch ``key`` via ``operation`` with cache fallback.

        Args:
            key: Logical cache key, e.g. "user:<id>"
            operation: Zero-argument coroutine function (usually a ResilientOperation)
            cache_result: Store successful non-None results

        Returns:
            FallbackResult; ``stale`` is True when served from cache

        Raises:
            The operation's original error when no cached entry exists
        """
        if self.cache.is_active():
            entry = self.cache.lookup(key)
            if entry is not None:
                logger.info(f"Backend marked unhealthy, serving cached '{key}'")
                return self._served(key, entry, FallbackReason.CACHE_PREFERRED)

        try:
            value = await operation()
        except Exception as e:
            self._metrics['primary_failure'] += 1
            entry = self.cache.lookup(key)
            if entry is None:
                raise
            age = time.time() - entry.stored_at
            logger.warning(f"Serving stale '{key}' (age {age:.0f}s) after {type(e).__name__}: {e}")
            return self._served(key, entry, _reason_for(e), error=e)

        self._metrics['primary_success'] += 1
        if cache_result and value is not None:
            self.cache.put(key, value)
        return FallbackResult(value=value)

    def get_metrics(self) -> Dict[str, int]:
        """Get degradation metrics."""
        return dict(self._metrics)


class DegradedResponse:
    """Builder for degraded API payloads."""

    @staticmethod
    def for_api(
        result: FallbackResult,
        retry_after: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Wrap a FallbackResult so the UI can flag stale data."""
        response = {
            "status": "degraded" if result.stale else "ok",
            "data": result.value,
            "stale": result.stale,
        }
        if result.reason:
            response["fallback_reason"] = result.reason.value
            response["stored_at"] = result.stored_at
        if retry_after:
            response["retry_after"] = retry_after
        return response


# Export public API
__all__ = [
    'DegradationManager',
    'FallbackResult',
    'FallbackReason',
    'DegradedResponse',
]
