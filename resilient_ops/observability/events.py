"""
Events
======
Structured event emission for the resilience layer.

Components emit ResilienceEvent records through an injected EventObserver
instead of printing, so logging, metrics and tracing can be attached
without touching the core.

Observers:
- LoggingObserver: One log line per event
- MetricsObserver: In-memory counters and latency totals
- CompositeObserver: Fan-out to several observers
"""

import time
import logging
import threading
from typing import Optional, Dict, Any, List, Tuple
from dataclasses import dataclass, field
from collections import defaultdict
from enum import Enum
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)


class EventKind(Enum):
    """Kinds of resilience events."""
    RETRY = "retry"
    OPERATION_SUCCEEDED = "operation_succeeded"
    OPERATION_FAILED = "operation_failed"
    CIRCUIT_STATE_CHANGE = "circuit_state_change"
    FALLBACK_SERVED = "fallback_served"
    BACKEND_HEALTH_CHANGED = "backend_health_changed"
    PROBE_COMPLETED = "probe_completed"
    ALERT_TRIGGERED = "alert_triggered"


@dataclass
class ResilienceEvent:
    """One structured event."""
    kind: EventKind
    operation: str
    backend: Optional[str] = None
    attempt: Optional[int] = None
    outcome: Optional[str] = None
    latency_ms: Optional[float] = None
    delay: Optional[float] = None
    error: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, dropping empty fields."""
        data = {
            "kind": self.kind.value,
            "operation": self.operation,
            "backend": self.backend,
            "attempt": self.attempt,
            "outcome": self.outcome,
            "latency_ms": self.latency_ms,
            "delay": self.delay,
            "error": self.error,
            "timestamp": self.timestamp,
        }
        return {k: v for k, v in data.items() if v is not None}


class EventObserver(ABC):
    """Receives resilience events. Implementations must not raise."""

    @abstractmethod
    def emit(self, event: ResilienceEvent) -> None:
        """Handle one event."""
        pass


class LoggingObserver(EventObserver):
    """
    Writes every event as a structured log line.

    Failures and fallbacks log at WARNING, everything else at INFO
    (retries at DEBUG).
    """

    WARNING_KINDS = {
        EventKind.OPERATION_FAILED,
        EventKind.FALLBACK_SERVED,
        EventKind.ALERT_TRIGGERED,
    }

    def __init__(self, log: Optional[logging.Logger] = None):
        self._log = log or logger

    def emit(self, event: ResilienceEvent) -> None:
        if event.kind in self.WARNING_KINDS:
            level = logging.WARNING
        elif event.kind == EventKind.RETRY:
            level = logging.DEBUG
        else:
            level = logging.INFO
        self._log.log(level, f"{event.kind.value} [{event.operation}] {event.to_dict()}")


class MetricsObserver(EventObserver):
    """
    Counts events per (kind, operation) and accumulates latencies.

    Example:
        metrics = MetricsObserver()
        op = make_resilient_operation("get_user", fetch, observer=metrics)
        await op()
        metrics.count(EventKind.OPERATION_SUCCEEDED, "get_user")  # 1
    """

    def __init__(self):
        self._counts: Dict[Tuple[str, str], int] = defaultdict(int)
        self._latency_totals: Dict[str, float] = defaultdict(float)
        self._latency_samples: Dict[str, int] = defaultdict(int)
        self._lock = threading.Lock()

    def emit(self, event: ResilienceEvent) -> None:
        with self._lock:
            self._counts[(event.kind.value, event.operation)] += 1
            if event.latency_ms is not None:
                self._latency_totals[event.operation] += event.latency_ms
                self._latency_samples[event.operation] += 1

    def count(self, kind: EventKind, operation: Optional[str] = None) -> int:
        """Number of events of ``kind``, optionally for one operation."""
        with self._lock:
            if operation is not None:
                return self._counts.get((kind.value, operation), 0)
            return sum(v for (k, _), v in self._counts.items() if k == kind.value)

    def average_latency_ms(self, operation: str) -> Optional[float]:
        with self._lock:
            samples = self._latency_samples.get(operation, 0)
            if not samples:
                return None
            return self._latency_totals[operation] / samples

    def snapshot(self) -> Dict[str, Dict[str, int]]:
        """Counters grouped by operation, for a metrics endpoint."""
        with self._lock:
            grouped: Dict[str, Dict[str, int]] = defaultdict(dict)
            for (kind, operation), value in self._counts.items():
                grouped[operation][kind] = value
            return dict(grouped)


class CompositeObserver(EventObserver):
    """Fans one event out to several observers, isolating their failures."""

    def __init__(self, observers: Optional[List[EventObserver]] = None):
        self._observers: List[EventObserver] = list(observers or [])

    def add(self, observer: EventObserver):
        self._observers.append(observer)

    def emit(self, event: ResilienceEvent) -> None:
        for observer in self._observers:
            try:
                observer.emit(event)
            except Exception as e:
                logger.error(f"Observer {type(observer).__name__} error: {e}")


def emit_safely(observer: Optional[EventObserver], event: ResilienceEvent) -> None:
    """Emit to an optional observer without letting it break the caller."""
    if observer is None:
        return
    try:
        observer.emit(event)
    except Exception as e:
        logger.error(f"Observer error: {e}")


# Export public API
__all__ = [
    'EventKind',
    'ResilienceEvent',
    'EventObserver',
    'LoggingObserver',
    'MetricsObserver',
    'CompositeObserver',
    'emit_safely',
]
