"""
Response Times
==============
Tracks the last N request latencies for the metrics endpoint.
"""

import time
import threading
from typing import Dict, Any, List, Deque
from dataclasses import dataclass, field
from collections import defaultdict, deque


@dataclass
class RequestMetric:
    method: str
    path: str
    status_code: int
    response_time: float  # ms
    timestamp: float = field(default_factory=time.time)


def percentile(sorted_values: List[float], pct: float) -> float:
    """Nearest-rank percentile of an ascending list."""
    if not sorted_values:
        return 0.0
    rank = max(1, int(-(-pct * len(sorted_values) // 100)))
    return sorted_values[min(rank, len(sorted_values)) - 1]


class ResponseTimeTracker:
    """
    Rolling window of request metrics plus lifetime totals.

    Example:
        tracker = ResponseTimeTracker(max_metrics=100)
        tracker.record("GET", "/health/backend", 200, 12.5)
        tracker.get_stats()["p95"]
    """

    def __init__(self, max_metrics: int = 100):
        self.max_metrics = max_metrics
        self._metrics: Deque[RequestMetric] = deque(maxlen=max_metrics)
        self._total_requests = 0
        self._total_response_time = 0.0
        self._start_time = time.time()
        self._lock = threading.Lock()

    def record(self, method: str, path: str, status_code: int, response_time: float):
        with self._lock:
            self._metrics.append(RequestMetric(method, path, status_code, response_time))
            self._total_requests += 1
            self._total_response_time += response_time

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            recent = list(self._metrics)
            total_requests = self._total_requests
            total_time = self._total_response_time

        times = sorted(m.response_time for m in recent)
        by_path: Dict[str, List[float]] = defaultdict(list)
        for m in recent:
            by_path[m.path].append(m.response_time)
        slowest = sorted(
            ({"path": p, "avg_time": sum(v) / len(v)} for p, v in by_path.items()),
            key=lambda item: item["avg_time"],
            reverse=True,
        )[:5]
        errors = sum(1 for m in recent if m.status_code >= 500)

        return {
            "total_requests": total_requests,
            "recent_requests": len(recent),
            "avg_response_time": total_time / total_requests if total_requests else 0.0,
            "recent_avg_response_time": sum(times) / len(times) if times else 0.0,
            "p50": percentile(times, 50),
            "p95": percentile(times, 95),
            "p99": percentile(times, 99),
            "slowest_endpoints": slowest,
            "error_rate": errors / len(recent) * 100 if recent else 0.0,
            "uptime": time.time() - self._start_time,
        }


__all__ = [
    'RequestMetric',
    'ResponseTimeTracker',
    'percentile',
]
