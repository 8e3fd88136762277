"""
Probe Store
===========
Health probe results and their persistence.

Backends:
- InMemoryProbeStore: Bounded history per service
- RedisProbeStore: Shared history in Redis lists

Persistence is best effort: callers log and carry on when a store fails.
"""

import time
import json
import logging
import threading
from typing import Optional, Dict, Any, List, Deque
from dataclasses import dataclass, field
from collections import defaultdict, deque
from enum import Enum
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)


class ProbeStatus(Enum):
    """Health of a probed service."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    DOWN = "down"
    UNKNOWN = "unknown"   # never probed


@dataclass
class HealthProbeResult:
    """Outcome of one probe against one service."""
    service: str
    status: ProbeStatus
    response_time: Optional[float] = None   # milliseconds
    error_message: Optional[str] = None
    quota_used: Optional[int] = None
    quota_limit: Optional[int] = None
    checked_at: Optional[float] = field(default_factory=time.time)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def quota_percent(self) -> Optional[float]:
        if self.quota_used is None or not self.quota_limit:
            return None
        return self.quota_used / self.quota_limit * 100

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON response."""
        return {
            "service": self.service,
            "status": self.status.value,
            "response_time": self.response_time,
            "error_message": self.error_message,
            "quota_used": self.quota_used,
            "quota_limit": self.quota_limit,
            "checked_at": self.checked_at,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HealthProbeResult":
        return cls(
            service=data["service"],
            status=ProbeStatus(data.get("status", "unknown")),
            response_time=data.get("response_time"),
            error_message=data.get("error_message"),
            quota_used=data.get("quota_used"),
            quota_limit=data.get("quota_limit"),
            checked_at=data.get("checked_at"),
            metadata=data.get("metadata") or {},
        )

    @classmethod
    def unknown(cls, service: str) -> "HealthProbeResult":
        return cls(
            service=service,
            status=ProbeStatus.UNKNOWN,
            error_message="No health data available",
            checked_at=None,
        )


class ProbeStore(ABC):
    """Abstract probe history backend."""

    @abstractmethod
    async def save(self, result: HealthProbeResult) -> None:
        """Persist one result."""
        pass

    @abstractmethod
    async def latest(self, service: str) -> Optional[HealthProbeResult]:
        """Most recent stored result for ``service``."""
        pass

    @abstractmethod
    async def history(self, service: str, limit: int = 50) -> List[HealthProbeResult]:
        """Recent results for ``service``, newest first."""
        pass


class InMemoryProbeStore(ProbeStore):
    """
    In-memory probe history with a per-service bound.

    Suitable for single-instance deployments.
    """

    def __init__(self, max_per_service: int = 100):
        self.max_per_service = max_per_service
        self._history: Dict[str, Deque[HealthProbeResult]] = defaultdict(
            lambda: deque(maxlen=self.max_per_service)
        )
        self._lock = threading.Lock()

    async def save(self, result: HealthProbeResult) -> None:
        with self._lock:
            self._history[result.service].appendleft(result)

    async def latest(self, service: str) -> Optional[HealthProbeResult]:
        with self._lock:
            entries = self._history.get(service)
            return entries[0] if entries else None

    async def history(self, service: str, limit: int = 50) -> List[HealthProbeResult]:
        with self._lock:
            return list(self._history.get(service, ()))[:limit]


class RedisProbeStore(ProbeStore):
    """
    Redis probe history for multi-instance deployments.

    Each service is a capped list at ``<prefix>:<service>``, newest first.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        prefix: str = "health_probe",
        max_per_service: int = 100,
        client: Any = None,
    ):
        """
        Initialize Redis store.

        Args:
            redis_url: Redis connection URL
            prefix: Key prefix
            max_per_service: History length kept per service
            client: Pre-built redis.asyncio client
        """
        self.redis_url = redis_url
        self.prefix = prefix
        self.max_per_service = max_per_service
        self._client = client

    async def _get_client(self):
        """Lazy initialize Redis client."""
        if self._client is None:
            import redis.asyncio as redis
            self._client = redis.from_url(self.redis_url)
        return self._client

    def _make_key(self, service: str) -> str:
        return f"{self.prefix}:{service}"

    async def save(self, result: HealthProbeResult) -> None:
        client = await self._get_client()
        key = self._make_key(result.service)
        await client.lpush(key, json.dumps(result.to_dict()))
        await client.ltrim(key, 0, self.max_per_service - 1)

    async def latest(self, service: str) -> Optional[HealthProbeResult]:
        client = await self._get_client()
        raw = await client.lindex(self._make_key(service), 0)
        if raw is None:
            return None
        return HealthProbeResult.from_dict(json.loads(raw))

    async def history(self, service: str, limit: int = 50) -> List[HealthProbeResult]:
        client = await self._get_client()
        raw_items = await client.lrange(self._make_key(service), 0, limit - 1)
        return [HealthProbeResult.from_dict(json.loads(raw)) for raw in raw_items]

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def create_probe_store(backend: str = "memory", redis_url: str = "redis://localhost:6379") -> ProbeStore:
    """Build a probe store by backend name ("memory" or "redis")."""
    if backend == "redis":
        return RedisProbeStore(redis_url=redis_url)
    return InMemoryProbeStore()


# Export public API
__all__ = [
    'ProbeStatus',
    'HealthProbeResult',
    'ProbeStore',
    'InMemoryProbeStore',
    'RedisProbeStore',
    'create_probe_store',
]
