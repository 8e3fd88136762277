"""
Resilient Ops - Core Module
===========================
Resilience layer for calls to remote backends and third-party APIs.

Modules:
- reliability: Error taxonomy, retry, circuit breakers, fallbacks, health monitors
- memory: Fallback cache for last known good reads
- observability: Resilience events, probe history, alerting, service catalogue
"""

from . import observability
from . import memory
from . import reliability

__version__ = "1.0.0"

__all__ = [
    'reliability',
    'memory',
    'observability',
]
