"""
Errors
======
Failure taxonomy and classification for remote operations.

Categories:
- TRANSIENT_NETWORK: Connection reset/refused/unreachable
- TIMEOUT: Attempt exceeded its budget
- RATE_LIMITED: Server asked us to back off (429)
- SERVER_FAULT: 5xx responses
- PERMANENT: Auth, validation, not-found and other 4xx

Only the first four are retried.
"""

import asyncio
import errno
import socket
import time
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, Optional

import httpx


class ResilienceError(Exception):
    """Base class for errors raised by the resilience layer."""
    pass


class TransientNetworkError(ResilienceError):
    """Connection-level failure talking to the backend."""

    def __init__(self, message: str, original: Optional[BaseException] = None):
        super().__init__(message)
        self.original = original


class OperationTimeoutError(ResilienceError, TimeoutError):
    """A single attempt exceeded its time budget."""

    def __init__(self, message: str, timeout: Optional[float] = None):
        super().__init__(message)
        self.timeout = timeout


class RateLimitedError(ResilienceError):
    """Backend signalled rate limiting, optionally with an explicit delay."""

    status_code = 429

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class ServerFaultError(ResilienceError):
    """Backend returned a 5xx response."""

    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message)
        self.status_code = status_code


class PermanentClientError(ResilienceError):
    """Request will not succeed on retry (4xx, validation, auth, not-found)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class CircuitOpenError(ResilienceError):
    """Raised when circuit is open and request is rejected."""

    def __init__(self, message: str, circuit_name: Optional[str] = None):
        super().__init__(message)
        self.circuit_name = circuit_name


class ErrorCategory(Enum):
    """Classification of a failure."""
    TRANSIENT_NETWORK = "transient_network"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    SERVER_FAULT = "server_fault"
    PERMANENT = "permanent"
    CIRCUIT_OPEN = "circuit_open"


RETRYABLE_CATEGORIES = frozenset({
    ErrorCategory.TRANSIENT_NETWORK,
    ErrorCategory.TIMEOUT,
    ErrorCategory.RATE_LIMITED,
    ErrorCategory.SERVER_FAULT,
})

# Node-style error codes some client libraries attach as `error.code`
RETRYABLE_ERROR_CODES = frozenset({
    "ECONNRESET",
    "ETIMEDOUT",
    "ECONNREFUSED",
    "ENOTFOUND",
    "EPIPE",
    "EHOSTUNREACH",
})

RETRYABLE_ERRNOS = frozenset({
    errno.ECONNRESET,
    errno.ECONNREFUSED,
    errno.ECONNABORTED,
    errno.ETIMEDOUT,
    errno.EHOSTUNREACH,
    errno.ENETUNREACH,
    errno.EPIPE,
})

RETRYABLE_MESSAGE_PATTERNS = (
    "timeout",
    "timed out",
    "network",
    "connection",
    "econnreset",
    "socket hang up",
    "service unavailable",
    "internal server error",
    "bad gateway",
    "gateway timeout",
)


def get_status_code(error: BaseException) -> Optional[int]:
    """Extract an HTTP status code from an error, if it carries one."""
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value

    response = getattr(error, "response", None)
    if response is not None:
        value = getattr(response, "status_code", None)
        if isinstance(value, int):
            return value
    return None


def _is_transport_error(error: BaseException) -> bool:
    if isinstance(error, (httpx.TransportError, ConnectionError, socket.gaierror)):
        return True
    if isinstance(error, OSError) and error.errno in RETRYABLE_ERRNOS:
        return True
    code = getattr(error, "code", None)
    return isinstance(code, str) and code.upper() in RETRYABLE_ERROR_CODES


def classify(error: BaseException) -> ErrorCategory:
    """
    Map an arbitrary exception onto the failure taxonomy.

    Local taxonomy types win, then transport-level errors, then HTTP status,
    then message text. Anything unrecognised is PERMANENT.
    """
    if isinstance(error, CircuitOpenError):
        return ErrorCategory.CIRCUIT_OPEN
    if isinstance(error, RateLimitedError):
        return ErrorCategory.RATE_LIMITED
    if isinstance(error, (OperationTimeoutError, asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
        return ErrorCategory.TIMEOUT
    if isinstance(error, TransientNetworkError):
        return ErrorCategory.TRANSIENT_NETWORK
    if isinstance(error, ServerFaultError):
        return ErrorCategory.SERVER_FAULT
    if isinstance(error, PermanentClientError):
        return ErrorCategory.PERMANENT

    if _is_transport_error(error):
        return ErrorCategory.TRANSIENT_NETWORK

    status = get_status_code(error)
    if status is not None:
        if status == 429:
            return ErrorCategory.RATE_LIMITED
        if status == 408:
            return ErrorCategory.TIMEOUT
        if 500 <= status < 600:
            return ErrorCategory.SERVER_FAULT
        if 400 <= status < 500:
            return ErrorCategory.PERMANENT

    message = str(error).lower()
    if any(pattern in message for pattern in RETRYABLE_MESSAGE_PATTERNS):
        if "timeout" in message or "timed out" in message:
            return ErrorCategory.TIMEOUT
        return ErrorCategory.TRANSIENT_NETWORK

    return ErrorCategory.PERMANENT


def is_retryable(error: BaseException) -> bool:
    """Determine if an error is recoverable and should be retried."""
    return classify(error) in RETRYABLE_CATEGORIES


def is_rate_limited(error: BaseException) -> bool:
    """Check if error signals rate limiting."""
    return classify(error) == ErrorCategory.RATE_LIMITED


def _header_value(headers: Any, name: str) -> Optional[str]:
    if headers is None:
        return None
    try:
        value = headers.get(name)
        if value is None:
            value = headers.get(name.title())
    except AttributeError:
        return None
    if value is None and isinstance(headers, dict):
        lowered = {str(k).lower(): v for k, v in headers.items()}
        value = lowered.get(name)
    return value


def parse_retry_after(value: Any, now: Optional[float] = None) -> Optional[float]:
    """
    Parse a Retry-After value into seconds.

    Numbers are seconds; HTTP-dates are converted to a delay from now.
    Returns None for past dates and unparseable values.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if value >= 0 else None

    text = str(value).strip()
    if not text:
        return None
    try:
        seconds = float(text)
        return seconds if seconds >= 0 else None
    except ValueError:
        pass

    try:
        retry_at = parsedate_to_datetime(text)
    except (TypeError, ValueError, IndexError):
        return None
    if retry_at is None:
        return None

    delay = retry_at.timestamp() - (now if now is not None else time.time())
    return delay if delay > 0 else None


def retry_after(error: BaseException, now: Optional[float] = None) -> Optional[float]:
    """Extract a server-suggested retry delay (seconds) from an error."""
    explicit = parse_retry_after(getattr(error, "retry_after", None), now)
    if explicit is not None:
        return explicit

    header = _header_value(getattr(error, "headers", None), "retry-after")
    if header is None:
        response = getattr(error, "response", None)
        header = _header_value(getattr(response, "headers", None), "retry-after")
    return parse_retry_after(header, now)


__all__ = [
    'ResilienceError',
    'TransientNetworkError',
    'OperationTimeoutError',
    'RateLimitedError',
    'ServerFaultError',
    'PermanentClientError',
    'CircuitOpenError',
    'ErrorCategory',
    'classify',
    'is_retryable',
    'is_rate_limited',
    'get_status_code',
    'parse_retry_after',
    'retry_after',
]
