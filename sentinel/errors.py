"""Bot error taxonomy and failure classification.

``is_critical_error`` decides whether a per-pair failure means the exchange
session itself is unusable (counts toward the circuit breaker) or is a
transient/data problem (logged and skipped).
"""
import asyncio
import re
from typing import Optional

from .exchange import (
    AuthenticationError,
    ExchangeConnectionError,
    ExchangeTimeoutError,
    PermissionDeniedError,
    RateLimitError,
)


class SentinelError(Exception):
    """Base class for bot engine errors."""


class ConfigurationError(SentinelError):
    """Missing credentials or malformed bot configuration."""


class StartupError(SentinelError):
    """Credential validation failed during start()."""


class InvalidCredentialsError(StartupError):
    pass


class InsufficientPermissionsError(StartupError):
    pass


class ValidationError(StartupError):
    """Credential check failed for a reason other than auth or permissions."""


class AlreadyRunningError(SentinelError):
    pass


class DuplicateBotError(SentinelError):
    pass


class TradeExecutionError(SentinelError):
    """Order placement failed. The exchange error is chained as ``__cause__``."""

    def __init__(self, message: str, signal=None):
        super().__init__(message)
        self.signal = signal


CRITICAL_STATUSES = frozenset({401, 403, 429})

_CRITICAL_TYPES = (
    AuthenticationError,
    PermissionDeniedError,
    RateLimitError,
    ExchangeConnectionError,
    ExchangeTimeoutError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)

# Fallback for clients that don't raise the ExchangeError hierarchy
_CRITICAL_STATUS_IN_MESSAGE = re.compile(r"(?<![\w.])(401|403|429)(?![\w.])")
_CRITICAL_MARKERS = (
    "unauthorized",
    "forbidden",
    "rate limit",
    "too many requests",
    "econnrefused",
    "connection refused",
    "etimedout",
    "timed out",
    "timeout",
)


def _is_critical_single(exc: BaseException) -> bool:
    if isinstance(exc, _CRITICAL_TYPES):
        return True
    status: Optional[int] = getattr(exc, "status", None)
    if status is not None:
        return status in CRITICAL_STATUSES
    message = str(exc).lower()
    if _CRITICAL_STATUS_IN_MESSAGE.search(message):
        return True
    return any(marker in message for marker in _CRITICAL_MARKERS)


def is_critical_error(exc: BaseException) -> bool:
    """Return True if ``exc`` (or anything in its cause chain) is critical.

    Critical: authentication rejected, forbidden, rate limited, connection
    refused, timed out.
    """
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if not isinstance(current, SentinelError) and _is_critical_single(current):
            return True
        current = current.__cause__
    return False
