"""Error taxonomy and failure classification for provider dispatch."""

import asyncio
import math
import re
import time
from dataclasses import dataclass, field, asdict
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Optional, List, Dict, Any

import httpx


class ErrorCategory(Enum):
    """Classification of a dispatch failure."""

    RATE_LIMIT = "rate_limit"
    AUTH_ERROR = "auth_error"
    BAD_REQUEST = "bad_request"
    SERVER_ERROR = "server_error"
    TIMEOUT = "timeout"
    NETWORK_ERROR = "network_error"
    UNKNOWN = "unknown"
    # Raised by the dispatcher itself, never by a provider
    DEADLINE_EXCEEDED = "deadline_exceeded"
    SERVICE_UNAVAILABLE = "service_unavailable"
    QUEUE_FULL = "queue_full"
    QUEUE_TIMEOUT = "queue_timeout"
    CANCELLED = "cancelled"


TRANSIENT_CATEGORIES = frozenset({
    ErrorCategory.RATE_LIMIT,
    ErrorCategory.SERVER_ERROR,
    ErrorCategory.TIMEOUT,
    ErrorCategory.NETWORK_ERROR,
})

BACKPRESSURE_CATEGORIES = frozenset({
    ErrorCategory.QUEUE_FULL,
    ErrorCategory.QUEUE_TIMEOUT,
})

ERROR_CODES: Dict[ErrorCategory, str] = {
    ErrorCategory.RATE_LIMIT: "RATE_LIMIT",
    ErrorCategory.AUTH_ERROR: "AUTH_REQUIRED",
    ErrorCategory.BAD_REQUEST: "INVALID_INPUT",
    ErrorCategory.SERVER_ERROR: "UPSTREAM_ERROR",
    ErrorCategory.TIMEOUT: "UPSTREAM_ERROR",
    ErrorCategory.NETWORK_ERROR: "UPSTREAM_ERROR",
    ErrorCategory.UNKNOWN: "UPSTREAM_ERROR",
    ErrorCategory.DEADLINE_EXCEEDED: "DEADLINE_EXCEEDED",
    ErrorCategory.SERVICE_UNAVAILABLE: "SERVICE_UNAVAILABLE",
    ErrorCategory.QUEUE_FULL: "QUEUE_FULL",
    ErrorCategory.QUEUE_TIMEOUT: "QUEUE_TIMEOUT",
    ErrorCategory.CANCELLED: "CANCELLED",
}

# Message fragments that mean another provider may succeed
FALLBACK_ERROR_PATTERNS = (
    "rate limit",
    "rate_limit",
    "ratelimit",
    "quota",
    "429",
    "too many requests",
    "resource exhausted",
    "resource_exhausted",
    "capacity",
    "overloaded",
    "timeout",
    "timed out",
    "econnreset",
    "econnrefused",
    "socket hang up",
    "network error",
    "connection reset",
    "connection refused",
    "service unavailable",
    "503",
    "502",
    "500",
)

# Message fragments that mean the request itself is at fault; these win
NO_FALLBACK_ERROR_PATTERNS = (
    "invalid api key",
    "invalid_api_key",
    "authentication failed",
    "content policy",
    "safety",
    "blocked",
    "invalid request",
)

MESSAGE_CATEGORY_RULES = (
    (ErrorCategory.RATE_LIMIT, ("rate limit", "rate_limit", "ratelimit", "quota", "429",
                                "too many requests", "resource exhausted", "resource_exhausted",
                                "capacity", "overloaded")),
    (ErrorCategory.AUTH_ERROR, ("invalid api key", "invalid_api_key", "authentication failed",
                                "unauthorized", "forbidden")),
    (ErrorCategory.TIMEOUT, ("timeout", "timed out")),
    (ErrorCategory.NETWORK_ERROR, ("econnreset", "econnrefused", "socket hang up", "network error",
                                   "connection reset", "connection refused")),
    (ErrorCategory.SERVER_ERROR, ("service unavailable", "server error", "internal", "503", "502", "500")),
    (ErrorCategory.BAD_REQUEST, ("bad request", "invalid", "content policy", "safety", "blocked")),
)

_RETRY_AFTER_PATTERNS = (
    re.compile(r"retry\s+(?:after\s+|in\s+)?(\d+(?:\.\d+)?)\s*s(?:ec(?:ond)?s?)?\b", re.IGNORECASE),
    re.compile(r"wait\s+(\d+(?:\.\d+)?)\s*s(?:ec(?:ond)?s?)?\b", re.IGNORECASE),
    re.compile(r"retry after (\d+(?:\.\d+)?)", re.IGNORECASE),
)


class ProviderError(Exception):
    """Base exception for provider errors.

    Adapters raise this (or a subclass) with whatever the vendor told them.
    Setting ``category`` overrides status/message based classification.
    """

    default_category: Optional[ErrorCategory] = None

    def __init__(
        self,
        message: str,
        provider: str,
        status_code: Optional[int] = None,
        response: Optional[Any] = None,
        headers: Optional[Any] = None,
        retry_after: Optional[float] = None,
        category: Optional[ErrorCategory] = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.response = response
        self.headers = headers
        self.retry_after = retry_after
        self.category = category or self.default_category


class AuthenticationError(ProviderError):
    """Raised when authentication fails."""

    default_category = ErrorCategory.AUTH_ERROR


class RateLimitError(ProviderError):
    """Raised when rate limit is hit."""

    default_category = ErrorCategory.RATE_LIMIT


class InvalidRequestError(ProviderError):
    """Raised when request is invalid."""

    default_category = ErrorCategory.BAD_REQUEST


class ServerError(ProviderError):
    """Raised when server returns an error."""

    default_category = ErrorCategory.SERVER_ERROR


class DispatchError(Exception):
    """Base exception raised by the dispatcher itself."""

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(
        self,
        message: str,
        category: Optional[ErrorCategory] = None,
        retry_after: Optional[float] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        if category is not None:
            self.category = category
        self.retry_after = retry_after
        self.cause = cause

    @property
    def code(self) -> str:
        return ERROR_CODES[self.category]

    @property
    def retryable(self) -> bool:
        """Whether the caller may retry the same request later."""
        return self.category in TRANSIENT_CATEGORIES or self.category in BACKPRESSURE_CATEGORIES


class AttemptTimeoutError(DispatchError):
    """One adapter call ran past its share of the budget."""

    category = ErrorCategory.TIMEOUT


class QueueFullError(DispatchError):
    """Admission queue is at its high-water mark."""

    category = ErrorCategory.QUEUE_FULL

    def __init__(self, provider: str, retry_after: float = 5.0):
        super().__init__(
            f"Rate limit queue full for {provider}. Try again in a few seconds.",
            retry_after=retry_after,
        )
        self.provider = provider


class QueueTimeoutError(DispatchError):
    """A queued request was not admitted in time."""

    category = ErrorCategory.QUEUE_TIMEOUT

    def __init__(self, provider: str, waited: float, retry_after: float = 10.0):
        super().__init__(
            f"Request queued too long for {provider} ({waited:.2f}s). Try again later.",
            retry_after=retry_after,
        )
        self.provider = provider
        self.waited = waited


class AdmissionClosedError(DispatchError):
    """The admission controller was stopped while a request waited."""

    category = ErrorCategory.SERVICE_UNAVAILABLE


@dataclass
class AttemptRecord:
    """What happened to one provider during a dispatch call."""

    provider: str
    error_message: Optional[str] = None
    fallback_eligible: bool = False
    abort_like: bool = False  # Cancellation or deadline, never retried
    circuit_open: bool = False
    category: Optional[str] = None
    success: bool = False
    tries: int = 0
    model: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ChainError(DispatchError):
    """Terminal failure of a whole dispatch call.

    Carries every provider attempt so the failure can be debugged without
    correlating logs.
    """

    def __init__(
        self,
        message: str,
        category: Optional[ErrorCategory] = None,
        attempts: Optional[List[AttemptRecord]] = None,
        elapsed: float = 0.0,
        cause: Optional[BaseException] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, category=category, retry_after=retry_after, cause=cause)
        self.attempts: List[AttemptRecord] = list(attempts or [])
        self.elapsed = elapsed

    @property
    def attempted_providers(self) -> List[str]:
        return [attempt.provider for attempt in self.attempts]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "category": self.category.value,
            "message": str(self),
            "retryable": self.retryable,
            "retry_after": self.retry_after,
            "elapsed": round(self.elapsed, 3),
            "attempts": [attempt.to_dict() for attempt in self.attempts],
        }


class DeadlineExceededError(ChainError):
    """The dispatch's own time budget ran out."""

    category = ErrorCategory.DEADLINE_EXCEEDED

    def __init__(self, timeout: Optional[float] = None, **kwargs: Any):
        suffix = f" after {timeout:g}s" if timeout is not None else ""
        super().__init__(f"LLM request deadline exceeded{suffix}", **kwargs)
        self.timeout = timeout


class DispatchCancelledError(ChainError):
    """The caller cancelled the dispatch."""

    category = ErrorCategory.CANCELLED

    def __init__(self, reason: Optional[Any] = None, **kwargs: Any):
        detail = f": {reason}" if reason is not None else ""
        super().__init__(f"LLM request cancelled{detail}", **kwargs)
        self.reason = reason


class ServiceUnavailableError(ChainError):
    """Every configured provider is unavailable or exhausted."""

    category = ErrorCategory.SERVICE_UNAVAILABLE


@dataclass(frozen=True)
class Classification:
    """Verdict of :func:`classify`."""

    category: ErrorCategory
    fallback_eligible: bool
    status_code: Optional[int] = None
    matched: List[str] = field(default_factory=list, compare=False)


def get_status_code(error: BaseException) -> Optional[int]:
    """Find an HTTP-like status code on an error or its direct cause."""
    for candidate in (error, error.__cause__):
        if candidate is None:
            continue
        for attr in ("status_code", "status"):
            value = getattr(candidate, attr, None)
            if isinstance(value, int):
                return value
        response = getattr(candidate, "response", None)
        value = getattr(response, "status_code", None)
        if isinstance(value, int):
            return value
    return None


def categorize_message(message: str) -> ErrorCategory:
    """Best-effort category from an error message."""
    lowered = message.lower()
    for category, patterns in MESSAGE_CATEGORY_RULES:
        if any(pattern in lowered for pattern in patterns):
            return category
    return ErrorCategory.UNKNOWN


def classify(error: BaseException) -> Classification:
    """
    Map a raw failure to a category and a fallback verdict.

    Status codes are checked before exception types, and exception types
    before message text. Unrecognized errors are not fallback-eligible.

    Args:
        error: Exception raised by an adapter or by the dispatcher

    Returns:
        Classification of the error
    """
    if isinstance(error, DispatchError):
        eligible = error.category in TRANSIENT_CATEGORIES or error.category in BACKPRESSURE_CATEGORIES
        return Classification(error.category, eligible)

    status = get_status_code(error)

    if isinstance(error, ProviderError) and error.category is not None:
        return Classification(error.category, error.category in TRANSIENT_CATEGORIES, status)

    if status is not None:
        if status == 400:
            return Classification(ErrorCategory.BAD_REQUEST, False, status)
        if status in (401, 403):
            return Classification(ErrorCategory.AUTH_ERROR, False, status)
        if status == 429:
            return Classification(ErrorCategory.RATE_LIMIT, True, status)
        if status >= 500:
            return Classification(ErrorCategory.SERVER_ERROR, True, status)

    if isinstance(error, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return Classification(ErrorCategory.TIMEOUT, True, status)
    if isinstance(error, (httpx.TransportError, ConnectionError)):
        return Classification(ErrorCategory.NETWORK_ERROR, True, status)

    message = str(error).lower()

    blocked = [pattern for pattern in NO_FALLBACK_ERROR_PATTERNS if pattern in message]
    if blocked:
        category = categorize_message(message)
        if category in TRANSIENT_CATEGORIES or category is ErrorCategory.UNKNOWN:
            category = ErrorCategory.BAD_REQUEST
        return Classification(category, False, status, blocked)

    matched = [pattern for pattern in FALLBACK_ERROR_PATTERNS if pattern in message]
    if matched:
        category = categorize_message(message)
        if category not in TRANSIENT_CATEGORIES:
            category = ErrorCategory.UNKNOWN
        return Classification(category, True, status, matched)

    return Classification(categorize_message(message), False, status)


def counts_against_breaker(classification: Classification) -> bool:
    """Whether a failure is evidence that the provider is unhealthy."""
    if classification.category in BACKPRESSURE_CATEGORIES:
        return False
    return classification.category in TRANSIENT_CATEGORIES or classification.fallback_eligible


def error_code(category: ErrorCategory) -> str:
    return ERROR_CODES[category]


def _header(headers: Any, name: str) -> Optional[str]:
    if headers is None:
        return None
    getter = getattr(headers, "get", None)
    if getter is None:
        return None
    # httpx.Headers is case-insensitive; plain dicts are not
    return getter(name) or getter(name.lower())


def _parse_retry_after_header(value: str) -> Optional[float]:
    value = value.strip()
    try:
        seconds = float(value)
    except ValueError:
        pass
    else:
        return seconds if 0 < seconds and math.isfinite(seconds) else None

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if when is None:
        return None
    wait = when.timestamp() - time.time()
    return wait if wait > 0 else None


def parse_retry_after(error: BaseException) -> Optional[float]:
    """
    Extract a suggested cooldown, in seconds, from a rate-limit error.

    Checks an explicit ``retry_after`` attribute, then a ``Retry-After``
    header (delta-seconds or HTTP-date), then common message phrasing.

    Args:
        error: The failure to inspect

    Returns:
        Seconds to wait, or None if nothing usable was found
    """
    explicit = getattr(error, "retry_after", None)
    if isinstance(explicit, (int, float)) and 0 < explicit and math.isfinite(explicit):
        return float(explicit)

    response = getattr(error, "response", None)
    for headers in (getattr(error, "headers", None), getattr(response, "headers", None)):
        value = _header(headers, "Retry-After")
        if value:
            parsed = _parse_retry_after_header(str(value))
            if parsed is not None:
                return parsed

    message = str(error)
    for pattern in _RETRY_AFTER_PATTERNS:
        match = pattern.search(message)
        if match:
            seconds = float(match.group(1))
            if seconds > 0:
                return seconds

    return None
