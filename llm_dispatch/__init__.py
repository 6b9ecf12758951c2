"""
llm-dispatch - Resilient dispatch of LLM requests across an ordered provider list.

This package puts a single entry point in front of several LLM providers with:
- One end-to-end time budget shared by every provider and retry
- Per-provider token bucket admission with a bounded priority queue
- Per-provider circuit breakers, optionally shared through Redis
- Error classification deciding between retry, fallback and abort
- Buffered and streaming dispatch

Basic usage:
    from llm_dispatch import create_chain, DispatchOptions, Message

    chain = create_chain([PrimaryAdapter(), SecondaryAdapter()])
    result = await chain.dispatch([Message.user("Hello")])
    print(result.content, result.provider)

Streaming:
    async for chunk in chain.dispatch_stream([Message.user("Hello")]):
        if chunk.type == "delta":
            print(chunk.content, end="")

With configuration:
    from llm_dispatch import DispatcherConfig, RetryConfig

    config = DispatcherConfig(timeout=20.0, retry=RetryConfig(max_retries=2))
    chain = create_chain(adapters, config)
"""

__version__ = "0.1.0"

# Provider chain
from .chain import (
    ProviderChain,
    DispatchResult,
    FallbackReason,
)
from .factory import create_chain, create_store
from .config import DispatcherConfig

# Budget
from .budget import (
    CancelSignal,
    RequestBudget,
    DEFAULT_TIMEOUT,
    MIN_REMAINING,
)

# Retry module
from .retry import RetryConfig, RetryState

# Admission
from .admission import (
    AdmissionController,
    AdmissionProfile,
    ProviderLimiter,
    DEFAULT_PROFILES,
)

# Circuit breaker module
from .circuit import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
    CircuitRecord,
    CircuitDecision,
    FailureOutcome,
)
from .stores import BreakerStore, InMemoryBreakerStore, RedisBreakerStore

# Errors
from .errors import (
    ErrorCategory,
    Classification,
    classify,
    parse_retry_after,
    counts_against_breaker,
    DispatchError,
    AttemptTimeoutError,
    QueueFullError,
    QueueTimeoutError,
    AdmissionClosedError,
    AttemptRecord,
    ChainError,
    DeadlineExceededError,
    DispatchCancelledError,
    ServiceUnavailableError,
)

# Provider base classes
from .providers.base import (
    BaseAdapter,
    AdapterConfig,
    CompletionResult,
    DispatchOptions,
    Message,
    StreamChunk,
    ProviderError,
    AuthenticationError,
    RateLimitError,
    InvalidRequestError,
    ServerError,
)

__all__ = [
    # Version
    "__version__",
    # Provider chain
    "ProviderChain",
    "DispatchResult",
    "FallbackReason",
    "create_chain",
    "create_store",
    "DispatcherConfig",
    # Budget
    "CancelSignal",
    "RequestBudget",
    "DEFAULT_TIMEOUT",
    "MIN_REMAINING",
    # Retry
    "RetryConfig",
    "RetryState",
    # Admission
    "AdmissionController",
    "AdmissionProfile",
    "ProviderLimiter",
    "DEFAULT_PROFILES",
    # Circuit breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitState",
    "CircuitRecord",
    "CircuitDecision",
    "FailureOutcome",
    "BreakerStore",
    "InMemoryBreakerStore",
    "RedisBreakerStore",
    # Errors
    "ErrorCategory",
    "Classification",
    "classify",
    "parse_retry_after",
    "counts_against_breaker",
    "DispatchError",
    "AttemptTimeoutError",
    "QueueFullError",
    "QueueTimeoutError",
    "AdmissionClosedError",
    "AttemptRecord",
    "ChainError",
    "DeadlineExceededError",
    "DispatchCancelledError",
    "ServiceUnavailableError",
    # Provider base
    "BaseAdapter",
    "AdapterConfig",
    "CompletionResult",
    "DispatchOptions",
    "Message",
    "StreamChunk",
    "ProviderError",
    "AuthenticationError",
    "RateLimitError",
    "InvalidRequestError",
    "ServerError",
]
