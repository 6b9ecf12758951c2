"""Dispatcher configuration."""

import os
from dataclasses import dataclass, field
from typing import Callable, Dict, Mapping, Optional, TypeVar

from .admission import AdmissionProfile, DEFAULT_PROFILES, DEFAULT_QUEUE_TIMEOUT, DEFAULT_PRIORITY
from .budget import DEFAULT_TIMEOUT, MIN_REMAINING
from .circuit import CircuitBreakerConfig
from .retry import RetryConfig
from .stores import DEFAULT_KEY_PREFIX

T = TypeVar("T")

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


@dataclass
class DispatcherConfig:
    """Configuration for a provider chain."""

    # Time budget
    timeout: float = DEFAULT_TIMEOUT  # Seconds for a whole dispatch
    min_remaining: float = MIN_REMAINING  # Don't start an attempt with less than this left
    queue_timeout: float = DEFAULT_QUEUE_TIMEOUT  # Max seconds waiting for admission
    priority: int = DEFAULT_PRIORITY
    max_pause: float = 60.0  # Longest admission pause a Retry-After can impose

    # Streaming
    emit_meta: bool = False  # Send a meta chunk with provider/model before output

    # Resilience
    retry: RetryConfig = field(default_factory=RetryConfig)
    circuit: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    profiles: Dict[str, AdmissionProfile] = field(default_factory=lambda: dict(DEFAULT_PROFILES))

    # Shared breaker state
    redis_url: Optional[str] = None
    redis_prefix: str = DEFAULT_KEY_PREFIX
    redis_enabled: bool = False

    def __post_init__(self) -> None:
        if self.timeout <= 0:
            raise ValueError("timeout must be > 0")
        if self.min_remaining < 0:
            raise ValueError("min_remaining must be >= 0")
        if self.queue_timeout <= 0:
            raise ValueError("queue_timeout must be > 0")
        if self.max_pause <= 0:
            raise ValueError("max_pause must be > 0")

    @property
    def use_redis(self) -> bool:
        return bool(self.redis_enabled and self.redis_url)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "DispatcherConfig":
        """
        Build a config from environment variables.

        Unset variables keep their defaults. ``LLM_CIRCUIT_REDIS_ENABLED``
        defaults to true when ``LLM_CIRCUIT_REDIS_URL`` is set.

        Raises:
            ValueError: A variable holds a value of the wrong type
        """
        env = os.environ if environ is None else environ
        defaults = cls()

        redis_url = env.get("LLM_CIRCUIT_REDIS_URL") or None
        retry = RetryConfig(
            max_retries=_read(env, "LLM_DISPATCH_MAX_RETRIES", int, defaults.retry.max_retries),
            base_delay=_read(env, "LLM_DISPATCH_RETRY_BASE_DELAY", float, defaults.retry.base_delay),
            max_delay=defaults.retry.max_delay,
        )
        circuit = CircuitBreakerConfig(
            failure_threshold=_read(
                env, "LLM_CIRCUIT_FAILURE_THRESHOLD", int, defaults.circuit.failure_threshold
            ),
            open_duration=_read(env, "LLM_CIRCUIT_OPEN_DURATION", float, defaults.circuit.open_duration),
        )

        return cls(
            timeout=_read(env, "LLM_DISPATCH_TIMEOUT", float, defaults.timeout),
            min_remaining=_read(env, "LLM_DISPATCH_MIN_REMAINING", float, defaults.min_remaining),
            queue_timeout=_read(env, "LLM_DISPATCH_QUEUE_TIMEOUT", float, defaults.queue_timeout),
            priority=_read(env, "LLM_DISPATCH_PRIORITY", int, defaults.priority),
            max_pause=_read(env, "LLM_DISPATCH_MAX_PAUSE", float, defaults.max_pause),
            retry=retry,
            circuit=circuit,
            redis_url=redis_url,
            redis_prefix=env.get("LLM_CIRCUIT_REDIS_PREFIX") or defaults.redis_prefix,
            redis_enabled=_read_bool(env, "LLM_CIRCUIT_REDIS_ENABLED", bool(redis_url)),
        )


def _read(env: Mapping[str, str], name: str, cast: Callable[[str], T], default: T) -> T:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw.strip())
    except ValueError:
        raise ValueError(f"{name} must be a valid {cast.__name__}, got {raw!r}") from None


def _read_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")
