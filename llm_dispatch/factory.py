"""Wire a provider chain from configuration."""

import logging
from typing import Optional, Sequence

from .admission import AdmissionController, UsageSink
from .chain import ProviderChain, Sleep
from .circuit import CircuitBreaker
from .config import DispatcherConfig
from .providers.base import BaseAdapter
from .stores import BreakerStore, InMemoryBreakerStore, RedisBreakerStore

logger = logging.getLogger(__name__)


def create_store(config: DispatcherConfig) -> BreakerStore:
    """Redis store when enabled in ``config``, otherwise an in-memory one."""
    if config.use_redis:
        logger.info("Using Redis circuit breaker store", extra={"prefix": config.redis_prefix})
        return RedisBreakerStore.from_url(config.redis_url, key_prefix=config.redis_prefix)
    return InMemoryBreakerStore()


def create_chain(
    adapters: Sequence[BaseAdapter],
    config: Optional[DispatcherConfig] = None,
    *,
    store: Optional[BreakerStore] = None,
    usage_sink: Optional[UsageSink] = None,
    sleep: Optional[Sleep] = None,
) -> ProviderChain:
    """
    Build a provider chain and its collaborators.

    Call once at startup and share the result; ``await chain.close()`` on
    shutdown.

    Args:
        adapters: Adapters in priority order, first is primary
        config: Dispatcher configuration (defaults to ``DispatcherConfig.from_env()``)
        store: Breaker store override; built from ``config`` when omitted
        usage_sink: Called with (provider, model, usage) after each success
        sleep: Backoff sleep override, for tests

    Returns:
        Configured ProviderChain
    """
    if config is None:
        config = DispatcherConfig.from_env()

    admission = AdmissionController(config.profiles, usage_sink=usage_sink)
    breaker = CircuitBreaker(config.circuit, store=store if store is not None else create_store(config))
    return ProviderChain(
        adapters,
        admission=admission,
        breaker=breaker,
        retry_config=config.retry,
        config=config,
        sleep=sleep,
    )
