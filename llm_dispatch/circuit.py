"""Circuit breaker pattern for provider fault tolerance."""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional

from .stores import BreakerStore, InMemoryBreakerStore

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation, requests pass through
    OPEN = "open"  # Circuit tripped, requests fail fast
    HALF_OPEN = "half_open"  # Testing if provider recovered


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""

    failure_threshold: int = 3  # Consecutive failures before opening
    open_duration: float = 30.0  # Seconds before trying half-open
    half_open_max_attempts: int = 1  # Probes allowed while half-open

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.open_duration < 0:
            raise ValueError("open_duration must be >= 0")
        if self.half_open_max_attempts < 1:
            raise ValueError("half_open_max_attempts must be >= 1")


@dataclass
class CircuitRecord:
    """Breaker state for one provider."""

    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    opened_at: Optional[float] = None
    half_open_probes: int = 0
    probed_at: Optional[float] = None  # When the last probe was granted

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "opened_at": self.opened_at,
            "half_open_probes": self.half_open_probes,
            "probed_at": self.probed_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CircuitRecord":
        return cls(
            state=CircuitState(data.get("state", CircuitState.CLOSED.value)),
            consecutive_failures=int(data.get("consecutive_failures", 0)),
            opened_at=data.get("opened_at"),
            half_open_probes=int(data.get("half_open_probes", 0)),
            probed_at=data.get("probed_at"),
        )


@dataclass(frozen=True)
class CircuitDecision:
    """Answer of :meth:`CircuitBreaker.can_request`."""

    allowed: bool
    state: CircuitState
    retry_after: float = 0.0  # Seconds until the provider may be tried again


@dataclass(frozen=True)
class FailureOutcome:
    """Result of :meth:`CircuitBreaker.record_failure`."""

    state: CircuitState
    failures: int
    opened: bool  # This failure moved the circuit to open


class CircuitBreaker:
    """
    Per-provider circuit breaker.

    States:
    - CLOSED: Normal operation. Failures increment counter.
    - OPEN: All requests fail fast until ``open_duration`` has passed.
    - HALF_OPEN: Limited probes allowed to test recovery.

    The open-to-half-open transition is lazy: it happens inside
    :meth:`can_request` once the open duration has elapsed. Records live in a
    :class:`BreakerStore`, so several processes can share them. Store errors
    never block traffic; the breaker logs them and allows the request.
    """

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        *,
        store: Optional[BreakerStore] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or CircuitBreakerConfig()
        self.store: BreakerStore = store if store is not None else InMemoryBreakerStore()
        self._clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, provider: str) -> asyncio.Lock:
        lock = self._locks.get(provider)
        if lock is None:
            lock = self._locks[provider] = asyncio.Lock()
        return lock

    async def _load(self, provider: str) -> CircuitRecord:
        data = await self.store.get(provider)
        if not data:
            return CircuitRecord()
        return CircuitRecord.from_dict(data)

    async def _save(self, provider: str, record: CircuitRecord) -> None:
        await self.store.set(provider, record.to_dict())

    def _remaining_open(self, record: CircuitRecord) -> float:
        if record.opened_at is None:
            return 0.0
        elapsed = self._clock() - record.opened_at
        return max(0.0, self.config.open_duration - elapsed)

    def _probe_stale_in(self, record: CircuitRecord) -> float:
        """Seconds until outstanding probes count as abandoned."""
        started = record.probed_at if record.probed_at is not None else record.opened_at
        if started is None:
            return 0.0
        return max(0.0, self.config.open_duration - (self._clock() - started))

    async def can_request(self, provider: str) -> CircuitDecision:
        """
        Check whether a request to ``provider`` may go ahead.

        An allowed half-open answer consumes one probe slot. Callers must follow
        it with :meth:`record_success`, :meth:`record_failure` or
        :meth:`release_probe`.
        """
        async with self._lock(provider):
            try:
                record = await self._load(provider)

                if record.state == CircuitState.OPEN:
                    remaining = self._remaining_open(record)
                    if remaining > 0:
                        return CircuitDecision(False, CircuitState.OPEN, remaining)
                    record.state = CircuitState.HALF_OPEN
                    record.half_open_probes = 0
                    logger.info(f"Circuit half-open for {provider}", extra={"provider": provider})

                if record.state == CircuitState.HALF_OPEN:
                    if record.half_open_probes >= self.config.half_open_max_attempts:
                        stale_in = self._probe_stale_in(record)
                        if stale_in > 0:
                            await self._save(provider, record)
                            return CircuitDecision(False, CircuitState.HALF_OPEN, stale_in)
                        # Probe holders never reported back; hand out a fresh one
                        logger.warning(
                            f"Half-open probe for {provider} went stale, admitting a new one",
                            extra={"provider": provider, "probes": record.half_open_probes},
                        )
                        record.half_open_probes = 0
                    record.half_open_probes += 1
                    record.probed_at = self._clock()
                    await self._save(provider, record)
                    return CircuitDecision(True, CircuitState.HALF_OPEN)

                return CircuitDecision(True, CircuitState.CLOSED)
            except Exception as e:
                logger.warning(
                    f"Circuit store unavailable for {provider}, allowing request: {e}",
                    extra={"provider": provider},
                )
                return CircuitDecision(True, CircuitState.CLOSED)

    async def record_success(self, provider: str) -> CircuitState:
        """Close the circuit and forget past failures."""
        async with self._lock(provider):
            try:
                previous = await self._load(provider)
                await self._save(provider, CircuitRecord())
            except Exception as e:
                logger.warning(
                    f"Circuit store unavailable for {provider}, success not recorded: {e}",
                    extra={"provider": provider},
                )
                return CircuitState.CLOSED

        if previous.state != CircuitState.CLOSED:
            logger.info(f"Circuit closed for {provider}", extra={"provider": provider})
        return CircuitState.CLOSED

    async def record_failure(self, provider: str) -> FailureOutcome:
        """Count a provider failure; open the circuit at the threshold."""
        async with self._lock(provider):
            try:
                record = await self._load(provider)
                previous = record.state
                record.consecutive_failures += 1

                trip = (
                    previous == CircuitState.HALF_OPEN
                    or (previous == CircuitState.CLOSED
                        and record.consecutive_failures >= self.config.failure_threshold)
                )
                if trip:
                    record.state = CircuitState.OPEN
                    record.opened_at = self._clock()
                    record.half_open_probes = 0

                await self._save(provider, record)
            except Exception as e:
                logger.warning(
                    f"Circuit store unavailable for {provider}, failure not recorded: {e}",
                    extra={"provider": provider},
                )
                return FailureOutcome(CircuitState.CLOSED, 0, False)

        if trip:
            logger.warning(
                f"Circuit opened for {provider} after {record.consecutive_failures} consecutive failures",
                extra={
                    "provider": provider,
                    "failures": record.consecutive_failures,
                    "open_duration": self.config.open_duration,
                },
            )
        return FailureOutcome(record.state, record.consecutive_failures, trip)

    async def release_probe(self, provider: str) -> None:
        """Free a half-open probe slot taken by an attempt that reached no verdict."""
        async with self._lock(provider):
            try:
                record = await self._load(provider)
                if record.state == CircuitState.HALF_OPEN and record.half_open_probes > 0:
                    record.half_open_probes -= 1
                    await self._save(provider, record)
            except Exception as e:
                logger.warning(
                    f"Circuit store unavailable for {provider}, probe not released: {e}",
                    extra={"provider": provider},
                )

    async def get_state(self, provider: str) -> CircuitRecord:
        """Current record for ``provider``; store errors propagate."""
        return await self._load(provider)

    async def reset(self, provider: Optional[str] = None) -> None:
        """Forget the state of one provider, or of all when ``provider`` is None."""
        if provider is not None:
            await self.store.delete(provider)
        else:
            await self.store.clear()

    async def get_stats(self, providers: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        """Get circuit breaker statistics for each provider."""
        stats: Dict[str, Dict[str, Any]] = {}
        for provider in providers:
            try:
                record = await self._load(provider)
            except Exception as e:
                stats[provider] = {"state": "unknown", "error": str(e)}
                continue
            entry = record.to_dict()
            entry["remaining_open"] = (
                self._remaining_open(record) if record.state == CircuitState.OPEN else 0.0
            )
            stats[provider] = entry
        return stats
