"""Per-provider admission control: token bucket, concurrency cap and priority queue."""

import asyncio
import heapq
import itertools
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, asdict
from typing import (
    TYPE_CHECKING,
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Tuple,
    TypeVar,
)

from .errors import AdmissionClosedError, QueueFullError, QueueTimeoutError

if TYPE_CHECKING:
    from .budget import CancelSignal

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_PRIORITY = 5
DEFAULT_QUEUE_TIMEOUT = 30.0
QUEUE_WARN_DEPTH = 5  # Log when the queue grows past this

UsageSink = Callable[[str, str, Optional[Dict[str, int]]], None]


@dataclass
class AdmissionProfile:
    """Rate limits for one provider."""

    reservoir: int  # Tokens when full
    refresh_amount: int  # Tokens added per refresh tick
    refresh_interval: float  # Seconds between refresh ticks
    max_concurrent: int  # Max in-flight requests
    min_time: float = 0.0  # Minimum seconds between consecutive admissions
    high_water: int = 10  # Queue depth at which new requests are rejected

    def __post_init__(self) -> None:
        if self.reservoir < 1:
            raise ValueError("reservoir must be >= 1")
        if self.refresh_amount < 1:
            raise ValueError("refresh_amount must be >= 1")
        if self.refresh_interval <= 0:
            raise ValueError("refresh_interval must be > 0")
        if self.max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        if self.min_time < 0:
            raise ValueError("min_time must be >= 0")
        if self.high_water < 0:
            raise ValueError("high_water must be >= 0")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


DEFAULT_PROFILES: Dict[str, AdmissionProfile] = {
    "gemini": AdmissionProfile(
        reservoir=200,
        refresh_amount=200,
        refresh_interval=60.0,
        max_concurrent=10,
        min_time=0.05,
        high_water=30,
    ),
    "groq": AdmissionProfile(
        reservoir=30,
        refresh_amount=30,
        refresh_interval=60.0,
        max_concurrent=3,
        min_time=0.2,
        high_water=10,
    ),
    "openai": AdmissionProfile(
        reservoir=50,
        refresh_amount=50,
        refresh_interval=60.0,
        max_concurrent=5,
        min_time=0.15,
        high_water=15,
    ),
}


class ProviderLimiter:
    """
    Token bucket limiter for a single provider.

    Admission needs a token, a free concurrency slot and ``min_time`` since the
    previous admission. Tokens refill in whole ticks of ``refresh_amount``.
    Requests that cannot start immediately wait in a priority queue (lower
    priority value first, FIFO within a priority).

    All state is touched from the event loop only.
    """

    def __init__(
        self,
        name: str,
        profile: AdmissionProfile,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.profile = profile
        self._clock = clock

        self.reservoir = profile.reservoir
        self.running = 0
        self.paused = False

        self._last_refill = clock()
        self._last_start: Optional[float] = None
        self._waiters: List[Tuple[int, int, "asyncio.Future[None]"]] = []
        self._sequence = itertools.count()
        self._wake_handle: Optional[asyncio.TimerHandle] = None
        self._pause_handle: Optional[asyncio.TimerHandle] = None
        self._closed = False

    @property
    def queued(self) -> int:
        return sum(1 for _, _, future in self._waiters if not future.done())

    def _refill(self, now: float) -> None:
        if self.paused:
            return
        ticks = int((now - self._last_refill) // self.profile.refresh_interval)
        if ticks <= 0:
            return
        self._last_refill += ticks * self.profile.refresh_interval
        self.reservoir = min(
            self.profile.reservoir,
            self.reservoir + ticks * self.profile.refresh_amount,
        )

    def _blocked_for(self, now: float) -> Optional[float]:
        """
        Seconds until the next admission could happen.

        Returns 0 when a request may start now and None when only an external
        event (release, resume) can unblock the queue.
        """
        if self._closed or self.paused:
            return None
        if self.running >= self.profile.max_concurrent:
            return None
        if self.reservoir <= 0:
            # Never 0 here: an empty bucket must wait for the next tick
            return max(0.001, self._last_refill + self.profile.refresh_interval - now)
        if self._last_start is not None and self.profile.min_time > 0:
            gap = self._last_start + self.profile.min_time - now
            if gap > 0:
                return gap
        return 0.0

    def _admit(self, now: float) -> None:
        self.reservoir -= 1
        self.running += 1
        self._last_start = now

    def _drain(self) -> None:
        """Admit as many queued requests as the limits allow."""
        self._cancel_wake()
        while self._waiters:
            _, _, future = self._waiters[0]
            if future.done():
                heapq.heappop(self._waiters)
                continue

            now = self._clock()
            self._refill(now)
            wait = self._blocked_for(now)
            if wait is None:
                return
            if wait > 0:
                self._schedule_wake(wait)
                return

            heapq.heappop(self._waiters)
            self._admit(now)
            future.set_result(None)

    def _schedule_wake(self, delay: float) -> None:
        loop = asyncio.get_running_loop()
        self._wake_handle = loop.call_later(delay, self._on_wake)

    def _cancel_wake(self) -> None:
        if self._wake_handle is not None:
            self._wake_handle.cancel()
            self._wake_handle = None

    def _on_wake(self) -> None:
        self._wake_handle = None
        self._drain()

    async def acquire(
        self,
        priority: int = DEFAULT_PRIORITY,
        queue_timeout: Optional[float] = DEFAULT_QUEUE_TIMEOUT,
        signal: Optional["CancelSignal"] = None,
    ) -> None:
        """
        Wait for admission.

        Raises:
            QueueFullError: the queue is at its high-water mark
            QueueTimeoutError: not admitted within ``queue_timeout``
            AdmissionClosedError: the limiter was stopped
        """
        if self._closed:
            raise AdmissionClosedError(f"Admission for {self.name} is closed")
        if signal is not None:
            signal.raise_if_cancelled()

        now = self._clock()
        self._refill(now)
        if not self.queued and self._blocked_for(now) == 0:
            self._admit(now)
            return

        depth = self.queued
        if depth >= self.profile.high_water:
            logger.error(
                f"Admission queue full for {self.name}, dropping request",
                extra={"provider": self.name, "queued": depth, "running": self.running},
            )
            raise QueueFullError(self.name)

        loop = asyncio.get_running_loop()
        future: "asyncio.Future[None]" = loop.create_future()
        heapq.heappush(self._waiters, (priority, next(self._sequence), future))
        if depth + 1 > QUEUE_WARN_DEPTH:
            logger.warning(
                f"Admission queue growing for {self.name}",
                extra={"provider": self.name, "queued": depth + 1, "running": self.running},
            )
        self._drain()

        start = self._clock()
        waiters = {future}
        signal_waiter = None
        if signal is not None:
            signal_waiter = asyncio.ensure_future(signal.wait())
            waiters.add(signal_waiter)

        try:
            await asyncio.wait(waiters, timeout=queue_timeout, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            self._abandon(future)
            raise
        finally:
            if signal_waiter is not None:
                signal_waiter.cancel()

        if future.done() and not future.cancelled():
            # AdmissionClosedError is delivered through the future
            future.result()
            return

        future.cancel()
        if signal is not None and signal.cancelled:
            signal.raise_if_cancelled()
        raise QueueTimeoutError(self.name, self._clock() - start)

    def _abandon(self, future: "asyncio.Future[None]") -> None:
        if future.done() and not future.cancelled() and future.exception() is None:
            # Admitted just before the caller went away
            self.release()
            return
        future.cancel()

    def release(self) -> None:
        """Give back a concurrency slot taken by :meth:`acquire`."""
        self.running = max(0, self.running - 1)
        if not self._closed:
            self._drain()

    def pause(self, duration: float) -> None:
        """
        Block admissions for ``duration`` seconds, then refill to capacity.

        A later pause replaces an earlier one.
        """
        if self._closed:
            return
        self.paused = True
        self.reservoir = 0
        self._cancel_wake()
        if self._pause_handle is not None:
            self._pause_handle.cancel()
        loop = asyncio.get_running_loop()
        self._pause_handle = loop.call_later(max(0.0, duration), self._resume)
        logger.info(
            f"Pausing {self.name} for {duration:.2f}s due to rate limit",
            extra={"provider": self.name, "duration": duration},
        )

    def _resume(self) -> None:
        self._pause_handle = None
        self.paused = False
        self.reservoir = self.profile.reservoir
        self._last_refill = self._clock()
        logger.info(f"Resumed {self.name} after rate limit pause", extra={"provider": self.name})
        self._drain()

    def stats(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "queued": self.queued,
            "reservoir": self.reservoir,
            "paused": self.paused,
        }

    def stop(self) -> None:
        """Cancel timers and fail every waiter."""
        self._closed = True
        self._cancel_wake()
        if self._pause_handle is not None:
            self._pause_handle.cancel()
            self._pause_handle = None
        waiters, self._waiters = self._waiters, []
        for _, _, future in waiters:
            if not future.done():
                future.set_exception(AdmissionClosedError(f"Admission for {self.name} is closed"))


class AdmissionController:
    """
    Admission controller holding one limiter per configured provider.

    Profiles passed in are merged over :data:`DEFAULT_PROFILES`. Providers
    without a profile are not limited.
    """

    def __init__(
        self,
        profiles: Optional[Dict[str, AdmissionProfile]] = None,
        *,
        usage_sink: Optional[UsageSink] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.profiles: Dict[str, AdmissionProfile] = {**DEFAULT_PROFILES, **(profiles or {})}
        self.limiters: Dict[str, ProviderLimiter] = {
            name: ProviderLimiter(name, profile, clock) for name, profile in self.profiles.items()
        }
        self.usage_sink = usage_sink
        logger.info("AdmissionController initialized", extra={"providers": sorted(self.limiters)})

    def get_limiter(self, provider: str) -> Optional[ProviderLimiter]:
        return self.limiters.get(provider)

    async def schedule(
        self,
        provider: str,
        task: Callable[[], Awaitable[T]],
        *,
        priority: int = DEFAULT_PRIORITY,
        queue_timeout: Optional[float] = DEFAULT_QUEUE_TIMEOUT,
        signal: Optional["CancelSignal"] = None,
    ) -> T:
        """
        Run ``task`` once the provider admits it.

        Args:
            provider: Provider name
            task: Zero-argument coroutine function to run
            priority: 0-9, lower runs first
            queue_timeout: Max seconds to wait for admission
            signal: Cancellation signal observed while queued

        Returns:
            Whatever ``task`` returns
        """
        async with self.slot(provider, priority=priority, queue_timeout=queue_timeout, signal=signal):
            return await task()

    @asynccontextmanager
    async def slot(
        self,
        provider: str,
        *,
        priority: int = DEFAULT_PRIORITY,
        queue_timeout: Optional[float] = DEFAULT_QUEUE_TIMEOUT,
        signal: Optional["CancelSignal"] = None,
    ) -> AsyncIterator[None]:
        """Hold an admission for the duration of the block."""
        limiter = self.limiters.get(provider)
        if limiter is None:
            logger.warning(
                f"No admission profile configured for {provider}, executing directly",
                extra={"provider": provider},
            )
            yield
            return

        await limiter.acquire(priority=priority, queue_timeout=queue_timeout, signal=signal)
        try:
            yield
        finally:
            limiter.release()

    def pause(self, provider: str, duration: float) -> None:
        limiter = self.limiters.get(provider)
        if limiter is not None:
            limiter.pause(duration)

    def record_usage(self, provider: str, model: str, usage: Optional[Dict[str, int]]) -> None:
        logger.debug(
            f"Usage for {provider}:{model}",
            extra={"provider": provider, "model": model, "usage": usage},
        )
        if self.usage_sink is not None:
            self.usage_sink(provider, model, usage)

    def get_queue_stats(self) -> Dict[str, Dict[str, Any]]:
        return {name: limiter.stats() for name, limiter in self.limiters.items()}

    def stop(self) -> None:
        for limiter in self.limiters.values():
            limiter.stop()
        logger.info("AdmissionController stopped")
