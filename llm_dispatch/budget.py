"""End-to-end time budget and cancellation for one dispatch call."""

import asyncio
import math
import time
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

from .errors import (
    AttemptTimeoutError,
    ChainError,
    DeadlineExceededError,
    DispatchCancelledError,
)

T = TypeVar("T")

DEFAULT_TIMEOUT = 60.0  # Seconds for a whole dispatch
MIN_REMAINING = 0.2  # Below this an attempt is not worth starting

Listener = Callable[[Any], None]


class CancelSignal:
    """Cooperative cancellation signal backed by ``asyncio.Event``.

    The first ``cancel`` wins; its reason is kept and later calls are no-ops.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: Any = None
        self._listeners: List[Listener] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Any:
        return self._reason

    def cancel(self, reason: Any = None) -> None:
        if self._event.is_set():
            return
        self._reason = reason if reason is not None else "cancelled"
        self._event.set()
        for listener in list(self._listeners):
            listener(self._reason)
        self._listeners.clear()

    def add_listener(self, listener: Listener) -> None:
        """Call ``listener(reason)`` once when the signal fires."""
        if self._event.is_set():
            listener(self._reason)
            return
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    async def wait(self) -> Any:
        await self._event.wait()
        return self._reason

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            if isinstance(self._reason, ChainError):
                raise self._reason
            raise DispatchCancelledError(self._reason)


class RequestBudget:
    """
    Single absolute deadline shared by every provider and retry of a dispatch.

    The budget owns a composed :class:`CancelSignal` that fires when the
    caller's signal fires or when the deadline elapses. The deadline reason is
    a :class:`DeadlineExceededError`, so callers can tell a timeout apart from
    a user cancel.

    Must be created inside a running event loop; use it as a context manager
    (or call :meth:`dispose`) so the timer and listener are released.
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        signal: Optional[CancelSignal] = None,
        *,
        default_timeout: float = DEFAULT_TIMEOUT,
        unbounded: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ):
        if unbounded:
            resolved: Optional[float] = None
        elif timeout is not None and timeout > 0:
            resolved = float(timeout)
        else:
            resolved = default_timeout

        self.timeout = resolved
        self._clock = clock
        self.start_time = clock()
        self.deadline = None if resolved is None else self.start_time + resolved
        self.signal = CancelSignal()
        self._external = signal
        self._timer: Optional[asyncio.TimerHandle] = None
        self._disposed = False

        if signal is not None:
            signal.add_listener(self._on_external_cancel)

        if resolved is not None and not self.signal.cancelled:
            loop = asyncio.get_running_loop()
            self._timer = loop.call_later(resolved, self._on_deadline)

    def _on_external_cancel(self, reason: Any) -> None:
        self.signal.cancel(reason)

    def _on_deadline(self) -> None:
        self._timer = None
        self.signal.cancel(DeadlineExceededError(self.timeout))

    @property
    def unbounded(self) -> bool:
        return self.deadline is None

    def elapsed(self) -> float:
        return self._clock() - self.start_time

    def remaining(self) -> float:
        """Seconds left; ``math.inf`` for an unbounded budget."""
        if self.deadline is None:
            return math.inf
        return max(0.0, self.deadline - self._clock())

    def is_expired(self) -> bool:
        return self.signal.cancelled or self.remaining() <= 0

    @property
    def deadline_exceeded(self) -> bool:
        """True when the budget ran out rather than being cancelled."""
        if self.signal.cancelled:
            return isinstance(self.signal.reason, DeadlineExceededError)
        return self.remaining() <= 0

    def cancellation_error(self) -> ChainError:
        """The error that ends a dispatch stopped by this budget."""
        if self.signal.cancelled and not isinstance(self.signal.reason, DeadlineExceededError):
            return DispatchCancelledError(self.signal.reason, elapsed=self.elapsed())
        return DeadlineExceededError(self.timeout, elapsed=self.elapsed())

    def provider_budget(self, remaining_providers: int, floor: float = MIN_REMAINING) -> float:
        """
        Fair share of the remaining time for the next provider.

        Each of the N remaining providers gets ``max(floor, R / N)``, never more
        than R itself, so the last provider is not starved by earlier ones.
        Shares are rounded down to whole milliseconds.
        """
        remaining = self.remaining()
        if math.isinf(remaining):
            return remaining
        if remaining_providers <= 1:
            return remaining
        share = math.floor(remaining * 1000 / remaining_providers) / 1000
        return min(remaining, max(floor, share))

    def attempt_timeout(
        self,
        remaining_providers: int,
        override: Optional[float] = None,
        floor: float = MIN_REMAINING,
    ) -> Optional[float]:
        """Timeout for one attempt; ``None`` means no limit."""
        share = self.provider_budget(remaining_providers, floor)
        if override is not None and override > 0:
            share = min(share, override)
        return None if math.isinf(share) else share

    async def guard(self, awaitable: Awaitable[T], timeout: Optional[float] = None) -> T:
        """
        Await ``awaitable`` unless the budget fires or ``timeout`` elapses first.

        The pending work is cancelled when it loses the race, so a slow call is
        pre-empted rather than merely reported late.

        Raises:
            DeadlineExceededError: the overall deadline passed
            DispatchCancelledError: the caller cancelled
            AttemptTimeoutError: ``timeout`` elapsed first
        """
        if timeout is not None and timeout >= self.remaining():
            # The deadline comes first; let it report the timeout
            timeout = None

        task = asyncio.ensure_future(awaitable)
        if self.signal.cancelled:
            task.cancel()
            await _drain(task)
            raise self.cancellation_error()

        waiter = asyncio.ensure_future(self.signal.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            task.cancel()
            await _drain(task)
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        await _drain(task)
        if self.signal.cancelled:
            raise self.cancellation_error()
        raise AttemptTimeoutError(f"Attempt timed out after {timeout:.3f}s")

    async def sleep(self, seconds: float) -> None:
        """Sleep that wakes early, and raises, when the budget fires."""
        if seconds <= 0:
            self.signal.raise_if_cancelled()
            return
        try:
            await asyncio.wait_for(self.signal.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise self.cancellation_error()

    def dispose(self) -> None:
        """Cancel the deadline timer and detach from the caller's signal."""
        if self._disposed:
            return
        self._disposed = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._external is not None:
            self._external.remove_listener(self._on_external_cancel)

    def __enter__(self) -> "RequestBudget":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.dispose()


async def _drain(task: "asyncio.Future[Any]") -> None:
    # Wait for a cancelled task to unwind; its outcome is no longer wanted.
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception:
        pass
