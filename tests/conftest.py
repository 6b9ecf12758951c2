"""Shared fixtures: scripted adapters, a fake Redis client and a manual clock."""

import asyncio
import fnmatch
from typing import Any, Dict, List, Optional

import pytest

from llm_dispatch.providers.base import (
    AdapterConfig,
    BaseAdapter,
    CompletionResult,
    DispatchOptions,
    Message,
)


class Pause:
    """Stream script item: sleep before producing the next item."""

    def __init__(self, seconds: float):
        self.seconds = seconds


class FakeAdapter(BaseAdapter):
    """
    Adapter driven by a script.

    ``outcomes`` is consumed one entry per ``complete`` call: exceptions are
    raised, strings become the completion content. Once empty every call
    returns ``"ok from <name>"``. ``stream`` is replayed by every
    ``complete_stream`` call: exceptions are raised, :class:`Pause` sleeps and
    anything else is yielded as is.
    """

    def __init__(
        self,
        name: str,
        outcomes: Optional[List[Any]] = None,
        stream: Optional[List[Any]] = None,
        delay: float = 0.0,
        available: bool = True,
        model: str = "fake-model",
    ):
        super().__init__(AdapterConfig(api_key="test-key" if available else None, model=model))
        self.provider_name = name
        self.outcomes = list(outcomes or [])
        self.stream = list(stream or [])
        self.delay = delay
        self.calls = 0
        self.seen_options: List[DispatchOptions] = []
        self.closed = False

    async def complete(self, messages: List[Message], options: DispatchOptions, signal=None) -> CompletionResult:
        self.calls += 1
        self.seen_options.append(options)
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes.pop(0) if self.outcomes else f"ok from {self.name}"
        if isinstance(outcome, BaseException):
            raise outcome
        return CompletionResult(
            content=outcome,
            model=self.model,
            provider=self.name,
            usage={"prompt_tokens": 3, "completion_tokens": 5, "total_tokens": 8},
            finish_reason="stop",
        )

    async def complete_stream(self, messages: List[Message], options: DispatchOptions, signal=None):
        self.calls += 1
        self.seen_options.append(options)
        for item in self.stream:
            if isinstance(item, BaseException):
                raise item
            if isinstance(item, Pause):
                await asyncio.sleep(item.seconds)
                continue
            yield item

    async def aclose(self) -> None:
        self.closed = True


class SleepRecorder:
    """Backoff sleep that returns immediately and remembers the delays."""

    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRedis:
    """Just enough of ``redis.asyncio.Redis`` for the breaker store."""

    def __init__(self) -> None:
        self.data: Dict[str, Any] = {}
        self.closed = False
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise ConnectionError("Error 111 connecting to localhost:6379. Connection refused.")

    async def get(self, key: str) -> Any:
        self._check()
        return self.data.get(key)

    async def set(self, key: str, value: Any) -> None:
        self._check()
        self.data[key] = value

    async def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
        return removed

    async def scan_iter(self, match: Optional[str] = None):
        self._check()
        for key in list(self.data):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()
