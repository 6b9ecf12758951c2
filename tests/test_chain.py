"""Tests for buffered dispatch through the provider chain."""

import asyncio
import time

import pytest

from conftest import FakeAdapter
from llm_dispatch.admission import AdmissionController, AdmissionProfile
from llm_dispatch.budget import CancelSignal
from llm_dispatch.chain import FallbackReason, ProviderChain
from llm_dispatch.circuit import CircuitBreaker, CircuitBreakerConfig, CircuitState
from llm_dispatch.config import DispatcherConfig
from llm_dispatch.errors import (
    ChainError,
    DeadlineExceededError,
    DispatchCancelledError,
    ErrorCategory,
    ServiceUnavailableError,
)
from llm_dispatch.providers.base import (
    AuthenticationError,
    DispatchOptions,
    InvalidRequestError,
    Message,
    RateLimitError,
    ServerError,
)
from llm_dispatch.retry import RetryConfig

MESSAGES = [Message.system("Be brief."), Message.user("Hello")]


def make_chain(adapters, sleep=None, breaker=None, admission=None, max_retries=1, **config_overrides):
    config = DispatcherConfig(
        retry=RetryConfig(max_retries=max_retries, base_delay=0.01, jitter=0),
        **config_overrides,
    )
    return ProviderChain(adapters, admission=admission, breaker=breaker, config=config, sleep=sleep)


def server_error(provider: str) -> ServerError:
    return ServerError(f"{provider} returned 503", provider, status_code=503)


class RecordingAdmission(AdmissionController):
    """Admission controller that remembers pauses and requested priorities."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.pauses = []
        self.priorities = []

    def pause(self, provider, duration):
        self.pauses.append((provider, duration))
        super().pause(provider, duration)

    async def schedule(self, provider, task, **kwargs):
        self.priorities.append(kwargs.get("priority"))
        return await super().schedule(provider, task, **kwargs)


class TestProviderChainSetup:
    def test_filters_unavailable_adapters(self):
        chain = make_chain([FakeAdapter("primary", available=False), FakeAdapter("secondary")])

        assert chain.available_providers == ["secondary"]
        assert chain.primary_provider == "secondary"

    def test_no_available_adapters(self):
        with pytest.raises(ValueError, match="No LLM providers available"):
            make_chain([FakeAdapter("primary", available=False)])


class TestDispatch:
    @pytest.mark.asyncio
    async def test_primary_success(self):
        primary, secondary = FakeAdapter("primary", ["hello"]), FakeAdapter("secondary")
        chain = make_chain([primary, secondary])

        result = await chain.dispatch(MESSAGES)

        assert result.content == "hello"
        assert result.provider == "primary"
        assert result.model == "fake-model"
        assert result.usage["total_tokens"] == 8
        assert not result.fallback_used
        assert result.attempted_providers == []
        assert result.fallback_reason == FallbackReason.NONE
        assert len(result.attempts) == 1
        assert result.attempts[0].success
        assert secondary.calls == 0

    @pytest.mark.asyncio
    async def test_fallback_after_eligible_failures(self, sleep_recorder):
        """M eligible failures then a success: M + 1 attempt records."""
        first = FakeAdapter("first", [server_error("first"), server_error("first")])
        second = FakeAdapter("second", [server_error("second"), server_error("second")])
        third = FakeAdapter("third", ["third answer"])
        chain = make_chain([first, second, third], sleep=sleep_recorder)

        result = await chain.dispatch(MESSAGES)

        assert result.content == "third answer"
        assert result.provider == "third"
        assert result.fallback_used
        assert result.attempted_providers == ["first", "second"]
        assert len(result.attempts) == 3
        assert [attempt.tries for attempt in result.attempts] == [2, 2, 1]
        assert result.fallback_reason == FallbackReason.RETRY_EXHAUSTED
        assert first.calls == 2 and second.calls == 2
        assert len(sleep_recorder.calls) == 2

    @pytest.mark.asyncio
    async def test_retry_then_success_on_same_provider(self, sleep_recorder):
        primary = FakeAdapter("primary", [server_error("primary"), "second time lucky"])
        chain = make_chain([primary, FakeAdapter("secondary")], sleep=sleep_recorder)

        result = await chain.dispatch(MESSAGES)

        assert result.provider == "primary"
        assert result.content == "second time lucky"
        assert not result.fallback_used
        assert result.attempts[0].tries == 2
        assert sleep_recorder.calls == [0.01]

    @pytest.mark.asyncio
    async def test_auth_error_aborts_chain(self):
        """A caller-side error stops after one call with no fallback."""
        adapters = [FakeAdapter("primary", [AuthenticationError("bad key", "primary", status_code=401)])]
        adapters += [FakeAdapter(f"backup-{index}") for index in range(4)]
        chain = make_chain(adapters)

        with pytest.raises(ChainError) as exc_info:
            await chain.dispatch(MESSAGES)

        error = exc_info.value
        assert error.category == ErrorCategory.AUTH_ERROR
        assert error.code == "AUTH_REQUIRED"
        assert not error.retryable
        assert isinstance(error.cause, AuthenticationError)
        assert len(error.attempts) == 1
        assert adapters[0].calls == 1
        assert all(adapter.calls == 0 for adapter in adapters[1:])

    @pytest.mark.asyncio
    async def test_bad_request_is_not_retried(self):
        primary = FakeAdapter("primary", [InvalidRequestError("messages must not be empty", "primary")])
        chain = make_chain([primary, FakeAdapter("secondary")])

        with pytest.raises(ChainError) as exc_info:
            await chain.dispatch(MESSAGES)

        assert exc_info.value.code == "INVALID_INPUT"
        assert primary.calls == 1

    @pytest.mark.asyncio
    async def test_unknown_error_fails_closed(self):
        primary = FakeAdapter("primary", [ValueError("unexpected token in response")])
        secondary = FakeAdapter("secondary")
        chain = make_chain([primary, secondary])

        with pytest.raises(ChainError) as exc_info:
            await chain.dispatch(MESSAGES)

        assert exc_info.value.category == ErrorCategory.UNKNOWN
        assert secondary.calls == 0

    @pytest.mark.asyncio
    async def test_retry_after_honored_before_fallback(self, sleep_recorder):
        """429 with Retry-After: retry the same provider after the hint, then move on."""
        limited = [
            RateLimitError("Too many requests", "primary", status_code=429, headers={"Retry-After": "2"})
            for _ in range(2)
        ]
        primary = FakeAdapter("primary", limited)
        secondary = FakeAdapter("secondary", ["from secondary"])
        chain = make_chain([primary, secondary], sleep=sleep_recorder)

        result = await chain.dispatch(MESSAGES)

        assert result.provider == "secondary"
        assert result.attempted_providers == ["primary"]
        assert result.fallback_reason == FallbackReason.RATE_LIMITED
        assert primary.calls == 2
        assert sleep_recorder.calls[0] >= 2.0

    @pytest.mark.asyncio
    async def test_retry_after_pauses_admission(self, sleep_recorder):
        admission = AdmissionController()
        primary = FakeAdapter("groq", [RateLimitError("slow down", "groq", retry_after=3)])
        chain = make_chain([primary], sleep=sleep_recorder, admission=admission, max_retries=0)

        with pytest.raises(ServiceUnavailableError):
            await chain.dispatch(MESSAGES)

        assert admission.get_limiter("groq").paused
        admission.stop()

    @pytest.mark.asyncio
    async def test_admission_pause_is_capped(self, sleep_recorder):
        admission = RecordingAdmission()
        primary = FakeAdapter("groq", [RateLimitError("quota exhausted", "groq", retry_after=86400)])
        chain = make_chain(
            [primary, FakeAdapter("secondary")], sleep=sleep_recorder, admission=admission, max_pause=45.0
        )

        result = await chain.dispatch(MESSAGES)

        assert result.provider == "secondary"
        assert admission.pauses == [("groq", 45.0)]
        admission.stop()

    @pytest.mark.asyncio
    async def test_priority_defaults_to_config(self):
        admission = RecordingAdmission()
        chain = make_chain([FakeAdapter("primary")], admission=admission, priority=2)

        await chain.dispatch(MESSAGES)
        await chain.dispatch(MESSAGES, DispatchOptions(priority=7))

        assert admission.priorities == [2, 7]
        admission.stop()

    @pytest.mark.asyncio
    async def test_long_retry_after_skips_retries(self, sleep_recorder):
        primary = FakeAdapter("primary", [RateLimitError("quota exhausted", "primary", retry_after=120)])
        secondary = FakeAdapter("secondary")
        chain = make_chain([primary, secondary], sleep=sleep_recorder, max_retries=3)

        result = await chain.dispatch(MESSAGES)

        assert result.provider == "secondary"
        assert primary.calls == 1
        assert sleep_recorder.calls == []

    @pytest.mark.asyncio
    async def test_backoff_past_budget_fails_fast(self, sleep_recorder):
        primary = FakeAdapter("primary", [RateLimitError("slow down", "primary", retry_after=5)])
        chain = make_chain([primary, FakeAdapter("secondary")], sleep=sleep_recorder)

        with pytest.raises(DeadlineExceededError) as exc_info:
            await chain.dispatch(MESSAGES, DispatchOptions(timeout=1.0))

        assert primary.calls == 1
        assert sleep_recorder.calls == []
        assert exc_info.value.attempted_providers == ["primary"]

    @pytest.mark.asyncio
    async def test_all_providers_fail(self):
        primary = FakeAdapter("primary", [server_error("primary")])
        secondary = FakeAdapter("secondary", [server_error("secondary")])
        chain = make_chain([primary, secondary], max_retries=0)

        with pytest.raises(ServiceUnavailableError) as exc_info:
            await chain.dispatch(MESSAGES)

        error = exc_info.value
        assert error.code == "SERVICE_UNAVAILABLE"
        assert str(error) == (
            "All LLM providers failed: primary: primary returned 503; secondary: secondary returned 503"
        )
        assert error.attempted_providers == ["primary", "secondary"]
        assert all(attempt.fallback_eligible for attempt in error.attempts)

    @pytest.mark.asyncio
    async def test_usage_sink_called(self):
        usage = []
        admission = AdmissionController(usage_sink=lambda *args: usage.append(args))
        chain = make_chain([FakeAdapter("primary")], admission=admission)

        await chain.dispatch(MESSAGES)

        assert usage == [("primary", "fake-model", {"prompt_tokens": 3, "completion_tokens": 5, "total_tokens": 8})]


class TestBudget:
    @pytest.mark.asyncio
    async def test_slow_call_is_preempted(self):
        """Slow calls inside a 100ms budget end at the deadline, not after the calls."""
        primary, secondary = FakeAdapter("primary", delay=0.5), FakeAdapter("secondary", delay=0.5)
        chain = make_chain([primary, secondary], min_remaining=0.01, max_retries=0)

        started = time.monotonic()
        with pytest.raises(DeadlineExceededError) as exc_info:
            await chain.dispatch(MESSAGES, DispatchOptions(timeout=0.1))

        assert time.monotonic() - started < 0.3
        error = exc_info.value
        assert error.code == "DEADLINE_EXCEEDED"
        # The primary only got its half of the budget
        assert error.attempts[0].category == ErrorCategory.TIMEOUT.value
        assert error.attempts[-1].abort_like
        assert primary.calls == 1 and secondary.calls == 1

    @pytest.mark.asyncio
    async def test_single_slow_call_hits_deadline(self):
        """A 200ms call inside a 50ms budget is cut off at the deadline."""
        primary = FakeAdapter("primary", delay=0.2)
        chain = make_chain([primary], min_remaining=0.01)

        started = time.monotonic()
        with pytest.raises(DeadlineExceededError) as exc_info:
            await chain.dispatch(MESSAGES, DispatchOptions(timeout=0.05))

        assert time.monotonic() - started < 0.15
        assert exc_info.value.attempts[0].abort_like

    @pytest.mark.asyncio
    async def test_sub_budgets_stay_within_deadline(self):
        adapters = [FakeAdapter(name, delay=1.0) for name in ("first", "second", "third")]
        chain = make_chain(adapters, max_retries=0)

        started = time.monotonic()
        with pytest.raises(DeadlineExceededError):
            await chain.dispatch(MESSAGES, DispatchOptions(timeout=1.0))

        assert time.monotonic() - started < 1.2
        assert adapters[0].seen_options[0].attempt_timeout <= 0.333
        assert adapters[1].seen_options[0].attempt_timeout <= 0.333

    @pytest.mark.asyncio
    async def test_budget_below_floor_starts_nothing(self):
        primary = FakeAdapter("primary")
        chain = make_chain([primary])

        with pytest.raises(DeadlineExceededError):
            await chain.dispatch(MESSAGES, DispatchOptions(timeout=0.1))

        assert primary.calls == 0

    @pytest.mark.asyncio
    async def test_attempt_timeout_falls_back(self):
        primary = FakeAdapter("primary", delay=1.0)
        secondary = FakeAdapter("secondary")
        chain = make_chain([primary, secondary], max_retries=0)

        result = await chain.dispatch(MESSAGES, DispatchOptions(timeout=5.0, attempt_timeout=0.05))

        assert result.provider == "secondary"
        assert result.attempts[0].category == ErrorCategory.TIMEOUT.value

    @pytest.mark.asyncio
    async def test_provider_gets_fair_share(self):
        primary = FakeAdapter("primary")
        chain = make_chain([primary, FakeAdapter("secondary"), FakeAdapter("third")])

        await chain.dispatch(MESSAGES, DispatchOptions(timeout=3.0))

        assert 0.9 < primary.seen_options[0].attempt_timeout <= 1.0

    @pytest.mark.asyncio
    async def test_caller_cancel(self):
        signal = CancelSignal()
        signal.cancel("user navigated away")
        primary = FakeAdapter("primary")
        chain = make_chain([primary])

        with pytest.raises(DispatchCancelledError) as exc_info:
            await chain.dispatch(MESSAGES, DispatchOptions(signal=signal))

        assert exc_info.value.code == "CANCELLED"
        assert primary.calls == 0

    @pytest.mark.asyncio
    async def test_cancel_during_call(self):
        signal = CancelSignal()
        primary = FakeAdapter("primary", delay=1.0)
        secondary = FakeAdapter("secondary")
        chain = make_chain([primary, secondary])
        asyncio.get_running_loop().call_later(0.02, signal.cancel, "user navigated away")

        with pytest.raises(DispatchCancelledError):
            await chain.dispatch(MESSAGES, DispatchOptions(signal=signal))

        assert secondary.calls == 0


class TestCircuitIntegration:
    @pytest.mark.asyncio
    async def test_open_circuit_is_skipped(self):
        breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=1))
        await breaker.record_failure("primary")
        primary, secondary = FakeAdapter("primary"), FakeAdapter("secondary")
        chain = make_chain([primary, secondary], breaker=breaker)

        result = await chain.dispatch(MESSAGES)

        assert result.provider == "secondary"
        assert result.fallback_reason == FallbackReason.CIRCUIT_OPEN
        assert result.attempts[0].circuit_open
        assert result.attempted_providers == ["primary"]
        assert primary.calls == 0

    @pytest.mark.asyncio
    async def test_breaker_opens_after_threshold(self):
        breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=2))
        primary = FakeAdapter("primary", [server_error("primary") for _ in range(2)])
        chain = make_chain([primary, FakeAdapter("secondary")], breaker=breaker, max_retries=0)

        await chain.dispatch(MESSAGES)
        await chain.dispatch(MESSAGES)
        assert (await breaker.get_state("primary")).state == CircuitState.OPEN

        result = await chain.dispatch(MESSAGES)

        assert primary.calls == 2
        assert result.attempts[0].circuit_open

    @pytest.mark.asyncio
    async def test_caller_errors_do_not_trip(self):
        breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=1))
        primary = FakeAdapter("primary", [InvalidRequestError("bad", "primary")])
        chain = make_chain([primary], breaker=breaker)

        with pytest.raises(ChainError):
            await chain.dispatch(MESSAGES)

        assert (await breaker.get_state("primary")).consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_probe_released_on_caller_error(self, clock):
        breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=1, open_duration=30.0), clock=clock)
        await breaker.record_failure("primary")
        clock.advance(30)
        primary = FakeAdapter("primary", [InvalidRequestError("bad", "primary")])
        chain = make_chain([primary], breaker=breaker)

        with pytest.raises(ChainError):
            await chain.dispatch(MESSAGES)

        record = await breaker.get_state("primary")
        assert record.state == CircuitState.HALF_OPEN
        assert record.half_open_probes == 0

    @pytest.mark.asyncio
    async def test_success_closes_half_open(self, clock):
        breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=1, open_duration=30.0), clock=clock)
        await breaker.record_failure("primary")
        clock.advance(30)
        chain = make_chain([FakeAdapter("primary")], breaker=breaker)

        await chain.dispatch(MESSAGES)

        assert (await breaker.get_state("primary")).state == CircuitState.CLOSED


class TestBackpressure:
    @pytest.mark.asyncio
    async def test_queue_full_moves_on_without_tripping(self, sleep_recorder):
        profile = AdmissionProfile(
            reservoir=10, refresh_amount=10, refresh_interval=60.0, max_concurrent=1, high_water=0
        )
        admission = AdmissionController({"primary": profile})
        await admission.get_limiter("primary").acquire()
        breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=1))
        primary, secondary = FakeAdapter("primary"), FakeAdapter("secondary")
        chain = make_chain([primary, secondary], admission=admission, breaker=breaker, sleep=sleep_recorder)

        result = await chain.dispatch(MESSAGES)

        assert result.provider == "secondary"
        assert result.fallback_reason == FallbackReason.BACKPRESSURE
        assert result.attempts[0].category == ErrorCategory.QUEUE_FULL.value
        assert primary.calls == 0
        assert sleep_recorder.calls == []
        assert (await breaker.get_state("primary")).consecutive_failures == 0
        admission.stop()


class TestOperations:
    @pytest.mark.asyncio
    async def test_health_check(self):
        chain = make_chain([FakeAdapter("primary"), FakeAdapter("secondary", [server_error("secondary")])])

        results = await chain.health_check()

        assert results[0] == {"provider": "primary", "available": True}
        assert results[1]["available"] is False

    @pytest.mark.asyncio
    async def test_circuit_stats_and_reset(self):
        breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=1))
        chain = make_chain([FakeAdapter("primary"), FakeAdapter("secondary")], breaker=breaker)
        await breaker.record_failure("primary")

        stats = await chain.get_circuit_stats()
        assert stats["primary"]["state"] == "open"
        assert stats["secondary"]["state"] == "closed"

        await chain.reset_circuits()
        assert (await chain.get_circuit_stats())["primary"]["state"] == "closed"

    @pytest.mark.asyncio
    async def test_close(self):
        adapters = [FakeAdapter("primary"), FakeAdapter("secondary")]

        async with make_chain(adapters) as chain:
            assert "groq" in chain.get_queue_stats()

        assert all(adapter.closed for adapter in adapters)
