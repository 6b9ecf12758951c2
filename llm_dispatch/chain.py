"""Ordered provider chain with retries, circuit breaking and fallback."""

import asyncio
import logging
import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from .admission import AdmissionController
from .budget import RequestBudget
from .circuit import CircuitBreaker, CircuitState
from .config import DispatcherConfig
from .errors import (
    AttemptRecord,
    BACKPRESSURE_CATEGORIES,
    ERROR_CODES,
    ChainError,
    Classification,
    DeadlineExceededError,
    ErrorCategory,
    ProviderError,
    ServiceUnavailableError,
    classify,
    counts_against_breaker,
    error_code,
    parse_retry_after,
)
from .providers.base import (
    DELTA,
    ERROR,
    FINAL,
    META,
    BaseAdapter,
    CompletionResult,
    DispatchOptions,
    Message,
    StreamChunk,
    as_chunk,
    error_chunk,
    final_chunk,
    meta_chunk,
)
from .retry import RetryConfig, RetryState

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class FallbackReason(Enum):
    """Reason for falling back to next provider."""

    NONE = "none"  # No fallback occurred
    CIRCUIT_OPEN = "circuit_open"
    RATE_LIMITED = "rate_limited"
    RETRY_EXHAUSTED = "retry_exhausted"
    BACKPRESSURE = "backpressure"
    ERROR = "error"


@dataclass
class DispatchResult:
    """Result of a successful dispatch."""

    content: str
    provider: str
    model: str
    usage: Optional[Dict[str, int]] = None
    finish_reason: Optional[str] = None
    fallback_used: bool = False
    attempted_providers: List[str] = field(default_factory=list)  # Providers that failed first
    attempts: List[AttemptRecord] = field(default_factory=list)  # Every provider tried, success last
    fallback_reason: FallbackReason = FallbackReason.NONE
    latency: float = 0.0


class ProviderChain:
    """
    Priority-ordered provider chain with automatic fallback.

    Tries each adapter in order until one succeeds, an error says the request
    itself is at fault, or the request budget runs out. Each adapter is
    guarded by its circuit breaker and admission limiter, and retried with
    backoff before the chain moves on.
    """

    def __init__(
        self,
        adapters: Sequence[BaseAdapter],
        *,
        admission: Optional[AdmissionController] = None,
        breaker: Optional[CircuitBreaker] = None,
        retry_config: Optional[RetryConfig] = None,
        config: Optional[DispatcherConfig] = None,
        sleep: Optional[Sleep] = None,
    ):
        self.config = config or DispatcherConfig()
        self.adapters: List[BaseAdapter] = [adapter for adapter in adapters if adapter.is_available()]
        if not self.adapters:
            raise ValueError("No LLM providers available. Check API key configuration.")

        self.admission = admission or AdmissionController(self.config.profiles)
        self.breaker = breaker or CircuitBreaker(self.config.circuit)
        self.retry_config = retry_config or self.config.retry
        self._sleep = sleep

        logger.info(
            "ProviderChain initialized",
            extra={"providers": self.available_providers, "primary_provider": self.primary_provider},
        )

    @property
    def available_providers(self) -> List[str]:
        return [adapter.name for adapter in self.adapters]

    @property
    def primary_provider(self) -> str:
        return self.adapters[0].name

    def _budget(self, options: DispatchOptions) -> RequestBudget:
        return RequestBudget(options.timeout, options.signal, default_timeout=self.config.timeout)

    def _queue_timeout(self, budget: RequestBudget, remaining_providers: int, options: DispatchOptions) -> float:
        base = options.queue_timeout if options.queue_timeout is not None else self.config.queue_timeout
        share = budget.provider_budget(remaining_providers, self.config.min_remaining)
        if math.isinf(share):
            return base
        return min(base, share)

    def _abort(self, budget: RequestBudget, attempts: List[AttemptRecord]) -> ChainError:
        error = budget.cancellation_error()
        error.attempts = list(attempts)
        return error

    def _priority(self, options: DispatchOptions) -> int:
        return options.priority if options.priority is not None else self.config.priority

    def _check_budget(self, budget: RequestBudget, attempts: List[AttemptRecord]) -> None:
        if budget.is_expired() or budget.remaining() < self.config.min_remaining:
            raise self._abort(budget, attempts)

    async def _backoff(self, budget: RequestBudget, delay: float, attempts: List[AttemptRecord]) -> None:
        """Sleep before a retry; fail fast if the sleep would eat into the floor."""
        if budget.remaining() - delay < self.config.min_remaining:
            raise DeadlineExceededError(budget.timeout, attempts=attempts, elapsed=budget.elapsed())
        try:
            if self._sleep is None:
                await budget.sleep(delay)
            else:
                await budget.guard(self._sleep(delay))
        except ChainError:
            raise self._abort(budget, attempts) from None

    async def _circuit_allows(self, adapter: BaseAdapter, attempts: List[AttemptRecord]) -> Optional[bool]:
        """
        Ask the breaker about ``adapter``.

        Returns None when the circuit is open (a synthetic attempt is recorded),
        otherwise whether the request is a half-open probe.
        """
        decision = await self.breaker.can_request(adapter.name)
        if decision.allowed:
            return decision.state == CircuitState.HALF_OPEN

        attempts.append(AttemptRecord(
            provider=adapter.name,
            model=adapter.model,
            error_message=f"Circuit open for {adapter.name} (retry in {decision.retry_after:.1f}s)",
            fallback_eligible=True,
            circuit_open=True,
            category=ErrorCategory.SERVICE_UNAVAILABLE.value,
        ))
        logger.warning(
            f"Skipping {adapter.name}: circuit {decision.state.value}",
            extra={"provider": adapter.name, "retry_after": decision.retry_after},
        )
        return None

    def _handle_failure(
        self,
        error: Exception,
        adapter: BaseAdapter,
        record: AttemptRecord,
        retry_state: RetryState,
        budget: RequestBudget,
        attempts: List[AttemptRecord],
        options: DispatchOptions,
    ) -> Tuple[Classification, Optional[float]]:
        """
        Decide what a failed attempt means for the chain.

        Raises:
            ChainError: the error is caller-side; stop the whole chain

        Returns:
            The classification and the delay before retrying the same
            provider, or None as delay to move on to the next provider
        """
        classification = classify(error)
        record.error_message = str(error)
        record.category = classification.category.value
        record.fallback_eligible = classification.fallback_eligible

        will_retry = (
            classification.fallback_eligible
            and classification.category not in BACKPRESSURE_CATEGORIES
            and not retry_state.exhausted
        )
        logger.warning(
            f"LLM attempt FAILED [{adapter.name}/{adapter.model}] "
            f"attempt={record.tries}/{self.retry_config.max_tries} category={classification.category.value}",
            extra={
                "provider": adapter.name,
                "model": adapter.model,
                "operation": options.operation,
                "attempt": record.tries,
                "category": classification.category.value,
                "status_code": classification.status_code,
                "will_retry": will_retry,
            },
        )

        if not classification.fallback_eligible:
            raise ChainError(
                str(error),
                category=classification.category,
                attempts=attempts,
                elapsed=budget.elapsed(),
                cause=error,
                retry_after=parse_retry_after(error),
            ) from error

        if classification.category in BACKPRESSURE_CATEGORIES:
            return classification, None

        retry_after = parse_retry_after(error)
        if retry_after is not None:
            self.admission.pause(adapter.name, min(retry_after, self.config.max_pause))
            if retry_after > self.retry_config.max_delay:
                retry_state.skip_remaining()

        if retry_state.exhausted:
            return classification, None

        delay = retry_state.get_delay(retry_after)
        retry_state.increment(error)
        return classification, delay

    async def _settle(self, adapter: BaseAdapter, classification: Optional[Classification], probe: bool) -> None:
        """Report an attempt that did not succeed to the breaker."""
        if classification is not None and counts_against_breaker(classification):
            await self.breaker.record_failure(adapter.name)
        elif probe:
            await self.breaker.release_probe(adapter.name)

    def _fallback_reason(self, attempts: List[AttemptRecord]) -> FallbackReason:
        failed = [attempt for attempt in attempts if not attempt.success]
        if not failed:
            return FallbackReason.NONE
        last = failed[-1]
        if last.circuit_open:
            return FallbackReason.CIRCUIT_OPEN
        if last.category == ErrorCategory.RATE_LIMIT.value:
            return FallbackReason.RATE_LIMITED
        if last.category in {category.value for category in BACKPRESSURE_CATEGORIES}:
            return FallbackReason.BACKPRESSURE
        if last.tries > 1:
            return FallbackReason.RETRY_EXHAUSTED
        return FallbackReason.ERROR

    def _exhausted(self, budget: RequestBudget, attempts: List[AttemptRecord]) -> ServiceUnavailableError:
        summary = "; ".join(f"{attempt.provider}: {attempt.error_message}" for attempt in attempts)
        return ServiceUnavailableError(
            f"All LLM providers failed: {summary}",
            attempts=attempts,
            elapsed=budget.elapsed(),
        )

    async def dispatch(
        self,
        messages: List[Message],
        options: Optional[DispatchOptions] = None,
    ) -> DispatchResult:
        """
        Run a buffered completion through the chain.

        Args:
            messages: List of chat messages
            options: Sampling parameters, timeouts and cancellation signal

        Returns:
            DispatchResult from the first provider that succeeded

        Raises:
            ChainError: every provider failed, the request is invalid, or the
                budget ran out; ``attempts`` lists what was tried
        """
        options = options or DispatchOptions()
        attempts: List[AttemptRecord] = []

        with self._budget(options) as budget:
            for index, adapter in enumerate(self.adapters):
                self._check_budget(budget, attempts)

                probe = await self._circuit_allows(adapter, attempts)
                if probe is None:
                    continue

                record = AttemptRecord(provider=adapter.name, model=adapter.model)
                attempts.append(record)
                result = await self._dispatch_provider(
                    adapter, messages, options, budget, len(self.adapters) - index, record, attempts, probe
                )
                if result is None:
                    continue

                failed = [attempt.provider for attempt in attempts if not attempt.success]
                latency = budget.elapsed()
                logger.info(
                    f"LLM request succeeded [{adapter.name}/{result.model}]",
                    extra={
                        "provider": adapter.name,
                        "model": result.model,
                        "operation": options.operation,
                        "latency": latency,
                        "fallback_used": bool(failed),
                        "attempted_providers": failed,
                        "usage": result.usage,
                    },
                )
                return DispatchResult(
                    content=result.content,
                    provider=adapter.name,
                    model=result.model,
                    usage=result.usage,
                    finish_reason=result.finish_reason,
                    fallback_used=bool(failed),
                    attempted_providers=failed,
                    attempts=attempts,
                    fallback_reason=self._fallback_reason(attempts),
                    latency=latency,
                )

            raise self._exhausted(budget, attempts)

    async def _dispatch_provider(
        self,
        adapter: BaseAdapter,
        messages: List[Message],
        options: DispatchOptions,
        budget: RequestBudget,
        remaining_providers: int,
        record: AttemptRecord,
        attempts: List[AttemptRecord],
        probe: bool,
    ) -> Optional[CompletionResult]:
        """Try one provider with retries; None means move on to the next."""
        retry_state = RetryState(self.retry_config)
        classification: Optional[Classification] = None
        settled = False

        try:
            while True:
                if record.tries:
                    self._check_budget(budget, attempts)
                record.tries += 1

                timeout = budget.attempt_timeout(
                    remaining_providers, options.attempt_timeout, self.config.min_remaining
                )
                attempt_options = replace(options, attempt_timeout=timeout)

                async def call() -> CompletionResult:
                    return await budget.guard(adapter.complete(messages, attempt_options, budget.signal), timeout)

                try:
                    result = await budget.guard(self.admission.schedule(
                        adapter.name,
                        call,
                        priority=self._priority(options),
                        queue_timeout=self._queue_timeout(budget, remaining_providers, options),
                        signal=budget.signal,
                    ))
                except ChainError:
                    record.abort_like = True
                    raise self._abort(budget, attempts) from None
                except Exception as e:
                    classification, delay = self._handle_failure(
                        e, adapter, record, retry_state, budget, attempts, options
                    )
                    if delay is None:
                        return None
                    await self._backoff(budget, delay, attempts)
                    continue

                record.success = True
                record.error_message = None
                record.category = None
                record.model = result.model
                await self.breaker.record_success(adapter.name)
                settled = True
                if result.usage:
                    self.admission.record_usage(adapter.name, result.model, result.usage)
                return result
        finally:
            if not settled:
                await self._settle(adapter, classification, probe)

    async def dispatch_stream(
        self,
        messages: List[Message],
        options: Optional[DispatchOptions] = None,
    ) -> AsyncIterator[StreamChunk]:
        """
        Run a streaming completion through the chain.

        Providers are selected as in :meth:`dispatch` until one produces its
        first chunk. From then on there is no fallback: a failure becomes a
        terminal ``error`` chunk. Failures of the whole dispatch also end the
        stream with an ``error`` chunk rather than an exception.

        Yields:
            ``delta`` chunks followed by one ``final`` or ``error`` chunk
        """
        options = options or DispatchOptions()
        attempts: List[AttemptRecord] = []

        with self._budget(options) as budget:
            try:
                for index, adapter in enumerate(self.adapters):
                    self._check_budget(budget, attempts)

                    probe = await self._circuit_allows(adapter, attempts)
                    if probe is None:
                        continue

                    record = AttemptRecord(provider=adapter.name, model=adapter.model)
                    attempts.append(record)
                    started = False
                    provider_stream = self._stream_provider(
                        adapter, messages, options, budget, len(self.adapters) - index, record, attempts, probe
                    )
                    try:
                        async for chunk in provider_stream:
                            started = True
                            yield chunk
                    finally:
                        await provider_stream.aclose()
                    if started:
                        return

                error: ChainError = self._exhausted(budget, attempts)
            except ChainError as e:
                error = e

            logger.warning(
                f"LLM stream failed: {error}",
                extra={
                    "operation": options.operation,
                    "category": error.category.value,
                    "attempted_providers": error.attempted_providers,
                },
            )
            yield error_chunk(error.code, str(error), retryable=error.retryable)

    async def _stream_provider(
        self,
        adapter: BaseAdapter,
        messages: List[Message],
        options: DispatchOptions,
        budget: RequestBudget,
        remaining_providers: int,
        record: AttemptRecord,
        attempts: List[AttemptRecord],
        probe: bool,
    ) -> AsyncIterator[StreamChunk]:
        """
        Stream from one provider. Yields nothing when the chain should move on.
        """
        retry_state = RetryState(self.retry_config)
        classification: Optional[Classification] = None
        settled = False

        try:
            while True:
                if record.tries:
                    self._check_budget(budget, attempts)
                record.tries += 1

                timeout = budget.attempt_timeout(
                    remaining_providers, options.attempt_timeout, self.config.min_remaining
                )
                attempt_options = replace(options, attempt_timeout=timeout)
                slot = self.admission.slot(
                    adapter.name,
                    priority=self._priority(options),
                    queue_timeout=self._queue_timeout(budget, remaining_providers, options),
                    signal=budget.signal,
                )

                try:
                    async with slot:
                        iterator = adapter.complete_stream(messages, attempt_options, budget.signal).__aiter__()
                        leading: List[StreamChunk] = []
                        try:
                            while True:
                                first = await budget.guard(_next_chunk(iterator), timeout)
                                if not isinstance(first, StreamChunk):
                                    break
                                if first.type == ERROR:
                                    raise _chunk_failure(adapter.name, first)
                                if first.type != META:
                                    break
                                leading.append(first)
                        except BaseException:
                            await _close_iterator(iterator)
                            raise

                        # Output has started: no more retries or fallback
                        settled = True
                        relay = self._relay(adapter, iterator, first, leading, budget, record, options, probe)
                        try:
                            async for chunk in relay:
                                yield chunk
                        finally:
                            await relay.aclose()
                        return
                except ChainError:
                    if settled:
                        raise
                    record.abort_like = True
                    raise self._abort(budget, attempts) from None
                except Exception as e:
                    if settled:
                        raise
                    classification, delay = self._handle_failure(
                        e, adapter, record, retry_state, budget, attempts, options
                    )
                    if delay is None:
                        return
                    await self._backoff(budget, delay, attempts)
                    continue
        finally:
            if not settled:
                await self._settle(adapter, classification, probe)

    async def _relay(
        self,
        adapter: BaseAdapter,
        iterator: AsyncIterator[Any],
        first: Any,
        leading: List[StreamChunk],
        budget: RequestBudget,
        record: AttemptRecord,
        options: DispatchOptions,
        probe: bool,
    ) -> AsyncIterator[StreamChunk]:
        """
        Forward an adapter stream that has produced its first output item.

        ``leading`` holds the adapter's own meta chunks read before it.
        """
        parts: List[str] = []
        item = first
        reported = False
        try:
            if self.config.emit_meta:
                yield meta_chunk(adapter.name, adapter.model)
            for chunk in leading:
                yield chunk

            while True:
                if item is None:
                    # Adapter stopped without a terminal chunk
                    item = final_chunk("".join(parts))
                chunk = as_chunk(item)

                if chunk.type == DELTA:
                    parts.append(chunk.content or "")
                    yield chunk
                elif chunk.type == FINAL:
                    if chunk.content is None:
                        chunk.content = "".join(parts)
                    record.success = True
                    await self.breaker.record_success(adapter.name)
                    reported = True
                    self.admission.record_usage(adapter.name, adapter.model, chunk.usage)
                    logger.info(
                        f"LLM stream succeeded [{adapter.name}/{adapter.model}]",
                        extra={
                            "provider": adapter.name,
                            "model": adapter.model,
                            "operation": options.operation,
                            "latency": budget.elapsed(),
                        },
                    )
                    yield chunk
                    return
                elif chunk.type == ERROR:
                    record.error_message = chunk.message
                    record.category = _chunk_category(chunk).value
                    if chunk.retryable:
                        await self.breaker.record_failure(adapter.name)
                    else:
                        await self.breaker.release_probe(adapter.name)
                    reported = True
                    yield chunk
                    return
                else:
                    yield chunk

                item = await budget.guard(_next_chunk(iterator))
        except ChainError as e:
            record.abort_like = True
            record.error_message = str(e)
            record.category = e.category.value
            await self.breaker.release_probe(adapter.name)
            reported = True
            yield error_chunk(e.code, str(e), retryable=e.retryable)
        except Exception as e:
            classification = classify(e)
            record.error_message = str(e)
            record.category = classification.category.value
            record.fallback_eligible = classification.fallback_eligible
            logger.warning(
                f"LLM stream failed mid-response [{adapter.name}/{adapter.model}]: {e}",
                extra={
                    "provider": adapter.name,
                    "model": adapter.model,
                    "operation": options.operation,
                    "category": classification.category.value,
                },
            )
            if counts_against_breaker(classification):
                await self.breaker.record_failure(adapter.name)
            else:
                await self.breaker.release_probe(adapter.name)
            reported = True
            yield error_chunk(
                error_code(ErrorCategory.UNKNOWN),
                str(e),
                retryable=classification.fallback_eligible,
            )
        finally:
            if probe and not reported:
                # Consumer stopped or was cancelled mid-stream
                await self.breaker.release_probe(adapter.name)
            await _close_iterator(iterator)

    async def health_check(self) -> List[Dict[str, Any]]:
        """Check every adapter concurrently."""
        return list(await asyncio.gather(*(adapter.health_check() for adapter in self.adapters)))

    async def get_circuit_stats(self) -> Dict[str, Dict[str, Any]]:
        """Get breaker stats for every provider in the chain."""
        return await self.breaker.get_stats(self.available_providers)

    async def reset_circuits(self) -> None:
        """Reset breaker state for every provider in the chain."""
        for name in self.available_providers:
            await self.breaker.reset(name)

    def get_queue_stats(self) -> Dict[str, Dict[str, Any]]:
        return self.admission.get_queue_stats()

    async def close(self) -> None:
        """Stop admission and close every adapter and the breaker store."""
        self.admission.stop()
        for adapter in self.adapters:
            await adapter.aclose()
        close_store = getattr(self.breaker.store, "close", None)
        if close_store is not None:
            await close_store()

    async def __aenter__(self) -> "ProviderChain":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()


async def _next_chunk(iterator: AsyncIterator[Any]) -> Any:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return None


async def _close_iterator(iterator: AsyncIterator[Any]) -> None:
    aclose = getattr(iterator, "aclose", None)
    if aclose is not None:
        await aclose()


_CODE_CATEGORIES = {
    code: category for category, code in ERROR_CODES.items() if code != error_code(ErrorCategory.UNKNOWN)
}


def _chunk_category(chunk: StreamChunk) -> ErrorCategory:
    category = _CODE_CATEGORIES.get(chunk.code or "")
    if category is not None:
        return category
    return ErrorCategory.SERVER_ERROR if chunk.retryable else ErrorCategory.UNKNOWN


def _chunk_failure(provider: str, chunk: StreamChunk) -> ProviderError:
    """Turn an adapter error chunk sent before any output into a provider error."""
    return ProviderError(
        chunk.message or f"{provider} stream failed",
        provider,
        category=_chunk_category(chunk),
    )
