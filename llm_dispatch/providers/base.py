"""Adapter contract for LLM providers."""

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional, List, Dict, Any, AsyncIterator, Union

from ..errors import (
    ProviderError,
    AuthenticationError,
    RateLimitError,
    InvalidRequestError,
    ServerError,
)

if TYPE_CHECKING:
    from ..budget import CancelSignal


@dataclass
class Message:
    """A chat message."""

    role: str  # "system", "user", "assistant"
    content: str

    def to_dict(self) -> Dict[str, str]:
        """Convert to dictionary."""
        return {"role": self.role, "content": self.content}

    @classmethod
    def system(cls, content: str) -> "Message":
        """Create a system message."""
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> "Message":
        """Create a user message."""
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: str) -> "Message":
        """Create an assistant message."""
        return cls(role="assistant", content=content)


@dataclass
class DispatchOptions:
    """Options for one dispatch call.

    Sampling parameters are forwarded to the adapter untouched. The timeout
    fields are in seconds and ``None`` means "use the dispatcher default".
    """

    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    response_format: Optional[Dict[str, Any]] = None
    operation: str = "chat_completion"  # Label for logs
    timeout: Optional[float] = None  # Whole dispatch, across providers and retries
    attempt_timeout: Optional[float] = None  # One adapter call
    queue_timeout: Optional[float] = None  # Max wait for an admission slot
    priority: Optional[int] = None  # 0-9, lower runs first; None uses the dispatcher default
    signal: Optional["CancelSignal"] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AdapterConfig:
    """Configuration for an adapter."""

    api_key: Optional[str] = None
    api_key_env: Optional[str] = None  # Environment variable name for API key
    base_url: Optional[str] = None
    model: Optional[str] = None

    def get_api_key(self) -> Optional[str]:
        """Get API key from config or environment."""
        if self.api_key:
            return self.api_key
        if self.api_key_env:
            return os.environ.get(self.api_key_env)
        return None


@dataclass
class CompletionResult:
    """Buffered completion returned by an adapter."""

    content: str
    model: str
    provider: str
    usage: Optional[Dict[str, int]] = None  # {"prompt_tokens": x, "completion_tokens": y, "total_tokens": z}
    finish_reason: Optional[str] = None
    raw: Optional[Any] = None

    @property
    def prompt_tokens(self) -> int:
        """Get prompt token count."""
        if self.usage:
            return self.usage.get("prompt_tokens", 0)
        return 0

    @property
    def completion_tokens(self) -> int:
        """Get completion token count."""
        if self.usage:
            return self.usage.get("completion_tokens", 0)
        return 0

    @property
    def total_tokens(self) -> int:
        """Get total token count."""
        if self.usage:
            return self.usage.get("total_tokens", 0)
        return self.prompt_tokens + self.completion_tokens


DELTA = "delta"
META = "meta"
FINAL = "final"
ERROR = "error"


@dataclass
class StreamChunk:
    """One element of an incremental response.

    ``final`` and ``error`` end the sequence.
    """

    type: str
    content: Optional[str] = None
    usage: Optional[Dict[str, int]] = None
    code: Optional[str] = None
    message: Optional[str] = None
    retryable: Optional[bool] = None
    provider: Optional[str] = None
    model: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.type in (FINAL, ERROR)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, dropping unset fields."""
        return {key: value for key, value in self.__dict__.items() if value is not None}


def delta_chunk(content: str) -> StreamChunk:
    return StreamChunk(type=DELTA, content=content)


def meta_chunk(provider: str, model: str) -> StreamChunk:
    return StreamChunk(type=META, provider=provider, model=model)


def final_chunk(content: str, usage: Optional[Dict[str, int]] = None) -> StreamChunk:
    return StreamChunk(type=FINAL, content=content, usage=usage)


def error_chunk(code: str, message: str, retryable: bool = False) -> StreamChunk:
    return StreamChunk(type=ERROR, code=code, message=message, retryable=retryable)


def as_chunk(value: Union[StreamChunk, str]) -> StreamChunk:
    """Normalize an adapter stream item; bare strings are deltas."""
    if isinstance(value, StreamChunk):
        return value
    if isinstance(value, str):
        return delta_chunk(value)
    raise TypeError(f"Unsupported stream item: {type(value).__name__}")


class BaseAdapter(ABC):
    """Base class for provider adapters.

    An adapter translates the uniform completion contract into one vendor's
    HTTP API. The dispatcher only relies on the members defined here.
    """

    provider_name: str = "base"
    default_model: str = ""
    api_key_env: Optional[str] = None

    def __init__(self, config: Optional[AdapterConfig] = None):
        self.config = config or AdapterConfig()
        if self.config.api_key_env is None:
            self.config.api_key_env = self.api_key_env

    @property
    def name(self) -> str:
        return self.provider_name

    @property
    def model(self) -> str:
        return self.config.model or self.default_model

    def is_available(self) -> bool:
        """True when credentials are configured."""
        return bool(self.config.get_api_key())

    @abstractmethod
    async def complete(
        self,
        messages: List[Message],
        options: DispatchOptions,
        signal: Optional["CancelSignal"] = None,
    ) -> CompletionResult:
        """
        Generate a buffered completion.

        Args:
            messages: List of chat messages
            options: Sampling parameters and the per-attempt timeout
            signal: Cancellation signal; treat a fired signal as terminal

        Returns:
            CompletionResult with the completion
        """
        pass

    @abstractmethod
    def complete_stream(
        self,
        messages: List[Message],
        options: DispatchOptions,
        signal: Optional["CancelSignal"] = None,
    ) -> AsyncIterator[Union[StreamChunk, str]]:
        """
        Stream a completion.

        Args:
            messages: List of chat messages
            options: Sampling parameters and the per-attempt timeout
            signal: Cancellation signal; treat a fired signal as terminal

        Yields:
            ``delta`` chunks, then one ``final`` or ``error`` chunk
        """
        pass

    async def health_check(self) -> Dict[str, Any]:
        """
        Check provider health.

        Returns:
            Dict with health status information
        """
        try:
            await self.complete([Message.user("ping")], DispatchOptions(max_tokens=5))
            return {"provider": self.provider_name, "available": True}
        except Exception as e:
            return {"provider": self.provider_name, "available": False, "error": str(e)}

    async def aclose(self) -> None:
        """Release network resources."""

    async def __aenter__(self) -> "BaseAdapter":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()


__all__ = [
    "Message",
    "DispatchOptions",
    "AdapterConfig",
    "CompletionResult",
    "StreamChunk",
    "delta_chunk",
    "meta_chunk",
    "final_chunk",
    "error_chunk",
    "as_chunk",
    "BaseAdapter",
    "ProviderError",
    "AuthenticationError",
    "RateLimitError",
    "InvalidRequestError",
    "ServerError",
]
