"""LLM provider adapter contract."""

from .base import (
    BaseAdapter,
    AdapterConfig,
    CompletionResult,
    DispatchOptions,
    Message,
    StreamChunk,
)

__all__ = [
    "BaseAdapter",
    "AdapterConfig",
    "CompletionResult",
    "DispatchOptions",
    "Message",
    "StreamChunk",
]
