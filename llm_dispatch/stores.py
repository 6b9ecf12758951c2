"""Breaker state stores: process-local and Redis-backed."""

import json
import logging
from typing import Any, Dict, Optional, Protocol

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)

DEFAULT_KEY_PREFIX = "llm:circuit:"


class BreakerStore(Protocol):
    """Where circuit records live. Values are plain JSON-compatible dicts."""

    async def get(self, provider: str) -> Optional[Dict[str, Any]]:
        ...

    async def set(self, provider: str, record: Dict[str, Any]) -> None:
        ...

    async def delete(self, provider: str) -> None:
        ...

    async def clear(self) -> None:
        ...


class InMemoryBreakerStore:
    """Store for a single process."""

    def __init__(self) -> None:
        self._records: Dict[str, Dict[str, Any]] = {}

    async def get(self, provider: str) -> Optional[Dict[str, Any]]:
        record = self._records.get(provider)
        return dict(record) if record is not None else None

    async def set(self, provider: str, record: Dict[str, Any]) -> None:
        self._records[provider] = dict(record)

    async def delete(self, provider: str) -> None:
        self._records.pop(provider, None)

    async def clear(self) -> None:
        self._records.clear()

    async def close(self) -> None:
        """Nothing to release."""


class RedisBreakerStore:
    """
    Store shared by every instance pointing at the same Redis.

    Each provider's record is a JSON string under ``key_prefix + provider``.
    Redis errors propagate; the breaker decides how to degrade.
    """

    def __init__(self, client: Any, key_prefix: str = DEFAULT_KEY_PREFIX, owns_client: bool = False):
        self.client = client
        self.key_prefix = key_prefix
        self._owns_client = owns_client

    @classmethod
    def from_url(cls, url: str, key_prefix: str = DEFAULT_KEY_PREFIX) -> "RedisBreakerStore":
        client = aioredis.from_url(url, decode_responses=True)
        return cls(client, key_prefix=key_prefix, owns_client=True)

    def _key(self, provider: str) -> str:
        return f"{self.key_prefix}{provider}"

    async def get(self, provider: str) -> Optional[Dict[str, Any]]:
        raw = await self.client.get(self._key(provider))
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning(
                f"Discarding unreadable circuit record for {provider}",
                extra={"provider": provider},
            )
            return None

    async def set(self, provider: str, record: Dict[str, Any]) -> None:
        await self.client.set(self._key(provider), json.dumps(record))

    async def delete(self, provider: str) -> None:
        await self.client.delete(self._key(provider))

    async def clear(self) -> None:
        keys = [key async for key in self.client.scan_iter(match=f"{self.key_prefix}*")]
        if keys:
            await self.client.delete(*keys)

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()
