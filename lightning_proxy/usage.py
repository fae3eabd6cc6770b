"""
Per-token request counters backing the `quota` caveat.

Counts are keyed by the macaroon's token ID. The Redis counter lives next to
the root keys under `<prefix>/usage/<token_id>`.
"""

from __future__ import annotations

import abc
import asyncio
from collections import defaultdict
from typing import Any, Awaitable, Dict, TypeVar

from redis.exceptions import RedisError

from .errors import SecretStoreUnavailable
from .secret_store import DEFAULT_PREFIX

T = TypeVar("T")


class UsageCounter(abc.ABC):
    @abc.abstractmethod
    async def get(self, token_id: str) -> int:
        """Requests served so far on this token."""

    @abc.abstractmethod
    async def incr(self, token_id: str) -> int:
        """Record one more served request; returns the new count."""


class InMemoryUsageCounter(UsageCounter):
    def __init__(self) -> None:
        self._counts: Dict[str, int] = defaultdict(int)

    async def get(self, token_id: str) -> int:
        return self._counts.get(token_id, 0)

    async def incr(self, token_id: str) -> int:
        self._counts[token_id] += 1
        return self._counts[token_id]


class RedisUsageCounter(UsageCounter):
    def __init__(self, client: Any, prefix: str = DEFAULT_PREFIX, timeout: float = 5.0) -> None:
        self._client = client
        self._prefix = prefix.rstrip("/")
        self._timeout = timeout

    def _key(self, token_id: str) -> str:
        return f"{self._prefix}/usage/{token_id}"

    async def _call(self, op: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(op, timeout=self._timeout)
        except asyncio.TimeoutError:
            raise SecretStoreUnavailable(
                f"Usage counter timed out after {self._timeout}s"
            ) from None
        except RedisError as e:
            raise SecretStoreUnavailable(f"Usage counter error: {e}") from e

    async def get(self, token_id: str) -> int:
        value = await self._call(self._client.get(self._key(token_id)))
        return int(value) if value is not None else 0

    async def incr(self, token_id: str) -> int:
        return int(await self._call(self._client.incr(self._key(token_id))))
