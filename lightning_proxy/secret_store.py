"""
Root key storage shared by every proxy instance.

Key material is created once per root key ID and never overwritten, so a
credential minted on one instance verifies on any other. Rotation means
minting under a new ID.

The Redis backend keeps everything under a fixed prefix so the proxy can share
a cluster with unrelated data:

    <prefix>/secrets/<root_key_id>  ->  32 raw bytes
"""

from __future__ import annotations

import abc
import asyncio
import logging
import os
from collections import OrderedDict
from typing import Any, Awaitable, Dict, Optional, TypeVar

from redis.exceptions import RedisError

from .errors import SecretNotFound, SecretStoreUnavailable

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "lsat/proxy"
SECRET_SIZE = 32
DEFAULT_CACHE_SIZE = 10000

T = TypeVar("T")


class SecretStore(abc.ABC):
    """Create-if-absent key/value store for macaroon root keys."""

    @abc.abstractmethod
    async def new_secret(self, root_key_id: str) -> bytes:
        """
        Return the key material for root_key_id, creating it if absent.

        Calling this twice for the same ID returns the same bytes both times.

        Raises:
            SecretStoreUnavailable: the backing store could not be reached.
        """

    @abc.abstractmethod
    async def get_secret(self, root_key_id: str) -> bytes:
        """
        Return existing key material for root_key_id.

        Raises:
            SecretNotFound: nothing (valid) is stored under that ID.
            SecretStoreUnavailable: the backing store could not be reached.
        """


class InMemorySecretStore(SecretStore):
    """Single-process secret store. Only suitable for one proxy instance."""

    def __init__(self) -> None:
        self._secrets: Dict[str, bytes] = {}
        self._lock = asyncio.Lock()

    async def new_secret(self, root_key_id: str) -> bytes:
        async with self._lock:
            secret = self._secrets.get(root_key_id)
            if secret is None:
                secret = os.urandom(SECRET_SIZE)
                self._secrets[root_key_id] = secret
            return secret

    async def get_secret(self, root_key_id: str) -> bytes:
        secret = self._secrets.get(root_key_id)
        if secret is None:
            raise SecretNotFound(f"No secret for root key {root_key_id}")
        return secret


class RedisSecretStore(SecretStore):
    """
    Secret store backed by Redis.

    Creation uses SET NX so that concurrent creators on different instances
    converge on a single value: whoever loses the race reads back the winner's
    bytes. Every round-trip is bounded by `timeout`.

    Keys read back for verification are kept in a small LRU cache. Freshly
    created keys are not cached, since most of them belong to challenges that
    are never paid.
    """

    def __init__(
        self,
        client: Any,
        prefix: str = DEFAULT_PREFIX,
        timeout: float = 5.0,
        cache_size: int = DEFAULT_CACHE_SIZE,
    ) -> None:
        """
        Args:
            client: A redis.asyncio.Redis client (decode_responses=False).
            prefix: Namespace for all keys written by the proxy.
            timeout: Seconds allowed per store operation.
            cache_size: Most root keys held in process; 0 disables caching.
        """
        self._client = client
        self._prefix = prefix.rstrip("/")
        self._timeout = timeout
        self._cache_size = cache_size
        # Root keys are immutable once written, so entries never go stale.
        self._cache: "OrderedDict[str, bytes]" = OrderedDict()

    def _key(self, root_key_id: str) -> str:
        return f"{self._prefix}/secrets/{root_key_id}"

    async def _call(self, op: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(op, timeout=self._timeout)
        except asyncio.TimeoutError:
            raise SecretStoreUnavailable(
                f"Secret store timed out after {self._timeout}s"
            ) from None
        except RedisError as e:
            raise SecretStoreUnavailable(f"Secret store error: {e}") from e

    def _remember(self, root_key_id: str, secret: bytes) -> None:
        if self._cache_size <= 0:
            return
        self._cache[root_key_id] = secret
        self._cache.move_to_end(root_key_id)
        while len(self._cache) > self._cache_size:
            self._cache.popitem(last=False)

    async def new_secret(self, root_key_id: str) -> bytes:
        cached = self._cache.get(root_key_id)
        if cached is not None:
            return cached

        key = self._key(root_key_id)
        candidate = os.urandom(SECRET_SIZE)
        created = await self._call(self._client.set(key, candidate, nx=True))

        if created:
            secret = candidate
            logger.debug("Created root key %s", root_key_id)
        else:
            secret = await self._call(self._client.get(key))
            if secret is None:
                # Only possible if someone deleted the key between SET and GET.
                raise SecretStoreUnavailable(f"Root key {root_key_id} vanished during creation")
            secret = _check_secret(root_key_id, secret)

        return secret

    async def get_secret(self, root_key_id: str) -> bytes:
        cached = self._cache.get(root_key_id)
        if cached is not None:
            self._cache.move_to_end(root_key_id)
            return cached

        secret = await self._call(self._client.get(self._key(root_key_id)))
        if secret is None:
            raise SecretNotFound(f"No secret for root key {root_key_id}")

        secret = _check_secret(root_key_id, secret)
        self._remember(root_key_id, secret)
        return secret


def _check_secret(root_key_id: str, secret: Optional[bytes]) -> bytes:
    if isinstance(secret, str):
        secret = secret.encode("latin-1")
    if not secret or len(secret) != SECRET_SIZE:
        logger.warning("Corrupted root key material for %s", root_key_id)
        raise SecretNotFound(f"Invalid secret stored for root key {root_key_id}")
    return secret
