# =============================================================================
# HyperWa -- Cacheable Key Store
# =============================================================================
#
# Read-through cache in front of a raw signal key store. The transport reads
# the same pre-keys and sessions many times per message, the backing store
# (files or SQLite) is only hit on a miss.
# =============================================================================

from __future__ import annotations

import time
from typing import Any, Protocol, runtime_checkable

from ._logging import logger
from .constants import KEY_CACHE_TTL

KeyData = dict[str, dict[str, Any]]  # key type -> key id -> value (None deletes)


@runtime_checkable
class KeyStore(Protocol):
    """Async signal key store keyed by ``(type, id)``."""

    async def get(self, type: str, ids: list[str]) -> dict[str, Any]: ...

    async def set(self, data: KeyData) -> None: ...


class CachingKeyStore:
    """Wrap *inner* with an in-memory TTL cache.

    Args:
        inner: Backing key store.
        ttl: Seconds a cached value stays valid (default 300).
    """

    def __init__(self, inner: KeyStore, *, ttl: float = KEY_CACHE_TTL) -> None:
        self._inner = inner
        self._ttl = ttl
        self._cache: dict[tuple[str, str], tuple[float, Any]] = {}

    @property
    def inner(self) -> KeyStore:
        return self._inner

    async def get(self, type: str, ids: list[str]) -> dict[str, Any]:
        now = time.monotonic()
        found: dict[str, Any] = {}
        missing: list[str] = []
        for key_id in ids:
            entry = self._cache.get((type, key_id))
            if entry is not None and entry[0] > now:
                found[key_id] = entry[1]
            else:
                missing.append(key_id)

        if missing:
            fetched = await self._inner.get(type, missing)
            expires = now + self._ttl
            for key_id, value in fetched.items():
                if value is not None:
                    self._cache[(type, key_id)] = (expires, value)
                    found[key_id] = value
            logger.debug("Key cache: %d hit, %d miss (%s)", len(ids) - len(missing), len(missing), type)

        return found

    async def set(self, data: KeyData) -> None:
        await self._inner.set(data)
        expires = time.monotonic() + self._ttl
        for type, values in data.items():
            for key_id, value in values.items():
                if value is None:
                    self._cache.pop((type, key_id), None)
                else:
                    self._cache[(type, key_id)] = (expires, value)

    def clear(self) -> None:
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)
