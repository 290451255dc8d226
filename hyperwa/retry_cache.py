# =============================================================================
# HyperWa -- Message Retry Counter Cache
# =============================================================================
#
# Bounded, TTL-expiring counter of delivery retries per message id. One
# instance lives for the whole process and is handed to every connection the
# supervisor creates, so counts survive reconnects.
# =============================================================================

from __future__ import annotations

import time
from collections import OrderedDict
from typing import Any

from .constants import MSG_RETRY_CACHE_SIZE, MSG_RETRY_CACHE_TTL


class MessageRetryCache:
    """Per-message retry counters.

    Oldest entries are evicted once *max_size* is reached; entries older
    than *ttl* seconds read as absent.
    """

    def __init__(
        self,
        *,
        max_size: int = MSG_RETRY_CACHE_SIZE,
        ttl: float = MSG_RETRY_CACHE_TTL,
    ) -> None:
        self._max_size = max_size
        self._ttl = ttl
        self._entries: OrderedDict[str, tuple[float, int]] = OrderedDict()

    def get(self, msg_id: str) -> int:
        entry = self._entries.get(msg_id)
        if entry is None:
            return 0
        expires, count = entry
        if expires <= time.monotonic():
            del self._entries[msg_id]
            return 0
        return count

    def increment(self, msg_id: str) -> int:
        count = self.get(msg_id) + 1
        self._entries[msg_id] = (time.monotonic() + self._ttl, count)
        self._entries.move_to_end(msg_id)
        while len(self._entries) > self._max_size:
            self._entries.popitem(last=False)
        return count

    def delete(self, msg_id: str) -> None:
        self._entries.pop(msg_id, None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> dict[str, Any]:
        return {
            "size": len(self._entries),
            "capacity": self._max_size,
            "ttl_seconds": self._ttl,
        }
