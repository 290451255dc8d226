# =============================================================================
# HyperWa -- Message Handler
# =============================================================================

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

from ._logging import logger

MessageListener = Callable[[dict[str, Any]], Awaitable[Any] | Any]


class MessageHandler:
    """Fans incoming messages out to registered listeners.

    Only ``notify`` upserts (new traffic) are delivered; ``append`` upserts
    are history or our own sends and only feed the session store. A failing
    listener is logged and the others still run.
    """

    def __init__(self) -> None:
        self._listeners: list[MessageListener] = []
        self.processed = 0

    def add_listener(self, listener: MessageListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: MessageListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def handle_messages(self, upsert: dict[str, Any]) -> None:
        if upsert.get("type") != "notify":
            return
        for msg in upsert.get("messages", []):
            if not msg.get("message"):
                continue
            self.processed += 1
            for listener in list(self._listeners):
                try:
                    result = listener(msg)
                    if asyncio.iscoroutine(result):
                        await result
                except Exception:
                    logger.exception("Message listener %r failed", listener)
