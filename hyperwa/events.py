# =============================================================================
# HyperWa -- Event Stream
# =============================================================================
#
# Per-connection event source. The transport emits events while it handles a
# frame and flushes them as one EventBatch; batches travel through a single
# asyncio.Queue to one dispatch loop. Synchronous listeners (the session
# store binding) see every batch before the consumer does.
# =============================================================================

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

from ._logging import logger
from .types import MERGED_KINDS, EventBatch, EventKind

BatchListener = Callable[[EventBatch], None]
BatchConsumer = Callable[[EventBatch], Awaitable[None]]


class EventStream:
    """Buffered event source feeding one consumer."""

    def __init__(self) -> None:
        self._pending: EventBatch = {}
        self._queue: asyncio.Queue[EventBatch | None] = asyncio.Queue()
        self._listeners: list[BatchListener] = []
        self._consumer: BatchConsumer | None = None
        self._task: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        """Batches queued but not yet consumed."""
        return self._queue.qsize()

    # -- Producer side --------------------------------------------------------

    def emit(self, kind: EventKind, payload: Any) -> None:
        """Add one event to the pending batch."""
        if self._closed:
            logger.debug("Dropping %s emitted after close", kind.value)
            return
        if kind in MERGED_KINDS:
            current = self._pending.get(kind)
            if isinstance(current, dict) and isinstance(payload, dict):
                self._pending[kind] = {**current, **payload}
            else:
                self._pending[kind] = payload
        else:
            items = payload if isinstance(payload, list) else [payload]
            self._pending.setdefault(kind, []).extend(items)

    def flush(self) -> bool:
        """Hand the pending batch to listeners and the consumer queue.

        Returns False when there was nothing to flush.
        """
        if not self._pending:
            return False
        batch, self._pending = self._pending, {}
        for listener in self._listeners:
            try:
                listener(batch)
            except Exception:
                logger.exception("Event listener failed")
        self._queue.put_nowait(batch)
        return True

    def emit_batch(self, batch: EventBatch) -> None:
        """Emit several kinds at once and flush them together."""
        for kind, payload in batch.items():
            self.emit(kind, payload)
        self.flush()

    # -- Consumer side --------------------------------------------------------

    def listen(self, listener: BatchListener) -> None:
        self._listeners.append(listener)

    def process(self, consumer: BatchConsumer) -> None:
        """Register the single batch consumer and start the dispatch loop."""
        if self._consumer is not None:
            raise RuntimeError("EventStream already has a consumer")
        self._consumer = consumer
        self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        assert self._consumer is not None
        while True:
            batch = await self._queue.get()
            if batch is None:
                return
            try:
                await self._consumer(batch)
            except Exception:
                logger.exception("Event consumer failed")

    async def close(self) -> None:
        """Flush what is pending, stop after the queue drains."""
        if self._closed:
            return
        self.flush()
        self._closed = True
        self._queue.put_nowait(None)
        if self._task is not None and self._task is not asyncio.current_task():
            await self._task

    def close_nowait(self) -> None:
        if self._closed:
            return
        self.flush()
        self._closed = True
        self._queue.put_nowait(None)
