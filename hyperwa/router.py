# =============================================================================
# HyperWa -- Event Router
# =============================================================================
#
# Dispatches each EventBatch member to exactly one handler.
#
#   creds.update       persisted inline, before anything else in the batch
#   I/O handlers       one task per kind, chained so a kind stays in order
#                      across batches while other kinds run independently
#   log-only handlers  run synchronously
#
# A failing handler is logged; the rest of the batch still runs.
# =============================================================================

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from ._logging import logger
from .types import ConnectionUpdate, EventBatch, EventKind, HistorySync

if TYPE_CHECKING:
    from .handler import MessageHandler
    from .supervisor import ConnectionSupervisor

AsyncKindHandler = Callable[[Any], Awaitable[None]]
SyncKindHandler = Callable[[Any], None]


class EventRouter:
    """Routes event batches from the live connection to their consumers.

    Args:
        supervisor: Receives connection updates and credential persists,
            and provides the current handle and bridge.
        message_handler: Receives ``messages.upsert`` batches.
    """

    def __init__(
        self,
        supervisor: ConnectionSupervisor,
        message_handler: MessageHandler | None = None,
    ) -> None:
        self._supervisor = supervisor
        self._message_handler = message_handler
        self._lanes: dict[EventKind, asyncio.Task[None]] = {}

        self._async_handlers: dict[EventKind, AsyncKindHandler] = {
            EventKind.CONNECTION_UPDATE: self._on_connection_update,
            EventKind.MESSAGES_UPSERT: self._on_messages_upsert,
            EventKind.CONTACTS_UPDATE: self._on_contacts_update,
            EventKind.CALL: self._on_call,
        }
        self._sync_handlers: dict[EventKind, SyncKindHandler] = {
            EventKind.MESSAGES_UPDATE: self._on_messages_update,
            EventKind.MESSAGE_RECEIPT_UPDATE: self._on_receipt_update,
            EventKind.MESSAGES_REACTION: self._on_reaction,
            EventKind.PRESENCE_UPDATE: self._on_presence_update,
            EventKind.CHATS_UPDATE: self._on_chats_update,
            EventKind.CHATS_DELETE: self._on_chats_delete,
            EventKind.CONTACTS_UPSERT: self._on_contacts_upsert,
            EventKind.HISTORY_SET: self._on_history_set,
            EventKind.LABELS_ASSOCIATION: self._on_label_association,
            EventKind.LABELS_EDIT: self._on_label_edit,
        }

    # -- Dispatch -------------------------------------------------------------

    async def dispatch(self, batch: EventBatch) -> None:
        """Route one batch. Returns once creds are persisted and I/O kinds
        are scheduled; it does not wait for the scheduled handlers."""
        creds = batch.get(EventKind.CREDS_UPDATE)
        if creds is not None:
            await self._run(EventKind.CREDS_UPDATE, self._on_creds_update, creds)

        for raw_kind, payload in batch.items():
            kind = raw_kind if isinstance(raw_kind, EventKind) else EventKind.parse(raw_kind)
            if kind is None:
                logger.debug("Skipping unknown event kind %r", raw_kind)
                continue
            if kind is EventKind.CREDS_UPDATE:
                continue

            async_handler = self._async_handlers.get(kind)
            if async_handler is not None:
                self._enqueue(kind, async_handler, payload)
                continue

            sync_handler = self._sync_handlers.get(kind)
            if sync_handler is not None:
                try:
                    sync_handler(payload)
                except Exception:
                    logger.exception("Handler for %s failed", kind.value)

    def _enqueue(self, kind: EventKind, handler: AsyncKindHandler, payload: Any) -> None:
        previous = self._lanes.get(kind)
        task = asyncio.create_task(self._lane(kind, handler, payload, previous))
        self._lanes[kind] = task
        task.add_done_callback(lambda t, k=kind: self._release_lane(k, t))

    def _release_lane(self, kind: EventKind, task: asyncio.Task[None]) -> None:
        if self._lanes.get(kind) is task:
            del self._lanes[kind]

    async def _lane(
        self,
        kind: EventKind,
        handler: AsyncKindHandler,
        payload: Any,
        previous: asyncio.Task[None] | None,
    ) -> None:
        if previous is not None and not previous.done():
            await asyncio.wait({previous})
        await self._run(kind, handler, payload)

    async def _run(self, kind: EventKind, handler: AsyncKindHandler, payload: Any) -> None:
        try:
            await handler(payload)
        except Exception:
            logger.exception("Handler for %s failed", kind.value)

    async def join(self) -> None:
        """Wait until every scheduled handler has finished."""
        while self._lanes:
            await asyncio.wait(set(self._lanes.values()))

    @property
    def busy_kinds(self) -> set[EventKind]:
        return set(self._lanes)

    # -- Handlers: I/O --------------------------------------------------------

    async def _on_creds_update(self, payload: Any) -> None:
        await self._supervisor.persist_creds()

    async def _on_connection_update(self, payload: Any) -> None:
        await self._supervisor.handle_connection_update(ConnectionUpdate.from_payload(payload))

    async def _on_messages_upsert(self, upserts: list[dict[str, Any]]) -> None:
        if self._message_handler is None:
            return
        for upsert in upserts:
            await self._message_handler.handle_messages(upsert)

    async def _on_contacts_update(self, updates: list[dict[str, Any]]) -> None:
        for contact in updates:
            if "imgUrl" not in contact:
                continue
            # None means the picture was removed
            new_url = None
            if contact["imgUrl"] is not None:
                new_url = await self._lookup_profile_picture(contact.get("id", ""))
            if new_url:
                logger.debug("Contact %s has a new profile pic: %s", contact.get("id"), new_url)

    async def _lookup_profile_picture(self, jid: str) -> str | None:
        handle = self._supervisor.handle
        if handle is None:
            return None
        try:
            return await handle.profile_picture_url(jid)
        except Exception as exc:
            logger.debug("Profile picture lookup for %s failed: %s", jid, exc)
            return None

    async def _on_call(self, calls: list[dict[str, Any]]) -> None:
        logger.info("Call event received: %s", calls)
        bridge = self._supervisor.bridge
        if bridge is None:
            return
        for call in calls:
            try:
                await bridge.handle_call_notification(call)
            except Exception:
                logger.exception("Bridge call notification failed for %s", call.get("id"))

    # -- Handlers: log only ---------------------------------------------------

    def _on_messages_update(self, updates: list[Any]) -> None:
        logger.debug("Messages updated: %d", len(updates))

    def _on_receipt_update(self, receipts: list[Any]) -> None:
        logger.debug("Message receipt updated")

    def _on_reaction(self, reactions: list[Any]) -> None:
        logger.debug("Message reaction received")

    def _on_presence_update(self, presence: Any) -> None:
        logger.debug("Presence update: %s", presence)

    def _on_chats_update(self, chats: list[Any]) -> None:
        logger.debug("Chats updated: %d", len(chats))

    def _on_chats_delete(self, jids: list[Any]) -> None:
        logger.debug("Chats deleted: %d", len(jids))

    def _on_contacts_upsert(self, contacts: list[Any]) -> None:
        logger.debug("New contacts: %d", len(contacts))

    def _on_history_set(self, payload: Any) -> None:
        history = HistorySync.from_payload(payload)
        logger.info(
            "Received %d chats, %d contacts, %d msgs (latest: %s, progress: %s%%)",
            len(history.chats),
            len(history.contacts),
            len(history.messages),
            history.is_latest,
            history.progress,
        )

    def _on_label_association(self, associations: list[Any]) -> None:
        logger.debug("Label association: %s", associations)

    def _on_label_edit(self, labels: list[Any]) -> None:
        logger.debug("Label edited: %s", labels)
