# =============================================================================
# HyperWa -- Session Store
# =============================================================================
#
# In-memory read-through cache of chats, contacts and recent messages, fed by
# the event stream it is bound to. The supervisor keeps one store for the
# process and rebinds it to every new connection.
# =============================================================================

from __future__ import annotations

from collections import OrderedDict
from typing import TYPE_CHECKING, Any

from ._logging import logger
from .constants import STORE_MESSAGES_PER_CHAT
from .types import EventBatch, EventKind, HistorySync

if TYPE_CHECKING:
    from .events import EventStream


class SessionStore:
    """Chats, contacts and a bounded per-chat message window.

    Args:
        max_messages_per_chat: Oldest messages beyond this are evicted.
    """

    def __init__(self, *, max_messages_per_chat: int = STORE_MESSAGES_PER_CHAT) -> None:
        self._max_messages = max_messages_per_chat
        self.chats: dict[str, dict[str, Any]] = {}
        self.contacts: dict[str, dict[str, Any]] = {}
        self.messages: dict[str, OrderedDict[str, dict[str, Any]]] = {}

        self._handlers = {
            EventKind.MESSAGES_UPSERT: self._on_messages_upsert,
            EventKind.MESSAGES_UPDATE: self._on_messages_update,
            EventKind.CHATS_UPDATE: self._on_chats_update,
            EventKind.CHATS_DELETE: self._on_chats_delete,
            EventKind.CONTACTS_UPSERT: self._on_contacts_upsert,
            EventKind.CONTACTS_UPDATE: self._on_contacts_update,
            EventKind.HISTORY_SET: self._on_history_set,
        }

    def bind(self, stream: EventStream) -> None:
        """Observe every batch *stream* flushes."""
        stream.listen(self.apply)

    def apply(self, batch: EventBatch) -> None:
        for kind, payload in batch.items():
            handler = self._handlers.get(kind)
            if handler is not None:
                handler(payload)

    # -- Queries --------------------------------------------------------------

    def load_message(self, chat_id: str, msg_id: str) -> dict[str, Any] | None:
        chat = self.messages.get(chat_id)
        if chat is None:
            return None
        return chat.get(msg_id)

    def contact(self, jid: str) -> dict[str, Any] | None:
        return self.contacts.get(jid)

    def chat(self, jid: str) -> dict[str, Any] | None:
        return self.chats.get(jid)

    def get_stats(self) -> dict[str, int]:
        return {
            "chats": len(self.chats),
            "contacts": len(self.contacts),
            "messages": sum(len(m) for m in self.messages.values()),
        }

    # -- Event handlers -------------------------------------------------------

    def _insert_message(self, msg: dict[str, Any]) -> None:
        key = msg.get("key") or {}
        chat_id = key.get("remoteJid")
        msg_id = key.get("id")
        if not chat_id or not msg_id:
            return
        chat = self.messages.setdefault(chat_id, OrderedDict())
        if msg_id in chat:
            chat[msg_id] = {**chat[msg_id], **msg}
        else:
            chat[msg_id] = msg
        while len(chat) > self._max_messages:
            chat.popitem(last=False)

    def _on_messages_upsert(self, upserts: list[dict[str, Any]]) -> None:
        for upsert in upserts:
            for msg in upsert.get("messages", []):
                self._insert_message(msg)

    def _on_messages_update(self, updates: list[dict[str, Any]]) -> None:
        for item in updates:
            key = item.get("key") or {}
            stored = self.load_message(key.get("remoteJid", ""), key.get("id", ""))
            if stored is not None:
                stored.update(item.get("update") or {})

    def _on_chats_update(self, chats: list[dict[str, Any]]) -> None:
        for chat in chats:
            jid = chat.get("id")
            if jid:
                self.chats[jid] = {**self.chats.get(jid, {}), **chat}

    def _on_chats_delete(self, jids: list[str]) -> None:
        for jid in jids:
            self.chats.pop(jid, None)
            self.messages.pop(jid, None)

    def _on_contacts_upsert(self, contacts: list[dict[str, Any]]) -> None:
        for contact in contacts:
            jid = contact.get("id")
            if jid:
                self.contacts[jid] = {**self.contacts.get(jid, {}), **contact}

    def _on_contacts_update(self, updates: list[dict[str, Any]]) -> None:
        for update in updates:
            jid = update.get("id")
            if jid in self.contacts:
                self.contacts[jid].update(update)

    def _on_history_set(self, payload: Any) -> None:
        history = HistorySync.from_payload(payload)
        if history.is_latest:
            self.chats.clear()
            self.contacts.clear()
            self.messages.clear()
        self._on_chats_update(history.chats)
        self._on_contacts_upsert(history.contacts)
        for msg in history.messages:
            self._insert_message(msg)
        logger.debug("Store synced history: %s", self.get_stats())
