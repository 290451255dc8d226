"""Tests for SessionStore."""

from hyperwa.events import EventStream
from hyperwa.store import SessionStore
from hyperwa.types import EventKind


def _msg(chat, msg_id, text="hi"):
    return {"key": {"remoteJid": chat, "id": msg_id}, "message": {"conversation": text}}


class TestMessages:
    def test_upsert_then_load(self):
        store = SessionStore()
        store.apply({EventKind.MESSAGES_UPSERT: [{"messages": [_msg("a", "1")], "type": "notify"}]})
        assert store.load_message("a", "1")["message"] == {"conversation": "hi"}
        assert store.load_message("a", "2") is None
        assert store.load_message("b", "1") is None

    def test_window_evicts_oldest(self):
        store = SessionStore(max_messages_per_chat=2)
        msgs = [_msg("a", str(i)) for i in range(3)]
        store.apply({EventKind.MESSAGES_UPSERT: [{"messages": msgs, "type": "append"}]})
        assert store.load_message("a", "0") is None
        assert store.load_message("a", "2") is not None

    def test_update_patches_stored(self):
        store = SessionStore()
        store.apply({EventKind.MESSAGES_UPSERT: [{"messages": [_msg("a", "1")], "type": "notify"}]})
        store.apply({EventKind.MESSAGES_UPDATE: [{"key": {"remoteJid": "a", "id": "1"}, "update": {"status": 3}}]})
        assert store.load_message("a", "1")["status"] == 3

    def test_keyless_message_ignored(self):
        store = SessionStore()
        store.apply({EventKind.MESSAGES_UPSERT: [{"messages": [{"message": {}}], "type": "notify"}]})
        assert store.get_stats()["messages"] == 0


class TestChatsAndContacts:
    def test_contacts_upsert_and_update(self):
        store = SessionStore()
        store.apply({EventKind.CONTACTS_UPSERT: [{"id": "a", "name": "Alice"}]})
        store.apply({EventKind.CONTACTS_UPDATE: [{"id": "a", "notify": "Al"}, {"id": "zz", "notify": "?"}]})
        assert store.contact("a") == {"id": "a", "name": "Alice", "notify": "Al"}
        assert store.contact("zz") is None

    def test_chat_delete_drops_messages(self):
        store = SessionStore()
        store.apply(
            {
                EventKind.CHATS_UPDATE: [{"id": "a", "unreadCount": 1}],
                EventKind.MESSAGES_UPSERT: [{"messages": [_msg("a", "1")], "type": "notify"}],
            }
        )
        store.apply({EventKind.CHATS_DELETE: ["a"]})
        assert store.chat("a") is None
        assert store.load_message("a", "1") is None

    def test_latest_history_replaces_state(self):
        store = SessionStore()
        store.apply({EventKind.CONTACTS_UPSERT: [{"id": "old"}]})
        store.apply(
            {
                EventKind.HISTORY_SET: {
                    "chats": [{"id": "a"}],
                    "contacts": [{"id": "b"}],
                    "messages": [_msg("a", "1")],
                    "isLatest": True,
                }
            }
        )
        assert store.contact("old") is None
        assert store.get_stats() == {"chats": 1, "contacts": 1, "messages": 1}


class TestBinding:
    def test_bound_stream_feeds_store(self):
        store = SessionStore()
        stream = EventStream()
        store.bind(stream)
        stream.emit_batch({EventKind.CONTACTS_UPSERT: [{"id": "a"}]})
        assert store.contact("a") == {"id": "a"}

    def test_rebinding_keeps_state(self):
        store = SessionStore()
        first, second = EventStream(), EventStream()
        store.bind(first)
        first.emit_batch({EventKind.CONTACTS_UPSERT: [{"id": "a"}]})
        store.bind(second)
        second.emit_batch({EventKind.CONTACTS_UPSERT: [{"id": "b"}]})
        assert store.get_stats()["contacts"] == 2
