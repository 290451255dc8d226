"""Test doubles for the connection handle, auth provider and bridge."""

import asyncio
from typing import Any
from unittest.mock import AsyncMock, MagicMock

from hyperwa.auth import AuthState
from hyperwa.events import EventStream
from hyperwa.types import EventKind


class MemoryKeyStore:
    def __init__(self) -> None:
        self.data: dict[tuple[str, str], Any] = {}
        self.get_calls = 0

    async def get(self, type: str, ids: list[str]) -> dict[str, Any]:
        self.get_calls += 1
        return {i: self.data[(type, i)] for i in ids if (type, i) in self.data}

    async def set(self, data: dict[str, dict[str, Any]]) -> None:
        for type, values in data.items():
            for key_id, value in values.items():
                if value is None:
                    self.data.pop((type, key_id), None)
                else:
                    self.data[(type, key_id)] = value


class FakeAuthProvider:
    def __init__(self) -> None:
        self.creds: dict[str, Any] = {"registered": False}
        self.keys = MemoryKeyStore()
        self.load_calls = 0
        self.persisted: list[dict[str, Any]] = []
        self.fail_load = False

    async def load(self) -> AuthState:
        self.load_calls += 1
        if self.fail_load:
            raise OSError("disk gone")
        return AuthState(creds=self.creds, keys=self.keys)

    async def persist(self, state: AuthState) -> None:
        self.persisted.append(dict(state.creds))

    async def clear(self) -> None:
        self.creds = {"registered": False}


class FakeConnection:
    """Connection handle double; tests drive events through ``ev``."""

    def __init__(self, url: str, **kwargs: Any) -> None:
        self.url = url
        self.kwargs = kwargs
        self.ev = EventStream()
        self.user: dict[str, Any] | None = {"id": "111@s.whatsapp.net", "name": "Tester"}
        self.opened = False
        self.ended = False
        self.fail_open = False
        self.send_message = AsyncMock(side_effect=self._send_message)
        self.profile_picture_url = AsyncMock(return_value=None)

    async def open(self) -> None:
        if self.fail_open:
            raise OSError("refused")
        self.opened = True

    async def end(self) -> None:
        self.ended = True
        self.ev.close_nowait()

    async def _send_message(self, jid: str, content: dict, options: dict | None = None) -> dict:
        return {"key": {"remoteJid": jid, "id": "MSG1", "fromMe": True}, "message": content}

    # -- Helpers for tests ----------------------------------------------------

    def emit_open(self) -> None:
        self.ev.emit_batch({EventKind.CONNECTION_UPDATE: {"connection": "open"}})

    def emit_close(self, error: BaseException | None = None) -> None:
        self.ev.emit(
            EventKind.CONNECTION_UPDATE,
            {"connection": "close", "lastDisconnect": {"error": error, "date": 0}},
        )
        self.ev.close_nowait()


class ConnectionRecorder:
    """Connection factory that remembers every handle it built."""

    def __init__(self) -> None:
        self.created: list[FakeConnection] = []
        self.fail_open_next = 0

    def __call__(self, url: str, **kwargs: Any) -> FakeConnection:
        conn = FakeConnection(url, **kwargs)
        if self.fail_open_next:
            conn.fail_open = True
            self.fail_open_next -= 1
        self.created.append(conn)
        return conn

    @property
    def last(self) -> FakeConnection:
        return self.created[-1]


def make_bridge() -> MagicMock:
    bridge = MagicMock()
    for name in (
        "initialize",
        "setup_handlers",
        "send_qr_code",
        "handle_call_notification",
        "send_to_all_users",
        "sync_contacts",
        "update_topic_names",
        "send_start_message",
        "shutdown",
    ):
        setattr(bridge, name, AsyncMock())
    return bridge


async def until(predicate, timeout: float = 1.0) -> None:
    """Yield to the loop until *predicate* holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0)
