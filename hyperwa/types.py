# =============================================================================
# HyperWa -- Type Definitions
# =============================================================================

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .constants import MAX_RETRIES, RECONNECT_BASE_DELAY, RECONNECT_MAX_DELAY


class ConnectionState(str, Enum):
    """Supervisor lifecycle state.

    Typical flow: IDLE -> CONNECTING -> OPEN -> CLOSING_RECONNECT ->
    CONNECTING -> ... CLOSING_TERMINAL is absorbing: no further connection
    attempts without a process restart.
    """

    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING_RECONNECT = "closing-reconnect"
    CLOSING_TERMINAL = "closing-terminal"


class EventKind(str, Enum):
    """Closed set of event kinds a connection reports.

    Values are the wire names used by the transport.
    """

    CONNECTION_UPDATE = "connection.update"
    CREDS_UPDATE = "creds.update"
    MESSAGES_UPSERT = "messages.upsert"
    MESSAGES_UPDATE = "messages.update"
    MESSAGE_RECEIPT_UPDATE = "message-receipt.update"
    MESSAGES_REACTION = "messages.reaction"
    PRESENCE_UPDATE = "presence.update"
    CHATS_UPDATE = "chats.update"
    CHATS_DELETE = "chats.delete"
    CONTACTS_UPDATE = "contacts.update"
    CONTACTS_UPSERT = "contacts.upsert"
    CALL = "call"
    HISTORY_SET = "messaging-history.set"
    LABELS_ASSOCIATION = "labels.association"
    LABELS_EDIT = "labels.edit"

    @classmethod
    def parse(cls, name: str) -> EventKind | None:
        try:
            return cls(name)
        except ValueError:
            return None


# Kinds whose payload is merged (dict) rather than concatenated (list)
MERGED_KINDS = frozenset(
    {
        EventKind.CONNECTION_UPDATE,
        EventKind.CREDS_UPDATE,
        EventKind.PRESENCE_UPDATE,
        EventKind.HISTORY_SET,
    }
)

EventBatch = dict[EventKind, Any]


@dataclass(frozen=True, slots=True)
class MessageKey:
    """Identifies one message: chat JID plus message id."""

    remote_jid: str
    id: str
    from_me: bool = False
    participant: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MessageKey:
        return cls(
            remote_jid=data.get("remoteJid", ""),
            id=data.get("id", ""),
            from_me=bool(data.get("fromMe", False)),
            participant=data.get("participant"),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "remoteJid": self.remote_jid,
            "id": self.id,
            "fromMe": self.from_me,
        }
        if self.participant:
            data["participant"] = self.participant
        return data


@dataclass
class LastDisconnect:
    """Why the last connection closed.

    Attributes:
        error: The close cause, or ``None`` when unknown.
        date: ``time.time()`` of the close.
    """

    error: BaseException | None = None
    date: float | None = None

    @property
    def status_code(self) -> int | None:
        return getattr(self.error, "status_code", None)


@dataclass
class ConnectionUpdate:
    """Payload of a ``connection.update`` event."""

    connection: str | None = None  # "connecting" | "open" | "close"
    qr: str | None = None
    last_disconnect: LastDisconnect | None = None
    is_new_login: bool | None = None

    @classmethod
    def from_payload(cls, payload: Any) -> ConnectionUpdate:
        if isinstance(payload, ConnectionUpdate):
            return payload
        payload = payload or {}
        last = payload.get("lastDisconnect")
        if isinstance(last, dict):
            last = LastDisconnect(error=last.get("error"), date=last.get("date"))
        return cls(
            connection=payload.get("connection"),
            qr=payload.get("qr"),
            last_disconnect=last,
            is_new_login=payload.get("isNewLogin"),
        )


@dataclass
class HistorySync:
    """Payload of a ``messaging-history.set`` event."""

    chats: list[dict[str, Any]] = field(default_factory=list)
    contacts: list[dict[str, Any]] = field(default_factory=list)
    messages: list[dict[str, Any]] = field(default_factory=list)
    is_latest: bool = False
    progress: float | None = None
    sync_type: str | None = None

    @classmethod
    def from_payload(cls, payload: Any) -> HistorySync:
        if isinstance(payload, HistorySync):
            return payload
        payload = payload or {}
        return cls(
            chats=list(payload.get("chats") or []),
            contacts=list(payload.get("contacts") or []),
            messages=list(payload.get("messages") or []),
            is_latest=bool(payload.get("isLatest", False)),
            progress=payload.get("progress"),
            sync_type=payload.get("syncType"),
        )


@dataclass
class RetryState:
    """Reconnect bookkeeping owned by the supervisor.

    Attributes:
        retry_count: Reconnect decisions since the last successful open.
        max_retries: Ceiling; a decision past it is terminal.
    """

    retry_count: int = 0
    max_retries: int = MAX_RETRIES

    def reset(self) -> None:
        self.retry_count = 0

    @property
    def exhausted(self) -> bool:
        return self.retry_count >= self.max_retries

    def delay(self) -> float:
        """Backoff before the current attempt, in seconds.

        ``min(1000 * 2**retry_count, 30000)`` milliseconds.
        """
        return min(RECONNECT_BASE_DELAY * (2**self.retry_count), RECONNECT_MAX_DELAY)
