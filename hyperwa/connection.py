# =============================================================================
# HyperWa -- Connection Handle
# =============================================================================
#
# One live session to the messaging service over a WebSocket. A handle is
# created per connection attempt and never reused after it closes.
#
# Incoming frames:  {"t": type, "p": payload, "id": optional}
#   Text:   JSON
#   Binary: M: (msgpack) or plain JSON
# Outgoing frames:  JSON text
#
# Close codes in [4000, 5000) carry a protocol status as ``code - 4000``.
# =============================================================================

from __future__ import annotations

import asyncio
import secrets
import time
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Protocol
from uuid import uuid4

import httpx
import msgpack
import orjson
import websockets
import websockets.asyncio.client
from websockets.exceptions import ConnectionClosed

from ._logging import logger
from .constants import (
    BROWSER,
    CLOSE_STATUS_BASE,
    CONNECTION_TIMEOUT,
    MAX_MESSAGE_SIZE,
    MSG_MAX_RETRIES,
    PREFIX_MSGPACK,
    QUERY_TIMEOUT,
    VERSION_FETCH_TIMEOUT,
)
from .errors import (
    DisconnectError,
    NotConnectedError,
    QueryTimeoutError,
    SetupError,
    TransportError,
)
from .events import EventStream
from .types import EventKind, MessageKey

if TYPE_CHECKING:
    from .auth import AuthState
    from .retry_cache import MessageRetryCache

GetMessage = Callable[[MessageKey], Awaitable[dict[str, Any] | None]]


class Connection(Protocol):
    """What the supervisor needs from a connection handle."""

    ev: EventStream
    user: dict[str, Any] | None

    async def open(self) -> None: ...

    async def send_message(
        self, jid: str, content: dict[str, Any], options: dict[str, Any] | None = None
    ) -> dict[str, Any]: ...

    async def profile_picture_url(self, jid: str) -> str | None: ...

    async def end(self) -> None: ...


ConnectionFactory = Callable[..., Connection]


async def fetch_latest_version(
    url: str,
    *,
    client: httpx.AsyncClient | None = None,
) -> tuple[tuple[int, ...], bool]:
    """Ask the discovery endpoint for the current protocol version.

    Returns ``(version, is_latest)``.

    Raises:
        SetupError: The endpoint could not be reached or answered garbage.
    """
    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=VERSION_FETCH_TIMEOUT)
    try:
        resp = await client.get(url)
        resp.raise_for_status()
        version = tuple(int(part) for part in resp.json()["version"])
    except (httpx.HTTPError, KeyError, TypeError, ValueError) as exc:
        raise SetupError(f"Version discovery failed: {exc}") from exc
    finally:
        if owns_client:
            await client.aclose()
    return version, True


def close_error(code: int | None, reason: str | None) -> DisconnectError:
    """Translate a WebSocket close code into a :class:`DisconnectError`."""
    if code is not None and CLOSE_STATUS_BASE <= code < CLOSE_STATUS_BASE + 1000:
        status = code - CLOSE_STATUS_BASE
        return DisconnectError(reason or f"Stream closed ({status})", status_code=status)
    return DisconnectError(reason or "Connection closed", status_code=None)


def _new_message_id() -> str:
    return "3EB0" + secrets.token_hex(8).upper()


class WebSocketConnection:
    """A single connection attempt and, once open, the live session.

    Args:
        url: WebSocket endpoint.
        version: Protocol version announced at login.
        auth: Credentials (mutated in place on ``creds`` frames) and keys.
        retry_cache: Process-wide delivery retry counters.
        get_message: Looks up stored content so a message can be resent
            when the peer asks for a retry.
        browser: Client identification triple.
    """

    def __init__(
        self,
        url: str,
        *,
        version: tuple[int, ...],
        auth: AuthState,
        retry_cache: MessageRetryCache,
        get_message: GetMessage,
        browser: tuple[str, str, str] = BROWSER,
    ) -> None:
        self._url = url
        self._version = version
        self._auth = auth
        self._retry_cache = retry_cache
        self._get_message = get_message
        self._browser = browser

        self.ev = EventStream()
        self.user: dict[str, Any] | None = None

        self._ws_cm: Any | None = None
        self._ws: websockets.asyncio.client.ClientConnection | None = None
        self._recv_task: asyncio.Task[None] | None = None
        self._pending: dict[str, asyncio.Future[dict[str, Any]]] = {}
        self._background_tasks: set[asyncio.Task[Any]] = set()
        self._closed = False

        self._frame_handlers: dict[str, Callable[[dict[str, Any], Any], Awaitable[None]]] = {
            "response": self._handle_response,
            "batch": self._handle_batch,
            "qr": self._handle_qr,
            "success": self._handle_success,
            "creds": self._handle_creds,
            "keys": self._handle_keys,
            "retry_request": self._handle_retry_request,
            "ping": self._handle_ping,
        }

    def _fire_task(self, coro: Any) -> None:
        """Schedule a coroutine with a strong reference to prevent GC."""
        task = asyncio.ensure_future(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._closed

    # -- Open / Close ---------------------------------------------------------

    async def open(self) -> None:
        """Open the socket, log in, start the receive loop."""
        if self._closed:
            raise TransportError("Connection handle already closed")

        self.ev.emit(EventKind.CONNECTION_UPDATE, {"connection": "connecting"})
        self.ev.flush()

        try:
            self._ws_cm = websockets.asyncio.client.connect(
                self._url,
                max_size=MAX_MESSAGE_SIZE,
                open_timeout=None,  # asyncio.wait_for handles timeout
            )
            self._ws = await asyncio.wait_for(self._ws_cm.__aenter__(), timeout=CONNECTION_TIMEOUT)
        except asyncio.TimeoutError:
            await self._discard_cm()
            raise TransportError(f"Connection timed out after {CONNECTION_TIMEOUT}s")
        except Exception as exc:
            await self._discard_cm()
            raise TransportError(f"Failed to connect: {exc}") from exc

        await self._send(
            {
                "t": "login",
                "p": {
                    "creds": self._auth.creds,
                    "version": list(self._version),
                    "browser": list(self._browser),
                },
            }
        )
        self._recv_task = asyncio.create_task(self._recv_loop())

    async def end(self) -> None:
        """Close the socket without reporting a disconnect."""
        if self._closed:
            return
        self._closed = True
        if self._recv_task and self._recv_task is not asyncio.current_task():
            self._recv_task.cancel()
            await asyncio.gather(self._recv_task, return_exceptions=True)
        self._recv_task = None
        for task in list(self._background_tasks):
            task.cancel()
        self._fail_pending(NotConnectedError("Connection ended"))
        await self._discard_cm()
        self._ws = None
        self.ev.close_nowait()

    async def _discard_cm(self) -> None:
        cm, self._ws_cm = self._ws_cm, None
        if cm is not None:
            try:
                await cm.__aexit__(None, None, None)
            except Exception as exc:
                logger.debug("Socket cleanup failed: %s", exc)

    def _fail_pending(self, exc: Exception) -> None:
        for fut in self._pending.values():
            if not fut.done():
                fut.set_exception(exc)
        self._pending.clear()

    def _on_closed(self, error: DisconnectError) -> None:
        """Report the close once, then seal the event stream."""
        if self._closed:
            return
        self._closed = True
        self._ws = None
        self._fail_pending(NotConnectedError(str(error)))
        if self._ws_cm is not None:
            self._fire_task(self._discard_cm())
        self.ev.emit(
            EventKind.CONNECTION_UPDATE,
            {
                "connection": "close",
                "lastDisconnect": {"error": error, "date": time.time()},
            },
        )
        self.ev.close_nowait()

    # -- Receive --------------------------------------------------------------

    async def _recv_loop(self) -> None:
        assert self._ws is not None
        ws = self._ws
        try:
            async for frame in ws:
                await self._handle_raw_frame(frame)
        except ConnectionClosed as exc:
            rcvd = exc.rcvd
            error = close_error(rcvd.code if rcvd else None, rcvd.reason if rcvd else None)
        except asyncio.CancelledError:
            return
        except Exception as exc:
            logger.warning("Receive loop error: %s", exc)
            error = DisconnectError(str(exc), status_code=None)
        else:
            error = close_error(ws.close_code, ws.close_reason)
        self._on_closed(error)

    def _decode(self, data: str | bytes) -> dict[str, Any] | None:
        if len(data) > MAX_MESSAGE_SIZE:
            logger.warning("Frame exceeds max size (%d bytes), dropping", len(data))
            return None
        try:
            if isinstance(data, bytes) and data[:2] == PREFIX_MSGPACK:
                parsed = msgpack.unpackb(data[2:], raw=False)
            else:
                parsed = orjson.loads(data)
        except (ValueError, TypeError) as exc:
            logger.debug("Undecodable frame: %s", exc)
            return None
        return parsed if isinstance(parsed, dict) else None

    async def _handle_raw_frame(self, data: str | bytes) -> None:
        frame = self._decode(data)
        if frame is None:
            return
        await self._handle_frame(frame)
        self.ev.flush()

    async def _handle_frame(self, frame: dict[str, Any]) -> None:
        type = frame.get("t", "")
        payload = frame.get("p")
        handler = self._frame_handlers.get(type)
        if handler is not None:
            await handler(frame, payload)
            return

        kind = EventKind.parse(type)
        if kind is None:
            logger.debug("Ignoring unknown frame type %r", type)
            return
        self.ev.emit(kind, payload)

    async def _handle_response(self, frame: dict[str, Any], payload: Any) -> None:
        fut = self._pending.get(frame.get("id", ""))
        if fut is not None and not fut.done():
            fut.set_result(frame)

    async def _handle_batch(self, frame: dict[str, Any], payload: Any) -> None:
        for inner in payload or []:
            if isinstance(inner, dict):
                await self._handle_frame(inner)

    async def _handle_qr(self, frame: dict[str, Any], payload: Any) -> None:
        code = payload.get("code") if isinstance(payload, dict) else payload
        if code:
            self.ev.emit(EventKind.CONNECTION_UPDATE, {"qr": code})

    async def _handle_success(self, frame: dict[str, Any], payload: Any) -> None:
        payload = payload or {}
        self.user = payload.get("user")
        creds_update = {"me": self.user, "registered": True}
        self._auth.creds.update(creds_update)
        self.ev.emit(EventKind.CREDS_UPDATE, creds_update)
        self.ev.emit(
            EventKind.CONNECTION_UPDATE,
            {"connection": "open", "isNewLogin": bool(payload.get("isNewLogin"))},
        )

    async def _handle_creds(self, frame: dict[str, Any], payload: Any) -> None:
        if isinstance(payload, dict):
            self._auth.creds.update(payload)
            self.ev.emit(EventKind.CREDS_UPDATE, payload)

    async def _handle_keys(self, frame: dict[str, Any], payload: Any) -> None:
        if isinstance(payload, dict):
            await self._auth.keys.set(payload)

    async def _handle_retry_request(self, frame: dict[str, Any], payload: Any) -> None:
        key = MessageKey.from_dict((payload or {}).get("key") or {})
        if key.id:
            self._fire_task(self._resend(key))

    async def _handle_ping(self, frame: dict[str, Any], payload: Any) -> None:
        await self._send({"t": "pong", "p": payload})

    async def _resend(self, key: MessageKey) -> None:
        """Resend stored content for a message the peer failed to decrypt."""
        count = self._retry_cache.increment(key.id)
        if count > MSG_MAX_RETRIES:
            logger.warning("Giving up on message %s after %d retries", key.id, MSG_MAX_RETRIES)
            self._retry_cache.delete(key.id)
            return
        content = await self._get_message(key)
        if content is None:
            logger.debug("No stored content for retry of %s", key.id)
            return
        await self._send(
            {
                "t": "message",
                "id": key.id,
                "p": {"jid": key.remote_jid, "content": content, "retry": count},
            }
        )

    # -- Send / Query ---------------------------------------------------------

    async def _send(self, frame: dict[str, Any]) -> None:
        if self._ws is None or self._closed:
            raise NotConnectedError("Connection is not open")
        try:
            await self._ws.send(orjson.dumps(frame).decode())
        except ConnectionClosed as exc:
            raise NotConnectedError(f"Send failed: {exc}") from exc

    async def _query(
        self,
        type: str,
        payload: dict[str, Any],
        *,
        id: str | None = None,
        timeout: float = QUERY_TIMEOUT,
    ) -> dict[str, Any]:
        """Send a frame and wait for the ``response`` frame with its id."""
        query_id = id or uuid4().hex
        fut: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[query_id] = fut
        try:
            await self._send({"t": type, "id": query_id, "p": payload})
            try:
                resp = await asyncio.wait_for(fut, timeout=timeout)
            except asyncio.TimeoutError:
                raise QueryTimeoutError(f"No response to {type} within {timeout}s")
        finally:
            self._pending.pop(query_id, None)

        if resp.get("error"):
            raise TransportError(f"{type} failed: {resp['error']}")
        return resp.get("p") or {}

    async def send_message(
        self,
        jid: str,
        content: dict[str, Any],
        options: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Send *content* to *jid* and record it as an ``append`` upsert."""
        options = dict(options or {})
        msg_id = options.pop("messageId", None) or _new_message_id()
        result = await self._query(
            "message",
            {"jid": jid, "content": content, "options": options},
            id=msg_id,
        )
        msg = {
            "key": MessageKey(remote_jid=jid, id=msg_id, from_me=True).to_dict(),
            "message": content,
            "messageTimestamp": result.get("t", int(time.time())),
            "status": result.get("status", "SERVER_ACK"),
        }
        self.ev.emit(EventKind.MESSAGES_UPSERT, {"messages": [msg], "type": "append"})
        self.ev.flush()
        return msg

    async def profile_picture_url(self, jid: str) -> str | None:
        result = await self._query("profile_picture", {"jid": jid, "type": "preview"})
        return result.get("url")
