# =============================================================================
# HyperWa -- Connection Supervisor
# =============================================================================
#
# Owns the single live connection handle. Establishes it, classifies each
# close, and drives reconnection from one loop task:
#
#   IDLE -> CONNECTING -> OPEN -> CLOSING_RECONNECT -> (backoff) CONNECTING
#                              -> CLOSING_TERMINAL (logout / retries spent)
#
# CLOSING_TERMINAL is absorbing.
# =============================================================================

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from ._logging import logger
from .auth import AuthState
from .connection import WebSocketConnection, fetch_latest_version
from .constants import BROWSER, DEFAULT_URL, DEFAULT_VERSION_URL, MAX_RETRIES, DisconnectReason
from .errors import NotConnectedError, SetupError
from .key_store import CachingKeyStore
from .qr import print_qr
from .retry_cache import MessageRetryCache
from .router import EventRouter
from .store import SessionStore
from .types import ConnectionState, ConnectionUpdate, MessageKey, RetryState

if TYPE_CHECKING:
    from .auth import AuthProvider
    from .bridge import Bridge
    from .connection import Connection, ConnectionFactory
    from .handler import MessageHandler
    from .modules import ModuleLoader

VersionFetcher = Callable[[str], Awaitable[tuple[tuple[int, ...], bool]]]

LOGGED_OUT_NOTICE = "WhatsApp connection closed. You have been logged out."
MAX_RETRIES_NOTICE = "Connection lost. Max reconnection attempts reached. Please restart the bot."


class ConnectionSupervisor:
    """Keeps exactly one live connection until logout or retries run out.

    Args:
        auth_provider: Loads credentials for every attempt and persists
            them on ``creds.update``.
        url: WebSocket endpoint.
        version: Pinned protocol version; discovered from *version_url*
            when ``None``.
        max_retries: Consecutive reconnects allowed after an open.
        store: Session store, kept across reconnects.
        retry_cache: Delivery retry counters shared by every handle.
        message_handler: Receives routed ``messages.upsert``.
        module_loader: Run after every open.
        bridge_factory: Builds the bridge on the first open; ``None`` when
            no bridge is configured.
        connection_factory: Builds a handle (``WebSocketConnection``).
        version_fetcher: Version discovery call.
        qr_fallback: Renders a QR code when there is no bridge.
        sleep: Backoff delay primitive.
    """

    def __init__(
        self,
        auth_provider: AuthProvider,
        *,
        url: str = DEFAULT_URL,
        version: tuple[int, ...] | None = None,
        version_url: str = DEFAULT_VERSION_URL,
        max_retries: int = MAX_RETRIES,
        store: SessionStore | None = None,
        retry_cache: MessageRetryCache | None = None,
        message_handler: MessageHandler | None = None,
        module_loader: ModuleLoader | None = None,
        bridge_factory: Callable[[], Bridge] | None = None,
        connection_factory: ConnectionFactory = WebSocketConnection,
        version_fetcher: VersionFetcher = fetch_latest_version,
        qr_fallback: Callable[[str], Any] = print_qr,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._auth_provider = auth_provider
        self._url = url
        self._version = version
        self._version_url = version_url
        self._module_loader = module_loader
        self._bridge_factory = bridge_factory
        self._connection_factory = connection_factory
        self._version_fetcher = version_fetcher
        self._qr_fallback = qr_fallback
        self._sleep = sleep

        self.store = store or SessionStore()
        self.retry_cache = retry_cache or MessageRetryCache()
        self.retry = RetryState(max_retries=max_retries)
        self.router = EventRouter(self, message_handler)

        self.handle: Connection | None = None
        self.bridge: Bridge | None = None
        self._auth_state: AuthState | None = None
        self._state = ConnectionState.IDLE
        self._state_listeners: list[Callable[[ConnectionState], Any]] = []

        self._reconnects: asyncio.Queue[float | None] = asyncio.Queue()
        self._loop_task: asyncio.Task[None] | None = None
        self.establish_count = 0

    # -- Properties -----------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self.handle is not None and self._state == ConnectionState.OPEN

    @property
    def is_terminal(self) -> bool:
        return self._state == ConnectionState.CLOSING_TERMINAL

    @property
    def user(self) -> dict[str, Any] | None:
        return self.handle.user if self.handle is not None else None

    def on_state_change(self, listener: Callable[[ConnectionState], Any]) -> None:
        self._state_listeners.append(listener)

    def _set_state(self, new_state: ConnectionState) -> None:
        if new_state == self._state:
            return
        old = self._state
        self._state = new_state
        logger.debug("State: %s -> %s", old.value, new_state.value)
        for listener in self._state_listeners:
            try:
                listener(new_state)
            except Exception:
                logger.exception("State listener failed")

    # -- Start / Establish ----------------------------------------------------

    async def start(self) -> None:
        """First establish plus the reconnect loop. Setup errors propagate."""
        if self._loop_task is None:
            self._loop_task = asyncio.create_task(self._supervise())
        try:
            await self.establish()
        except BaseException:
            await self._stop_loop()
            raise

    async def establish(self) -> None:
        """Create, bind and open a fresh connection handle.

        Does not retry; any failure is raised as :class:`SetupError`.
        """
        if self.is_terminal:
            raise SetupError("Supervisor is terminal; restart required")
        if self.handle is not None:
            raise SetupError("A connection handle is already live")

        self._set_state(ConnectionState.CONNECTING)
        self.establish_count += 1
        handle: Connection | None = None
        try:
            state = await self._auth_provider.load()
            self._auth_state = state

            version = self._version
            if version is None:
                version, is_latest = await self._version_fetcher(self._version_url)
                logger.info("Using WA v%s, isLatest: %s", ".".join(map(str, version)), is_latest)

            handle = self._connection_factory(
                self._url,
                version=version,
                auth=AuthState(creds=state.creds, keys=CachingKeyStore(state.keys)),
                retry_cache=self.retry_cache,
                get_message=self.get_message,
                browser=BROWSER,
            )
            self.store.bind(handle.ev)
            handle.ev.process(self.router.dispatch)
            self.handle = handle
            await handle.open()
        except Exception as exc:
            self.handle = None
            if handle is not None:
                await handle.end()
            if self._state == ConnectionState.CONNECTING:
                self._set_state(ConnectionState.IDLE)
            logger.error("Failed to start connection: %s", exc)
            if isinstance(exc, SetupError):
                raise
            raise SetupError(str(exc)) from exc

        logger.info("WhatsApp connection started")

    # -- Reconnect loop -------------------------------------------------------

    async def _supervise(self) -> None:
        while True:
            delay = await self._reconnects.get()
            if delay is None:
                return
            await self._sleep(delay)
            if self._state != ConnectionState.CLOSING_RECONNECT:
                continue
            try:
                await self.establish()
            except SetupError as exc:
                logger.warning("Reconnect attempt %d failed: %s", self.retry.retry_count, exc)
                await self.on_connection_closed(exc, getattr(exc.__cause__, "status_code", None))

    async def _stop_loop(self) -> None:
        task, self._loop_task = self._loop_task, None
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    # -- Connection updates ---------------------------------------------------

    async def handle_connection_update(self, update: ConnectionUpdate) -> None:
        if update.qr:
            await self.on_qr_needed(update.qr)

        if update.connection == "close":
            last = update.last_disconnect
            await self.on_connection_closed(
                last.error if last else None,
                last.status_code if last else None,
            )
        elif update.connection == "open":
            await self.on_connection_opened()
        elif update.connection == "connecting":
            logger.info("Connecting to WhatsApp...")

    async def on_connection_closed(
        self,
        last_error: BaseException | None,
        status_code: int | None,
    ) -> None:
        """Classify a close and either schedule a reconnect or stop."""
        if self.is_terminal:
            return
        self.handle = None

        should_reconnect = status_code != DisconnectReason.LOGGED_OUT
        logger.info(
            "Connection closed due to %s, reconnecting: %s",
            last_error or "unknown reason",
            should_reconnect,
        )

        if not should_reconnect:
            self._set_state(ConnectionState.CLOSING_TERMINAL)
            logger.info("Connection closed permanently. You are logged out.")
            await self._notify(LOGGED_OUT_NOTICE)
            return

        if self.retry.exhausted:
            self._set_state(ConnectionState.CLOSING_TERMINAL)
            logger.error("Max reconnection attempts reached. Please restart the bot.")
            await self._notify(MAX_RETRIES_NOTICE)
            return

        self.retry.retry_count += 1
        delay = self.retry.delay()
        self._set_state(ConnectionState.CLOSING_RECONNECT)
        logger.info(
            "Reconnecting in %.0f seconds (attempt %d/%d)...",
            delay,
            self.retry.retry_count,
            self.retry.max_retries,
        )
        self._reconnects.put_nowait(delay)

    async def on_connection_opened(self) -> None:
        self.retry.reset()
        self._set_state(ConnectionState.OPEN)
        user = self.user or {}
        logger.info("WhatsApp connection opened successfully")
        logger.info("Connected as: %s (%s)", user.get("name") or "Unknown", user.get("id") or "Unknown ID")

        if self._module_loader is not None:
            try:
                await self._module_loader.load_modules()
            except Exception:
                logger.exception("Module loading failed")

        if self._bridge_factory is None:
            return
        try:
            if self.bridge is None:
                self.bridge = self._bridge_factory()
                await self.bridge.initialize()
                await self.bridge.setup_handlers()
            await self.bridge.sync_contacts()
            await self.bridge.update_topic_names()
            await self.bridge.send_start_message()
        except Exception:
            logger.exception("Bridge startup failed")

    async def on_qr_needed(self, qr: str) -> None:
        logger.info("QR Code received")
        if self.bridge is not None:
            try:
                await self.bridge.send_qr_code(qr)
            except Exception:
                logger.exception("Bridge failed to deliver QR code")
        else:
            self._qr_fallback(qr)

    async def _notify(self, text: str) -> None:
        if self.bridge is None:
            return
        try:
            await self.bridge.send_to_all_users(text)
        except Exception:
            logger.exception("Bridge notification failed")

    # -- Collaborator callbacks -----------------------------------------------

    async def persist_creds(self) -> None:
        if self._auth_state is not None:
            await self._auth_provider.persist(self._auth_state)

    async def get_message(self, key: MessageKey | dict[str, Any]) -> dict[str, Any] | None:
        """Stored content for *key*, or ``None`` when not found."""
        try:
            if isinstance(key, dict):
                key = MessageKey.from_dict(key)
            msg = self.store.load_message(key.remote_jid, key.id)
        except Exception as exc:
            logger.debug("Store lookup for %r failed: %s", key, exc)
            return None
        if msg is None:
            return None
        return msg.get("message")

    async def send_message(
        self,
        jid: str,
        content: dict[str, Any],
        options: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        handle = self.handle
        if handle is None or self._state != ConnectionState.OPEN:
            raise NotConnectedError("WhatsApp socket not connected")
        return await handle.send_message(jid, content, options or {})

    # -- Shutdown -------------------------------------------------------------

    async def shutdown(self) -> None:
        """Bridge first, then the handle; each failure is logged only."""
        self._set_state(ConnectionState.CLOSING_TERMINAL)
        self._reconnects.put_nowait(None)

        if self.bridge is not None:
            try:
                await self.bridge.shutdown()
            except Exception:
                logger.exception("Error shutting down bridge")

        handle, self.handle = self.handle, None
        if handle is not None:
            try:
                await handle.end()
            except Exception:
                logger.exception("Error closing connection")

        await self._stop_loop()
