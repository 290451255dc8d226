# =============================================================================
# HyperWa -- Bot
# =============================================================================
#
# Process-level facade: opens the database, builds the collaborators, hands
# them to one ConnectionSupervisor, and exposes the public surface.
# =============================================================================

from __future__ import annotations

from typing import Any, Callable

import aiosqlite

from ._logging import logger
from .auth import select_auth_provider
from .bridge import Bridge, TelegramBridge
from .config import BotConfig
from .connection import ConnectionFactory, WebSocketConnection, fetch_latest_version
from .errors import HyperWaError, NotConnectedError, SetupError
from .handler import MessageHandler
from .modules import ModuleLoader
from .store import SessionStore
from .supervisor import ConnectionSupervisor, VersionFetcher


class HyperWaBot:
    """Messaging bot with automatic reconnection and an optional bridge.

    Args:
        config: Bot configuration.
        connection_factory: Override the transport (tests).
        version_fetcher: Override version discovery (tests).
        bridge_factory: Override bridge construction; defaults to a
            :class:`TelegramBridge` when ``telegram.enabled``.

    Example::

        bot = HyperWaBot(BotConfig.load("config.json"))
        await bot.initialize()
        await bot.send_message("123@s.whatsapp.net", {"text": "hi"})
        await bot.shutdown()
    """

    def __init__(
        self,
        config: BotConfig | None = None,
        *,
        connection_factory: ConnectionFactory = WebSocketConnection,
        version_fetcher: VersionFetcher = fetch_latest_version,
        bridge_factory: Callable[[], Bridge] | None = None,
    ) -> None:
        self.config = config or BotConfig()
        self._connection_factory = connection_factory
        self._version_fetcher = version_fetcher
        self._bridge_factory = bridge_factory

        self.db: aiosqlite.Connection | None = None
        self.store = SessionStore()
        self.message_handler: MessageHandler | None = None
        self.module_loader: ModuleLoader | None = None
        self.supervisor: ConnectionSupervisor | None = None
        self.is_initialized = False

    # -- Properties -----------------------------------------------------------

    @property
    def user(self) -> dict[str, Any] | None:
        return self.supervisor.user if self.supervisor else None

    @property
    def bridge(self) -> Bridge | None:
        return self.supervisor.bridge if self.supervisor else None

    # -- Lifecycle ------------------------------------------------------------

    async def initialize(self) -> None:
        """Open storage, build collaborators, establish the first connection.

        Any failure is fatal and propagates to the caller as a
        :class:`HyperWaError` (storage and filesystem errors become
        :class:`SetupError`).
        """
        logger.info("Initializing HyperWa Bot...")
        try:
            self.db = await aiosqlite.connect(self.config.get("database.path"))
            logger.info("Database connected")

            self.message_handler = MessageHandler()
            self.module_loader = ModuleLoader(self, self.config.get("modules.enabled"))

            auth_provider = select_auth_provider(self.config, self.db)
            if self.config.get("auth.clearAuthOnStart"):
                await auth_provider.clear()

            pinned = self.config.get("connection.version")
            self.supervisor = ConnectionSupervisor(
                auth_provider,
                url=self.config.get("connection.url"),
                version=tuple(int(part) for part in pinned) if pinned else None,
                version_url=self.config.get("connection.versionUrl"),
                max_retries=self.config.get("connection.maxRetries"),
                store=self.store,
                message_handler=self.message_handler,
                module_loader=self.module_loader,
                bridge_factory=self._make_bridge_factory(),
                connection_factory=self._connection_factory,
                version_fetcher=self._version_fetcher,
            )
            await self.supervisor.start()
        except Exception as exc:
            logger.exception("Failed to initialize bot")
            await self._close_db()
            if isinstance(exc, HyperWaError):
                raise
            raise SetupError(f"Initialization failed: {exc}") from exc

        self.is_initialized = True
        logger.info("HyperWa Bot initialization complete")

    def _make_bridge_factory(self) -> Callable[[], Bridge] | None:
        if not self.config.get("telegram.enabled"):
            return None
        if self._bridge_factory is not None:
            return self._bridge_factory
        return lambda: TelegramBridge(self, self.config.telegram)

    async def shutdown(self) -> None:
        """Best-effort teardown: bridge, connection, then database."""
        logger.info("Shutting down HyperWa Bot...")
        if self.supervisor is not None:
            await self.supervisor.shutdown()
        await self._close_db()
        logger.info("HyperWa Bot shutdown complete")

    async def _close_db(self) -> None:
        db, self.db = self.db, None
        if db is None:
            return
        try:
            await db.close()
        except Exception:
            logger.exception("Error closing database")

    # -- Public API -----------------------------------------------------------

    async def send_message(
        self,
        jid: str,
        content: dict[str, Any],
        options: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Send through the live connection.

        Raises:
            NotConnectedError: No connection is open.
        """
        if self.supervisor is None:
            raise NotConnectedError("WhatsApp socket not initialized")
        try:
            return await self.supervisor.send_message(jid, content, options)
        except Exception as exc:
            logger.error("Failed to send message: %s", exc)
            raise

    def get_contact_info(self, jid: str | None) -> dict[str, Any] | None:
        if not jid:
            return None
        return self.store.contact(jid)
