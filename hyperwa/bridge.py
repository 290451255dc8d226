# =============================================================================
# HyperWa -- Telegram Bridge
# =============================================================================
#
# Relays lifecycle notices and chat traffic to a Telegram supergroup through
# the Bot API. Each chat gets a forum topic; the supervisor drives the sync
# steps (contacts, topic names, start message) after every open.
# =============================================================================

from __future__ import annotations

import html
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from ._logging import logger
from .errors import BridgeError
from .qr import render_qr

if TYPE_CHECKING:
    from .bot import HyperWaBot
    from .config import TelegramConfig

TELEGRAM_MAX_MESSAGE_LENGTH = 4096
TOPIC_NAME_MAX_LENGTH = 128
API_TIMEOUT = 30.0


class Bridge(Protocol):
    """Calls the supervisor and router make on a secondary-platform bridge."""

    async def initialize(self) -> None: ...

    async def setup_handlers(self) -> None: ...

    async def send_qr_code(self, qr: str) -> None: ...

    async def handle_call_notification(self, call: dict[str, Any]) -> None: ...

    async def send_to_all_users(self, text: str) -> None: ...

    async def sync_contacts(self) -> None: ...

    async def update_topic_names(self) -> None: ...

    async def send_start_message(self) -> None: ...

    async def shutdown(self) -> None: ...


def _truncate(text: str, limit: int = TELEGRAM_MAX_MESSAGE_LENGTH) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 1] + "…"


def _message_text(msg: dict[str, Any]) -> str | None:
    content = msg.get("message") or {}
    if "conversation" in content:
        return content["conversation"]
    extended = content.get("extendedTextMessage") or {}
    return extended.get("text")


class TelegramBridge:
    """Bot API relay into one forum supergroup.

    Args:
        bot: Owning bot; its session store names contacts and chats.
        config: Token, owner chat and admin list.
        client: Injected HTTP client (tests); created on ``initialize``
            otherwise.
    """

    def __init__(
        self,
        bot: HyperWaBot,
        config: TelegramConfig,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._bot = bot
        self._config = config
        self._client = client
        self._owns_client = client is None
        self._bot_info: dict[str, Any] | None = None

        self.contact_names: dict[str, str] = {}
        self.chat_topics: dict[str, int] = {}

    # -- Bot API --------------------------------------------------------------

    async def _api(self, method: str, params: dict[str, Any] | None = None) -> Any:
        if self._client is None:
            raise BridgeError("Telegram bridge is not initialized")
        url = f"{self._config.api_url}/bot{self._config.bot_token}/{method}"
        try:
            resp = await self._client.post(url, json=params or {})
            data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise BridgeError(f"Telegram {method} failed: {exc}") from exc
        if not data.get("ok"):
            raise BridgeError(f"Telegram {method} failed: {data.get('description', 'unknown error')}")
        return data.get("result")

    async def _send(self, chat_id: str | int, text: str, *, topic_id: int | None = None) -> None:
        params: dict[str, Any] = {
            "chat_id": chat_id,
            "text": _truncate(text),
            "parse_mode": "HTML",
        }
        if topic_id is not None:
            params["message_thread_id"] = topic_id
        await self._api("sendMessage", params)

    # -- Lifecycle ------------------------------------------------------------

    async def initialize(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=API_TIMEOUT)
        self._bot_info = await self._api("getMe")
        logger.info("Telegram bridge ready as @%s", (self._bot_info or {}).get("username", "?"))

    async def setup_handlers(self) -> None:
        """Relay incoming chat messages into per-chat topics."""
        self._bot.message_handler.add_listener(self._relay_message)

    async def shutdown(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
        logger.info("Telegram bridge stopped")

    # -- Notifications --------------------------------------------------------

    async def send_qr_code(self, qr: str) -> None:
        text = (
            "<b>Scan to link the WhatsApp session</b>\n"
            f"<pre>{html.escape(render_qr(qr))}</pre>"
        )
        await self._send(self._config.chat_id, text)

    async def handle_call_notification(self, call: dict[str, Any]) -> None:
        if call.get("status") != "offer":
            return
        caller = call.get("from", "")
        kind = "video" if call.get("isVideo") else "voice"
        name = self.contact_names.get(caller) or caller.split("@")[0]
        await self._send(
            self._config.chat_id,
            f"📞 Incoming {kind} call from <b>{html.escape(name)}</b>",
        )

    async def send_to_all_users(self, text: str) -> None:
        """Send *text* to every admin; one failed recipient doesn't stop the rest."""
        recipients = list(dict.fromkeys([*self._config.admin_ids, self._config.chat_id]))
        for chat_id in recipients:
            if not chat_id:
                continue
            try:
                await self._send(chat_id, html.escape(text))
            except BridgeError as exc:
                logger.warning("Could not notify %s: %s", chat_id, exc)

    async def send_start_message(self) -> None:
        user = self._bot.user or {}
        text = (
            "✅ <b>HyperWa connected</b>\n"
            f"Account: {html.escape(str(user.get('name') or 'Unknown'))} "
            f"({html.escape(str(user.get('id') or 'Unknown ID'))})\n"
            f"Contacts: {len(self.contact_names)}"
        )
        await self._send(self._config.chat_id, text)

    # -- Sync -----------------------------------------------------------------

    async def sync_contacts(self) -> None:
        """Refresh display names from the session store."""
        synced = 0
        for jid, contact in self._bot.store.contacts.items():
            name = contact.get("name") or contact.get("notify") or contact.get("verifiedName")
            if name and self.contact_names.get(jid) != name:
                self.contact_names[jid] = name
                synced += 1
        logger.info("Synced %d contact names (%d known)", synced, len(self.contact_names))

    async def update_topic_names(self) -> None:
        """Rename chat topics whose contact name changed."""
        # relayed messages may add topics while we await
        for jid, topic_id in list(self.chat_topics.items()):
            name = self._topic_name(jid)
            try:
                await self._api(
                    "editForumTopic",
                    {"chat_id": self._config.chat_id, "message_thread_id": topic_id, "name": name},
                )
            except BridgeError as exc:
                logger.debug("Topic rename for %s skipped: %s", jid, exc)

    def _topic_name(self, jid: str) -> str:
        chat = self._bot.store.chat(jid) or {}
        name = self.contact_names.get(jid) or chat.get("name") or jid.split("@")[0]
        return name[:TOPIC_NAME_MAX_LENGTH]

    async def _topic_for(self, jid: str) -> int:
        topic_id = self.chat_topics.get(jid)
        if topic_id is None:
            result = await self._api(
                "createForumTopic",
                {"chat_id": self._config.chat_id, "name": self._topic_name(jid)},
            )
            topic_id = int(result["message_thread_id"])
            self.chat_topics[jid] = topic_id
        return topic_id

    async def _relay_message(self, msg: dict[str, Any]) -> None:
        key = msg.get("key") or {}
        jid = key.get("remoteJid")
        text = _message_text(msg)
        if not jid or text is None or key.get("fromMe"):
            return
        sender = msg.get("pushName") or self.contact_names.get(jid) or jid.split("@")[0]
        topic_id = await self._topic_for(jid)
        await self._send(
            self._config.chat_id,
            f"<b>{html.escape(sender)}</b>\n{html.escape(text)}",
            topic_id=topic_id,
        )
