"""HyperWa: a supervised real-time messaging session with event routing.

Usage::

    from hyperwa import BotConfig, HyperWaBot

    bot = HyperWaBot(BotConfig.load("config.json"))
    await bot.initialize()
    await bot.send_message("123@s.whatsapp.net", {"conversation": "hello"})
    await bot.shutdown()
"""

from ._version import __version__
from .bot import HyperWaBot
from .config import BotConfig
from .constants import DisconnectReason
from .errors import (
    AuthStoreError,
    BridgeError,
    DisconnectError,
    HyperWaError,
    NotConnectedError,
    QueryTimeoutError,
    SetupError,
    TransportError,
)
from .router import EventRouter
from .store import SessionStore
from .supervisor import ConnectionSupervisor
from .types import ConnectionState, EventKind, MessageKey, RetryState

__all__ = [
    "__version__",
    "HyperWaBot",
    "BotConfig",
    "ConnectionSupervisor",
    "EventRouter",
    "SessionStore",
    "ConnectionState",
    "EventKind",
    "MessageKey",
    "RetryState",
    "DisconnectReason",
    "HyperWaError",
    "SetupError",
    "NotConnectedError",
    "TransportError",
    "QueryTimeoutError",
    "AuthStoreError",
    "BridgeError",
    "DisconnectError",
]
