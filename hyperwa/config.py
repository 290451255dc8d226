# =============================================================================
# HyperWa -- Configuration
# =============================================================================
#
# Dataclass config loaded from a JSON file, overridden by HYPERWA_* env vars.
# Dotted lookups accept the camelCase key names used in config files, e.g.
# ``config.get("auth.useMongoAuth")``.
# =============================================================================

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any

import orjson

from .constants import (
    AUTH_DIR,
    DATABASE_PATH,
    DEFAULT_URL,
    DEFAULT_VERSION_URL,
    MAX_RETRIES,
)

_ENV_PREFIX = "HYPERWA_"
_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")
_MISSING = object()


def _snake(name: str) -> str:
    return _CAMEL_RE.sub("_", name).lower()


@dataclass
class AuthConfig:
    """Credential storage.

    Attributes:
        use_mongo_auth: Use the database-backed auth provider instead of
            the file-backed one. Selected once at startup.
        clear_auth_on_start: Wipe stored credentials before loading them.
        auth_dir: Directory for the file-backed provider.
    """

    use_mongo_auth: bool = False
    clear_auth_on_start: bool = False
    auth_dir: str = AUTH_DIR


@dataclass
class TelegramConfig:
    """Secondary-platform bridge.

    Attributes:
        enabled: Construct the bridge on first successful open.
        bot_token: Telegram Bot API token.
        chat_id: Owner chat (supergroup) receiving QR codes and notices.
        admin_ids: Users that receive broadcast notifications.
        api_url: Bot API base URL.
    """

    enabled: bool = False
    bot_token: str = ""
    chat_id: str = ""
    admin_ids: list[str] = field(default_factory=list)
    api_url: str = "https://api.telegram.org"


@dataclass
class ConnectionConfig:
    """Transport endpoint and retry ceiling.

    Attributes:
        url: WebSocket endpoint of the messaging service.
        version_url: Discovery endpoint for the latest protocol version.
        version: Pinned protocol version; skips discovery when set.
        max_retries: Consecutive reconnects before giving up.
    """

    url: str = DEFAULT_URL
    version_url: str = DEFAULT_VERSION_URL
    version: list[int] | None = None
    max_retries: int = MAX_RETRIES


@dataclass
class DatabaseConfig:
    path: str = DATABASE_PATH


@dataclass
class ModulesConfig:
    """Dotted import paths of modules exposing ``setup(bot)``."""

    enabled: list[str] = field(default_factory=list)


@dataclass
class BotInfoConfig:
    name: str = "HyperWa"
    prefix: str = "."


@dataclass
class BotConfig:
    """Top-level configuration."""

    bot: BotInfoConfig = field(default_factory=BotInfoConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    telegram: TelegramConfig = field(default_factory=TelegramConfig)
    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    modules: ModulesConfig = field(default_factory=ModulesConfig)

    # -- Lookup ---------------------------------------------------------------

    def get(self, path: str, default: Any = None) -> Any:
        """Resolve a dotted path such as ``"telegram.enabled"``."""
        node: Any = self
        for part in path.split("."):
            node = getattr(node, _snake(part), _MISSING)
            if node is _MISSING:
                return default
        return node

    def set(self, path: str, value: Any) -> None:
        *parents, leaf = path.split(".")
        node: Any = self
        for part in parents:
            node = getattr(node, _snake(part))
        attr = _snake(leaf)
        if not hasattr(node, attr):
            raise KeyError(path)
        setattr(node, attr, value)

    # -- Loading --------------------------------------------------------------

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BotConfig:
        config = cls()
        _apply(config, data)
        return config

    @classmethod
    def load(
        cls,
        path: str | os.PathLike[str] | None = None,
        *,
        env: Mapping[str, str] | None = None,
    ) -> BotConfig:
        """Load from *path* (JSON) if given, then apply env overrides.

        ``HYPERWA_TELEGRAM__ENABLED=true`` sets ``telegram.enabled``.
        """
        data: dict[str, Any] = {}
        if path is not None:
            data = orjson.loads(Path(path).read_bytes())
        config = cls.from_dict(data)
        config.apply_env(os.environ if env is None else env)
        return config

    def apply_env(self, env: Mapping[str, str]) -> None:
        for key, raw in env.items():
            if not key.startswith(_ENV_PREFIX):
                continue
            path = key[len(_ENV_PREFIX):].lower().replace("__", ".")
            current = self.get(path, _MISSING)
            if current is _MISSING or is_dataclass(current):
                continue
            self.set(path, _coerce(raw, current))


def _apply(target: Any, data: dict[str, Any]) -> None:
    known = {f.name for f in fields(target)}
    for key, value in data.items():
        attr = _snake(key)
        if attr not in known:
            continue
        current = getattr(target, attr)
        if is_dataclass(current) and isinstance(value, dict):
            _apply(current, value)
        else:
            setattr(target, attr, value)


def _coerce(raw: str, current: Any) -> Any:
    if isinstance(current, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, list) or current is None:
        if raw.lstrip().startswith("["):
            return orjson.loads(raw)
        return [part.strip() for part in raw.split(",") if part.strip()]
    return raw
