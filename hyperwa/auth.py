# =============================================================================
# HyperWa -- Auth Providers
# =============================================================================
#
# Credential state plus signal keys, behind one interface with two
# implementations: one JSON file per key in a directory, or rows in a SQLite
# table. ``select_auth_provider`` picks one once at startup.
# =============================================================================

from __future__ import annotations

import asyncio
import base64
import re
import secrets
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

import orjson

from ._logging import logger
from .errors import AuthStoreError
from .key_store import KeyData, KeyStore

if TYPE_CHECKING:
    import aiosqlite

    from .config import BotConfig

_CREDS = "creds"
_UNSAFE_RE = re.compile(r"[/:\\]")


def init_creds() -> dict[str, Any]:
    """Fresh, unregistered credentials for a first login."""
    return {
        "registered": False,
        "registrationId": secrets.randbelow(16380) + 1,
        "advSecretKey": base64.b64encode(secrets.token_bytes(32)).decode(),
        "me": None,
    }


@dataclass
class AuthState:
    """Credentials and key store handed to a new connection.

    ``creds`` is mutated in place by the transport; the provider's
    ``persist`` writes it back.
    """

    creds: dict[str, Any]
    keys: KeyStore


class AuthProvider(Protocol):
    """Loads and persists :class:`AuthState`."""

    async def load(self) -> AuthState: ...

    async def persist(self, state: AuthState) -> None: ...

    async def clear(self) -> None: ...


# =============================================================================
# File-backed
# =============================================================================


def _file_name(name: str) -> str:
    return _UNSAFE_RE.sub(lambda m: "__" if m.group() == "/" else "-", name) + ".json"


class FileKeyStore:
    """One JSON file per ``(type, id)`` under *directory*."""

    def __init__(self, directory: Path) -> None:
        self._dir = directory
        self._lock = asyncio.Lock()

    def _path(self, type: str, key_id: str) -> Path:
        return self._dir / _file_name(f"{type}-{key_id}")

    async def get(self, type: str, ids: list[str]) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for key_id in ids:
            path = self._path(type, key_id)
            if path.exists():
                result[key_id] = orjson.loads(await asyncio.to_thread(path.read_bytes))
        return result

    async def set(self, data: KeyData) -> None:
        async with self._lock:
            for type, values in data.items():
                for key_id, value in values.items():
                    path = self._path(type, key_id)
                    if value is None:
                        path.unlink(missing_ok=True)
                    else:
                        await asyncio.to_thread(path.write_bytes, orjson.dumps(value))


class FileAuthProvider:
    """Multi-file auth state in *directory* (created on first load)."""

    def __init__(self, directory: str | Path) -> None:
        self._dir = Path(directory)

    @property
    def directory(self) -> Path:
        return self._dir

    async def load(self) -> AuthState:
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
            creds_path = self._dir / _file_name(_CREDS)
            if creds_path.exists():
                creds = orjson.loads(await asyncio.to_thread(creds_path.read_bytes))
            else:
                creds = init_creds()
        except (OSError, orjson.JSONDecodeError) as exc:
            raise AuthStoreError(f"Failed to load auth state from {self._dir}: {exc}") from exc
        return AuthState(creds=creds, keys=FileKeyStore(self._dir))

    async def persist(self, state: AuthState) -> None:
        path = self._dir / _file_name(_CREDS)
        tmp = path.with_suffix(".tmp")
        try:
            await asyncio.to_thread(tmp.write_bytes, orjson.dumps(state.creds))
            await asyncio.to_thread(tmp.replace, path)
        except OSError as exc:
            raise AuthStoreError(f"Failed to persist creds: {exc}") from exc

    async def clear(self) -> None:
        if self._dir.exists():
            await asyncio.to_thread(shutil.rmtree, self._dir)
            logger.info("Cleared auth state in %s", self._dir)


# =============================================================================
# Database-backed
# =============================================================================

CREATE_AUTH_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS auth (
    category TEXT NOT NULL,
    key_id TEXT NOT NULL,
    value TEXT NOT NULL,
    PRIMARY KEY (category, key_id)
);
"""


class SqliteKeyStore:
    """Signal keys as rows of the ``auth`` table."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def get(self, type: str, ids: list[str]) -> dict[str, Any]:
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        async with self._db.execute(
            f"SELECT key_id, value FROM auth WHERE category = ? AND key_id IN ({placeholders})",
            (type, *ids),
        ) as cursor:
            rows = await cursor.fetchall()
        return {row[0]: orjson.loads(row[1]) for row in rows}

    async def set(self, data: KeyData) -> None:
        for type, values in data.items():
            for key_id, value in values.items():
                if value is None:
                    await self._db.execute(
                        "DELETE FROM auth WHERE category = ? AND key_id = ?",
                        (type, key_id),
                    )
                else:
                    await self._db.execute(
                        "INSERT OR REPLACE INTO auth (category, key_id, value) VALUES (?, ?, ?)",
                        (type, key_id, orjson.dumps(value).decode()),
                    )
        await self._db.commit()


class SqliteAuthProvider:
    """Auth state stored in the bot's SQLite database."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def load(self) -> AuthState:
        try:
            await self._db.execute(CREATE_AUTH_TABLE_SQL)
            await self._db.commit()
            async with self._db.execute(
                "SELECT value FROM auth WHERE category = ? AND key_id = ?",
                (_CREDS, _CREDS),
            ) as cursor:
                row = await cursor.fetchone()
        except Exception as exc:
            raise AuthStoreError(f"Failed to load auth state from database: {exc}") from exc
        creds = orjson.loads(row[0]) if row else init_creds()
        return AuthState(creds=creds, keys=SqliteKeyStore(self._db))

    async def persist(self, state: AuthState) -> None:
        await self._db.execute(
            "INSERT OR REPLACE INTO auth (category, key_id, value) VALUES (?, ?, ?)",
            (_CREDS, _CREDS, orjson.dumps(state.creds).decode()),
        )
        await self._db.commit()

    async def clear(self) -> None:
        await self._db.execute(CREATE_AUTH_TABLE_SQL)
        await self._db.execute("DELETE FROM auth")
        await self._db.commit()
        logger.info("Cleared auth state in database")


def select_auth_provider(config: BotConfig, db: aiosqlite.Connection | None = None) -> AuthProvider:
    """Pick the provider named by ``auth.useMongoAuth``."""
    if config.get("auth.useMongoAuth"):
        if db is None:
            raise AuthStoreError("Database-backed auth requested but no database is open")
        logger.info("Using database authentication state")
        return SqliteAuthProvider(db)
    logger.info("Using file-based authentication state")
    return FileAuthProvider(config.get("auth.authDir"))
