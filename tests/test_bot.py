"""Tests for HyperWaBot wiring (fake transport, temporary database)."""

from unittest.mock import AsyncMock

import orjson
import pytest

from hyperwa.auth import FileAuthProvider, SqliteAuthProvider
from hyperwa.bot import HyperWaBot
from hyperwa.config import BotConfig
from hyperwa.errors import NotConnectedError, SetupError
from hyperwa.types import ConnectionState, EventKind
from tests.fakes import make_bridge, until


@pytest.fixture
def config(tmp_path):
    return BotConfig.from_dict(
        {
            "auth": {"authDir": str(tmp_path / "auth_info")},
            "database": {"path": str(tmp_path / "bot.db")},
        }
    )


def _bot(config, connections, version_fetcher, **kwargs):
    return HyperWaBot(
        config,
        connection_factory=connections,
        version_fetcher=version_fetcher,
        **kwargs,
    )


class TestInitialize:
    @pytest.mark.asyncio
    async def test_first_connection_started(self, config, connections, version_fetcher):
        bot = _bot(config, connections, version_fetcher)
        await bot.initialize()
        try:
            assert bot.is_initialized is True
            assert bot.db is not None
            assert connections.last.opened is True
            assert bot.supervisor.state == ConnectionState.CONNECTING
            version_fetcher.assert_awaited_once()
        finally:
            await bot.shutdown()
        assert bot.db is None
        assert connections.last.ended is True

    @pytest.mark.asyncio
    async def test_pinned_version(self, config, connections, version_fetcher):
        config.set("connection.version", [2, 2412, 54])
        bot = _bot(config, connections, version_fetcher)
        await bot.initialize()
        await bot.shutdown()
        version_fetcher.assert_not_called()
        assert connections.last.kwargs["version"] == (2, 2412, 54)

    @pytest.mark.asyncio
    async def test_file_auth_by_default(self, config, connections, version_fetcher):
        bot = _bot(config, connections, version_fetcher)
        await bot.initialize()
        await bot.shutdown()
        assert isinstance(bot.supervisor._auth_provider, FileAuthProvider)

    @pytest.mark.asyncio
    async def test_database_auth_flag(self, config, connections, version_fetcher):
        config.set("auth.useMongoAuth", True)
        bot = _bot(config, connections, version_fetcher)
        await bot.initialize()
        await bot.shutdown()
        assert isinstance(bot.supervisor._auth_provider, SqliteAuthProvider)

    @pytest.mark.asyncio
    async def test_clear_auth_on_start(self, config, tmp_path, connections, version_fetcher):
        auth_dir = tmp_path / "auth_info"
        auth_dir.mkdir()
        (auth_dir / "creds.json").write_bytes(orjson.dumps({"registered": True}))
        config.set("auth.clearAuthOnStart", True)

        bot = _bot(config, connections, version_fetcher)
        await bot.initialize()
        await bot.shutdown()
        assert connections.last.kwargs["auth"].creds["registered"] is False

    @pytest.mark.asyncio
    async def test_setup_failure_propagates(self, config, connections, version_fetcher):
        version_fetcher.side_effect = SetupError("Version discovery failed")
        bot = _bot(config, connections, version_fetcher)
        with pytest.raises(SetupError):
            await bot.initialize()
        assert bot.is_initialized is False
        assert bot.db is None
        assert connections.created == []


    @pytest.mark.asyncio
    async def test_storage_failure_becomes_setup_error(self, config, tmp_path, connections, version_fetcher):
        config.set("database.path", str(tmp_path / "missing" / "bot.db"))
        bot = _bot(config, connections, version_fetcher)
        with pytest.raises(SetupError, match="Initialization failed"):
            await bot.initialize()
        assert bot.db is None
        assert connections.created == []


class TestBridgeWiring:
    @pytest.mark.asyncio
    async def test_no_bridge_when_disabled(self, config, connections, version_fetcher):
        factory = AsyncMock()
        bot = _bot(config, connections, version_fetcher, bridge_factory=factory)
        await bot.initialize()
        connections.last.emit_open()
        await until(lambda: bot.supervisor.state == ConnectionState.OPEN)
        await bot.supervisor.router.join()
        await bot.shutdown()
        factory.assert_not_called()
        assert bot.bridge is None

    @pytest.mark.asyncio
    async def test_bridge_built_on_open(self, config, connections, version_fetcher):
        config.set("telegram.enabled", True)
        bridge = make_bridge()
        bot = _bot(config, connections, version_fetcher, bridge_factory=lambda: bridge)
        await bot.initialize()
        assert bot.bridge is None

        connections.last.emit_open()
        await until(lambda: bridge.send_start_message.await_count == 1)
        assert bot.bridge is bridge
        await bot.shutdown()
        bridge.shutdown.assert_awaited_once()


class TestPublicApi:
    @pytest.mark.asyncio
    async def test_send_before_initialize(self, config):
        with pytest.raises(NotConnectedError):
            await HyperWaBot(config).send_message("a@s.whatsapp.net", {"conversation": "hi"})

    @pytest.mark.asyncio
    async def test_send_before_open(self, config, connections, version_fetcher):
        bot = _bot(config, connections, version_fetcher)
        await bot.initialize()
        try:
            with pytest.raises(NotConnectedError):
                await bot.send_message("a@s.whatsapp.net", {"conversation": "hi"})
        finally:
            await bot.shutdown()

    @pytest.mark.asyncio
    async def test_send_when_open(self, config, connections, version_fetcher):
        bot = _bot(config, connections, version_fetcher)
        await bot.initialize()
        connections.last.emit_open()
        await until(lambda: bot.supervisor.is_open)

        msg = await bot.send_message("a@s.whatsapp.net", {"conversation": "hi"})
        assert msg["key"]["remoteJid"] == "a@s.whatsapp.net"
        assert bot.user == {"id": "111@s.whatsapp.net", "name": "Tester"}
        await bot.shutdown()

    @pytest.mark.asyncio
    async def test_contact_info_from_store(self, config, connections, version_fetcher):
        bot = _bot(config, connections, version_fetcher)
        await bot.initialize()
        connections.last.ev.emit_batch({EventKind.CONTACTS_UPSERT: [{"id": "a@s.whatsapp.net", "name": "Alice"}]})
        assert bot.get_contact_info("a@s.whatsapp.net") == {"id": "a@s.whatsapp.net", "name": "Alice"}
        assert bot.get_contact_info("b@s.whatsapp.net") is None
        assert bot.get_contact_info(None) is None
        await bot.shutdown()
