"""Tests for MessageHandler and ModuleLoader."""

import textwrap
from unittest.mock import AsyncMock, MagicMock

import pytest

from hyperwa.handler import MessageHandler
from hyperwa.modules import ModuleLoader


def _upsert(type="notify", *messages):
    return {"type": type, "messages": list(messages)}


TEXT = {"key": {"remoteJid": "a", "id": "1"}, "message": {"conversation": "hi"}}
STUB = {"key": {"remoteJid": "a", "id": "2"}, "messageStubType": 1}


class TestMessageHandler:
    @pytest.mark.asyncio
    async def test_notify_delivered(self):
        handler = MessageHandler()
        listener = MagicMock()
        handler.add_listener(listener)
        await handler.handle_messages(_upsert("notify", TEXT, STUB))
        listener.assert_called_once_with(TEXT)
        assert handler.processed == 1

    @pytest.mark.asyncio
    async def test_append_not_delivered(self):
        handler = MessageHandler()
        listener = MagicMock()
        handler.add_listener(listener)
        await handler.handle_messages(_upsert("append", TEXT))
        listener.assert_not_called()

    @pytest.mark.asyncio
    async def test_async_listener_awaited(self):
        handler = MessageHandler()
        listener = AsyncMock()
        handler.add_listener(listener)
        await handler.handle_messages(_upsert("notify", TEXT))
        listener.assert_awaited_once_with(TEXT)

    @pytest.mark.asyncio
    async def test_listener_failure_isolated(self):
        handler = MessageHandler()
        broken = MagicMock(side_effect=RuntimeError("boom"))
        ok = MagicMock()
        handler.add_listener(broken)
        handler.add_listener(ok)
        await handler.handle_messages(_upsert("notify", TEXT))
        ok.assert_called_once_with(TEXT)

    @pytest.mark.asyncio
    async def test_add_is_idempotent_and_remove(self):
        handler = MessageHandler()
        listener = MagicMock()
        handler.add_listener(listener)
        handler.add_listener(listener)
        await handler.handle_messages(_upsert("notify", TEXT))
        assert listener.call_count == 1
        handler.remove_listener(listener)
        handler.remove_listener(listener)
        await handler.handle_messages(_upsert("notify", TEXT))
        assert listener.call_count == 1


@pytest.fixture
def module_dir(tmp_path, monkeypatch):
    monkeypatch.syspath_prepend(str(tmp_path))
    return tmp_path


def _write(module_dir, name, body):
    (module_dir / f"{name}.py").write_text(textwrap.dedent(body))


class TestModuleLoader:
    @pytest.mark.asyncio
    async def test_sync_and_async_setup(self, module_dir):
        _write(module_dir, "hw_mod_sync", "def setup(bot):\n    bot.calls.append('sync')\n")
        _write(module_dir, "hw_mod_async", "async def setup(bot):\n    bot.calls.append('async')\n")
        bot = MagicMock()
        bot.calls = []
        loader = ModuleLoader(bot, ["hw_mod_sync", "hw_mod_async"])
        assert await loader.load_modules() == 2
        assert bot.calls == ["sync", "async"]

    @pytest.mark.asyncio
    async def test_loaded_once_across_opens(self, module_dir):
        _write(module_dir, "hw_mod_once", "def setup(bot):\n    bot.calls.append(1)\n")
        bot = MagicMock()
        bot.calls = []
        loader = ModuleLoader(bot, ["hw_mod_once"])
        await loader.load_modules()
        assert await loader.load_modules() == 0
        assert bot.calls == [1]

    @pytest.mark.asyncio
    async def test_bad_modules_skipped(self, module_dir):
        _write(module_dir, "hw_mod_nosetup", "VALUE = 1\n")
        _write(module_dir, "hw_mod_broken", "def setup(bot):\n    raise RuntimeError('nope')\n")
        _write(module_dir, "hw_mod_good", "def setup(bot):\n    pass\n")
        loader = ModuleLoader(MagicMock(), ["hw_mod_missing", "hw_mod_nosetup", "hw_mod_broken", "hw_mod_good"])
        assert await loader.load_modules() == 1
        assert list(loader.loaded) == ["hw_mod_good"]

    @pytest.mark.asyncio
    async def test_import_time_errors_skipped(self, module_dir):
        _write(module_dir, "hw_mod_syntax", "def setup(bot)\n    pass\n")
        _write(module_dir, "hw_mod_raises", "raise RuntimeError('import boom')\n")
        _write(module_dir, "hw_mod_after", "def setup(bot):\n    pass\n")
        loader = ModuleLoader(MagicMock(), ["hw_mod_syntax", "hw_mod_raises", "hw_mod_after"])
        assert await loader.load_modules() == 1
        assert list(loader.loaded) == ["hw_mod_after"]
