"""Tests for BotConfig loading and lookups."""

import orjson
import pytest

from hyperwa.config import BotConfig
from hyperwa.constants import MAX_RETRIES


class TestDefaults:
    def test_defaults(self):
        config = BotConfig()
        assert config.get("auth.useMongoAuth") is False
        assert config.get("telegram.enabled") is False
        assert config.get("connection.maxRetries") == MAX_RETRIES
        assert config.get("connection.version") is None

    def test_missing_path_returns_default(self):
        assert BotConfig().get("telegram.nope", "fallback") == "fallback"


class TestFromDict:
    def test_camel_case_keys(self):
        config = BotConfig.from_dict(
            {
                "auth": {"useMongoAuth": True, "clearAuthOnStart": True},
                "telegram": {"enabled": True, "botToken": "t", "adminIds": ["1"]},
                "connection": {"version": [2, 3000, 1]},
            }
        )
        assert config.auth.use_mongo_auth is True
        assert config.auth.clear_auth_on_start is True
        assert config.telegram.bot_token == "t"
        assert config.get("telegram.adminIds") == ["1"]
        assert config.get("connection.version") == [2, 3000, 1]

    def test_unknown_keys_ignored(self):
        config = BotConfig.from_dict({"mystery": 1, "bot": {"colour": "red", "name": "X"}})
        assert config.bot.name == "X"

    def test_set(self):
        config = BotConfig()
        config.set("bot.prefix", "!")
        assert config.get("bot.prefix") == "!"
        with pytest.raises(KeyError):
            config.set("bot.nope", 1)


class TestLoad:
    def test_file_then_env(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_bytes(orjson.dumps({"telegram": {"enabled": False, "chatId": "-100"}}))
        config = BotConfig.load(
            path,
            env={
                "HYPERWA_TELEGRAM__ENABLED": "true",
                "HYPERWA_CONNECTION__MAX_RETRIES": "3",
                "HYPERWA_TELEGRAM__ADMIN_IDS": "1, 2",
                "HYPERWA_AUTH__USE_MONGO_AUTH": "0",
                "PATH": "/usr/bin",
            },
        )
        assert config.telegram.enabled is True
        assert config.telegram.chat_id == "-100"
        assert config.connection.max_retries == 3
        assert config.telegram.admin_ids == ["1", "2"]
        assert config.auth.use_mongo_auth is False

    def test_env_json_list(self):
        config = BotConfig.load(env={"HYPERWA_CONNECTION__VERSION": "[2, 3000, 7]"})
        assert config.connection.version == [2, 3000, 7]

    def test_env_unknown_and_section_keys_ignored(self):
        config = BotConfig.load(env={"HYPERWA_NOPE": "1", "HYPERWA_TELEGRAM": "x"})
        assert config.telegram.enabled is False
