"""
Tests for the command line entry point and the bundled example bot.
"""

import asyncio

import pytest
from unittest.mock import Mock

from headjack.bot import Bot
from headjack.integrations.base import SyncBatch
from headjack.main import main, parse_arguments, register_example_commands

from tests.factories import BOT_USER, membership, message
from tests.fakes import wait_for

ROOM = "!room:example.org"


class TestExampleCommands:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body, expected", [
        ("!ping", "pong"),
        ("!echo hello   world", "hello world"),
        ('!echo "hello world"', "hello world"),
        ("!echo", "Usage: !echo <text>"),
        ('!echo "oops', "Could not parse arguments: No closing quotation"),
    ])
    async def test_replies(self, fake_client, bot_config, body, expected):
        fake_client.script(SyncBatch("c1", [
            membership(ROOM, "join", target=BOT_USER, sender=BOT_USER),
            message(ROOM, body),
        ]))
        bot = Bot(fake_client, config=bot_config)
        register_example_commands(bot)
        task = asyncio.create_task(bot.run())

        await wait_for(lambda: fake_client.sent)
        bot.stop()
        await asyncio.wait_for(task, timeout=2.0)
        assert fake_client.bodies(ROOM) == [expected]


class TestCommandLine:

    def test_parse_arguments(self):
        args = parse_arguments(["--log-level", "DEBUG", "--log-format", "json", "--env-file", "bot.env"])
        assert args.log_level == "DEBUG"
        assert args.log_format == "json"
        assert args.env_file == "bot.env"

    def test_invalid_choice_exits(self):
        with pytest.raises(SystemExit):
            parse_arguments(["--log-format", "xml"])

    def test_missing_credentials_exit_code(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("MATRIX_HOMESERVER", raising=False)
        monkeypatch.delenv("MATRIX_USER_ID", raising=False)
        monkeypatch.setattr("headjack.main.setup_logging", Mock())

        assert main([]) == 2

    def test_invalid_settings_exit_code(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("HEADJACK_ALLOW_LIST", "(")
        monkeypatch.setattr("headjack.main.setup_logging", Mock())

        assert main([]) == 2
