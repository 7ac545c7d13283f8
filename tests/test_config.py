"""
Tests for configuration loading and validation.
"""

import os
from pathlib import Path

import pytest

from headjack.config import AppConfig, BotConfig, MatrixConfig, create_settings
from headjack.exceptions import ConfigurationError


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """Keep the developer's environment and .env file out of the tests."""
    monkeypatch.chdir(tmp_path)
    for name in ("MATRIX_HOMESERVER", "MATRIX_USER_ID", "MATRIX_PASSWORD", "LOG_LEVEL", "LOG_FORMAT"):
        monkeypatch.delenv(name, raising=False)
    for name in list(os.environ):
        if name.startswith("HEADJACK_"):
            monkeypatch.delenv(name)


class TestDefaults:

    def test_bot_defaults(self):
        config = BotConfig()
        assert config.command_prefix == "!"
        assert config.allow_list is None
        assert config.auto_join is False
        assert config.room_size_limit is None
        assert config.initial_backoff == 1.0
        assert config.max_backoff == 60.0
        assert config.skip_initial_backlog is True
        assert config.enable_help is True

    def test_matrix_defaults(self):
        config = MatrixConfig()
        assert config.homeserver is None
        assert config.sync_timeout_ms == 30000
        assert config.ignore_unverified_devices is True
        assert config.auto_confirm_sas is False

    def test_app_defaults(self):
        config = AppConfig()
        assert config.log_level == "INFO"
        assert config.log_format == "text"
        assert isinstance(config.bot, BotConfig)


class TestEnvironment:

    def test_prefixed_variables(self, monkeypatch):
        monkeypatch.setenv("MATRIX_HOMESERVER", "https://matrix.example.org")
        monkeypatch.setenv("MATRIX_USER_ID", "@bot:example.org")
        monkeypatch.setenv("HEADJACK_COMMAND_PREFIX", "?")
        monkeypatch.setenv("HEADJACK_AUTO_JOIN", "true")
        monkeypatch.setenv("HEADJACK_ROOM_SIZE_LIMIT", "25")

        settings = create_settings()

        assert settings.matrix.homeserver == "https://matrix.example.org"
        assert settings.matrix.user_id == "@bot:example.org"
        assert settings.bot.command_prefix == "?"
        assert settings.bot.auto_join is True
        assert settings.bot.room_size_limit == 25

    def test_env_file(self, tmp_path):
        Path(tmp_path / ".env").write_text("HEADJACK_NAME=filebot\nLOG_FORMAT=json\n")
        settings = create_settings()
        assert settings.bot.name == "filebot"
        assert settings.log_format == "json"

    def test_overrides_win(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        assert create_settings(log_level="DEBUG").log_level == "DEBUG"


class TestValidation:

    def test_invalid_allow_list(self, monkeypatch):
        monkeypatch.setenv("HEADJACK_ALLOW_LIST", "@(unclosed")
        with pytest.raises(ConfigurationError):
            create_settings()

    def test_invalid_log_format(self):
        with pytest.raises(ConfigurationError):
            create_settings(log_format="xml")

    def test_backoff_bounds(self, monkeypatch):
        monkeypatch.setenv("HEADJACK_INITIAL_BACKOFF", "10")
        monkeypatch.setenv("HEADJACK_MAX_BACKOFF", "5")
        with pytest.raises(ConfigurationError):
            create_settings()

    @pytest.mark.parametrize("name, value", [
        ("HEADJACK_BACKOFF_JITTER", "1.5"),
        ("HEADJACK_RATE_LIMIT_QUEUE_DEPTH", "0"),
        ("HEADJACK_ROOM_SIZE_LIMIT", "0"),
        ("HEADJACK_COMMAND_PREFIX", " !"),
    ])
    def test_out_of_range_values(self, monkeypatch, name, value):
        monkeypatch.setenv(name, value)
        with pytest.raises(ConfigurationError):
            create_settings()


class TestCommandPrefix:

    @pytest.mark.parametrize("prefix, resolved", [
        ("!", "!"),
        ("?", "?"),
        ("!bot", "!bot "),
        ("!bot ", "!bot "),
        ("hey bot,", "hey bot, "),
    ])
    def test_word_prefixes_end_in_a_space(self, prefix, resolved):
        assert BotConfig(command_prefix=prefix).resolved_command_prefix() == resolved

    def test_empty_prefix_is_rejected(self, monkeypatch):
        monkeypatch.setenv("HEADJACK_COMMAND_PREFIX", "")
        with pytest.raises(ConfigurationError):
            create_settings()


class TestStateDir:

    def test_explicit_state_dir(self, tmp_path):
        config = BotConfig(state_dir=str(tmp_path / "bot"))
        assert config.resolved_state_dir() == tmp_path / "bot"

    def test_xdg_state_home(self, monkeypatch, tmp_path):
        monkeypatch.setenv("XDG_STATE_HOME", str(tmp_path))
        config = BotConfig(name="mybot")
        assert config.resolved_state_dir() == tmp_path / "mybot"
