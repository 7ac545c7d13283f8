"""
Centralized Configuration Management

Loads and validates configuration from environment variables and .env files.
Settings are grouped into nested sections:

- MatrixConfig (MATRIX_*): homeserver credentials and SDK behaviour
- BotConfig (HEADJACK_*): dispatch, retry and rate-limit policy
- AppConfig: logging, persistence, and the two sections above
"""

import os
import re
from pathlib import Path
from typing import Optional

from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError


class MatrixConfig(BaseSettings):
    """Matrix-specific configuration."""

    model_config = SettingsConfigDict(
        env_prefix="MATRIX_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    homeserver: Optional[str] = None
    user_id: Optional[str] = None
    password: Optional[str] = None
    device_id: Optional[str] = None
    device_name: str = "headjack_bot"
    store_path: Optional[str] = None

    # Long-poll timeout handed to the homeserver
    sync_timeout_ms: int = Field(default=30000, ge=0)
    # Send to devices that are still pending verification
    ignore_unverified_devices: bool = True
    # Accept the short auth string without a human comparing emoji
    auto_confirm_sas: bool = False


class BotConfig(BaseSettings):
    """Bot behaviour and policy configuration."""

    model_config = SettingsConfigDict(
        env_prefix="HEADJACK_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    name: str = "headjack"
    # A prefix longer than one character is always followed by a space
    command_prefix: str = Field(default="!", min_length=1)
    allow_list: Optional[str] = None
    state_dir: Optional[str] = None

    # Room policy
    auto_join: bool = False
    room_size_limit: Optional[int] = Field(default=None, ge=1)
    join_retry_limit: float = Field(default=3600.0, gt=0)

    # Sync retry curve (seconds)
    initial_backoff: float = Field(default=1.0, gt=0)
    max_backoff: float = Field(default=60.0, gt=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    backoff_jitter: float = Field(default=0.5, ge=0.0, le=1.0)

    # Outbound pacing
    rate_limit_queue_depth: int = Field(default=100, ge=1)
    send_max_retries: int = Field(default=5, ge=0)

    # Dispatch
    skip_initial_backlog: bool = True
    dedupe_window: int = Field(default=1024, ge=1)
    enable_help: bool = True

    @field_validator("command_prefix")
    @classmethod
    def _check_command_prefix(cls, value: str) -> str:
        if not value.strip() or value[0].isspace():
            raise ValueError("command_prefix must start with a visible character")
        return value

    @field_validator("allow_list")
    @classmethod
    def _check_allow_list(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            try:
                re.compile(value)
            except re.error as e:
                raise ValueError(f"invalid regular expression: {e}") from e
        return value

    @model_validator(mode="after")
    def _check_backoff_bounds(self) -> "BotConfig":
        if self.max_backoff < self.initial_backoff:
            raise ValueError("max_backoff must be >= initial_backoff")
        return self

    def resolved_command_prefix(self) -> str:
        """Prefix as matched in messages: "!" stays "!", "!bot" becomes "!bot "."""
        prefix = self.command_prefix
        if len(prefix) == 1 or prefix.endswith(" "):
            return prefix
        return f"{prefix} "

    def resolved_state_dir(self) -> Path:
        """Directory used for the session file and the state database."""
        if self.state_dir:
            return Path(self.state_dir).expanduser()
        base = os.environ.get("XDG_STATE_HOME") or "~/.local/state"
        return Path(base).expanduser() / self.name


class AppConfig(BaseSettings):
    """
    Top-level application configuration with nested sections.
    """

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    log_level: str = "INFO"
    log_format: str = "text"
    log_file: Optional[str] = None

    # Defaults to a SQLite file inside the bot's state directory
    database_url: Optional[str] = None

    matrix: MatrixConfig = Field(default_factory=MatrixConfig)
    bot: BotConfig = Field(default_factory=BotConfig)

    @field_validator("log_format")
    @classmethod
    def _check_log_format(cls, value: str) -> str:
        if value not in ("text", "json"):
            raise ValueError("log_format must be 'text' or 'json'")
        return value


def create_settings(**overrides) -> AppConfig:
    """Create a settings instance from environment variables and .env files."""
    try:
        return AppConfig(**overrides)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e
