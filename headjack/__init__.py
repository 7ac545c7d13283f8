"""
Headjack - a bot framework on top of matrix-nio.

This package removes the boilerplate every bot repeats:
- Connecting, logging in and resuming the sync loop
- Tracking rooms, encryption and device trust
- Routing chat commands to handlers
- Pacing outbound messages under server rate limits
"""

__version__ = "0.1.0"
__author__ = "Headjack Team"

from .bot import Bot
from .config import AppConfig, BotConfig, MatrixConfig, create_settings
from .core.context import CommandContext
from .core.router import ExactCommand, PrefixCommand, RegexCommand

__all__ = [
    "AppConfig",
    "Bot",
    "BotConfig",
    "CommandContext",
    "ExactCommand",
    "MatrixConfig",
    "PrefixCommand",
    "RegexCommand",
    "create_settings",
]
