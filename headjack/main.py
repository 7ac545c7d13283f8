"""
Main entry point for running a Headjack bot.

Logs in with the credentials from the environment (or a .env file), then
runs a small example bot that answers !ping and !echo until it receives
SIGINT or SIGTERM.
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .bot import Bot
from .config import AppConfig, create_settings
from .core.context import CommandContext
from .core.persistence import create_state_store
from .exceptions import AuthenticationError, ConfigurationError, HandlerError, SessionTerminatedError
from .integrations.matrix import MatrixAuthHandler, NioProtocolClient, create_async_client
from .utils.logging_config import setup_logging

logger = logging.getLogger(__name__)


def register_example_commands(bot: Bot) -> None:
    """The commands the bundled bot answers to."""

    @bot.command("ping", short_help="Check that the bot is alive")
    async def ping(ctx: CommandContext):
        await ctx.reply("pong")

    @bot.command("echo", args="<text>", short_help="Repeat the text back")
    async def echo(ctx: CommandContext):
        if ctx.invocation.parse_error:
            await ctx.reply(f"Could not parse arguments: {ctx.invocation.parse_error}")
            return
        if not ctx.args:
            await ctx.reply(f"Usage: `{bot.command_prefix}echo <text>`")
            return
        await ctx.send(" ".join(ctx.args), markdown=False)

    @bot.on_command_error
    async def report_error(ctx: CommandContext, error: HandlerError):
        await ctx.reply(f"Something went wrong running `{error.command}`")


async def run_bot(settings: AppConfig) -> int:
    """Log in and run until stopped. Returns the process exit code."""
    matrix = settings.matrix
    if not matrix.homeserver or not matrix.user_id:
        raise ConfigurationError("MATRIX_HOMESERVER and MATRIX_USER_ID must be set")

    state_dir = settings.bot.resolved_state_dir()
    store_path = Path(matrix.store_path).expanduser() if matrix.store_path else state_dir / "store"
    store_path.mkdir(parents=True, exist_ok=True)

    async_client = create_async_client(
        matrix.homeserver, matrix.user_id, device_id=matrix.device_id, store_path=str(store_path)
    )
    auth = MatrixAuthHandler(
        matrix.homeserver,
        matrix.user_id,
        matrix.password,
        state_dir,
        device_name=matrix.device_name,
    )
    client = NioProtocolClient(
        async_client,
        sync_timeout_ms=matrix.sync_timeout_ms,
        ignore_unverified_devices=matrix.ignore_unverified_devices,
        auto_confirm_sas=matrix.auto_confirm_sas,
    )
    store = create_state_store(settings.database_url or str(state_dir / "headjack.db"))

    try:
        await auth.authenticate(async_client)

        bot = Bot(client, settings.bot, store)
        register_example_commands(bot)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, bot.stop)

        logger.info(f"{settings.bot.name} started. Press Ctrl+C to stop.")
        await bot.run()
        return 0
    except AuthenticationError as e:
        logger.error(f"Authentication failed: {e}")
        return 1
    except SessionTerminatedError as e:
        logger.error(f"Session terminated: {e}")
        # Most likely the access token was revoked; log in fresh next time
        auth.clear_session()
        return 1
    finally:
        await client.close()
        await store.close()


def parse_arguments(argv: Optional[list] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Headjack - run a Matrix bot",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m headjack                        # Configuration from environment / .env
  python -m headjack --env-file bot.env     # Use another .env file
  python -m headjack --log-level DEBUG
        """,
    )
    parser.add_argument(
        "--env-file",
        help="Load environment variables from this file before reading settings",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Override log level from configuration",
    )
    parser.add_argument(
        "--log-format",
        choices=["text", "json"],
        help="Override log format from configuration",
    )
    return parser.parse_args(argv)


def main(argv: Optional[list] = None) -> int:
    """Console entry point."""
    args = parse_arguments(argv)
    if args.env_file:
        load_dotenv(args.env_file)

    overrides = {}
    if args.log_level:
        overrides["log_level"] = args.log_level
    if args.log_format:
        overrides["log_format"] = args.log_format

    try:
        settings = create_settings(**overrides)
    except ConfigurationError as e:
        print(e, file=sys.stderr)
        return 2

    setup_logging(settings.log_level, settings.log_format, settings.log_file)

    try:
        return asyncio.run(run_bot(settings))
    except ConfigurationError as e:
        logger.error(str(e))
        return 2
    except KeyboardInterrupt:
        logger.debug("Keyboard interrupt received, shutting down...")
        return 0


if __name__ == "__main__":
    sys.exit(main())
