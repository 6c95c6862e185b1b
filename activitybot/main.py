import asyncio
import logging
from datetime import datetime, UTC
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

import discord
from discord.ext import commands
from dotenv import load_dotenv

# Load .env file FIRST (before any config imports)
load_dotenv()

from activitybot.config import BotConfig

# data/ is relative to the working directory: config JSON, logs and the default SQLite file
DATA_DIR = Path("data")

logger = logging.getLogger("activitybot")


class ConnectionErrorFilter(logging.Filter):
    """Filter to suppress verbose reconnect tracebacks and show cleaner messages."""
    def filter(self, record):
        msg = getattr(record, "msg", "")

        if "Attempting a reconnect" in str(msg) and record.exc_info:
            exc = record.exc_info[1]
            if exc is not None:
                logger.warning(f"Connection lost ({type(exc).__name__}) - Retrying...")
            return False

        return True


def setup_logging(level_name: str):
    """Console plus a daily rotating file for discord.py, the bot and SQLAlchemy warnings."""
    (DATA_DIR / "logs").mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(
        "[%(asctime)s] [%(levelname)-8s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    file_handler = TimedRotatingFileHandler(
        str(DATA_DIR / "logs" / "activitybot.log"),
        when="midnight",
        interval=1,
        backupCount=7,
        encoding="utf-8"
    )
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    for name, level in (("discord", logging.INFO), ("activitybot", getattr(logging, level_name, logging.INFO))):
        log = logging.getLogger(name)
        log.handlers.clear()
        log.setLevel(level)
        log.addHandler(console_handler)
        log.addHandler(file_handler)
        log.propagate = False

    sqlalchemy_log = logging.getLogger("sqlalchemy")
    sqlalchemy_log.addHandler(file_handler)
    sqlalchemy_log.setLevel(logging.WARNING)

    logging.getLogger("discord.client").addFilter(ConnectionErrorFilter())


# -----------------------
# Bot setup
# -----------------------
config = BotConfig.from_env()
setup_logging(config.log_level)
logger.info("Bot starting...")
logger.info(config.display())

intents = discord.Intents.default()
intents.members = True
intents.voice_states = True

bot = commands.Bot(command_prefix=config.command_prefix, intents=intents, help_command=None)
bot.start_time = datetime.now(UTC)
bot.bot_config = config

EXTENSIONS = ["activitybot.cogs.activity.tracker"]


@bot.event
async def on_ready():
    # on_ready fires again after reconnects
    if getattr(bot, "config_manager", None) is not None:
        logger.info("✅ Ready again after reconnect")
        return

    from activitybot.version import get_version, VERSION_HISTORY
    version = get_version()
    logger.info(f"🤖 Bot Version: {version}")
    if version in VERSION_HISTORY:
        logger.info(f"   {VERSION_HISTORY[version]}")

    logger.info(f"✅ Logged in as {bot.user} (ID: {bot.user.id})")

    # Initialize unified config system BEFORE loading cogs
    from activitybot.core.config_system import ConfigManager
    bot.config_manager = ConfigManager()
    logger.info("⚙️ Unified configuration system initialized")

    for extension in EXTENSIONS:
        await bot.load_extension(extension)


@bot.event
async def on_disconnect():
    """Handle bot disconnection from Discord."""
    logger.warning("⚠️ Disconnected from Discord")


@bot.event
async def on_resumed():
    """Handle bot resuming connection to Discord."""
    logger.info("✅ Reconnected to Discord (session resumed)")


# -----------------------
# Run the bot
# -----------------------

async def main():
    """Main async entry point."""
    try:
        async with bot:
            await bot.start(config.token)

    except KeyboardInterrupt:
        logger.info("Received shutdown signal")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
    finally:
        # close() unloads extensions, which runs the tracker's final flush
        if not bot.is_closed():
            await bot.close()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
