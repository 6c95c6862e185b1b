# config.py
"""
Bootstrap configuration, read from the environment (.env) before the bot connects.

Only what is needed to start lives here: Discord credentials, storage
endpoints and the log level. Tracking settings (excluded channels, flush
interval, markers, report groups) belong to the Activity schema in
activitybot/cogs/activity/tracker.py and are resolved by ConfigManager.
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

DEFAULT_DATABASE_URL = "sqlite:///data/activity.sqlite"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _required(*names: str) -> str:
    for name in names:
        value = os.getenv(name)
        if value:
            return value
    raise ValueError(f"{' or '.join(names)} is required in .env file")


@dataclass
class BotConfig:
    """Bot-level configuration (not cog-specific)."""

    token: str  # DISCORD_TOKEN
    command_prefix: str | list[str]  # COMMAND_PREFIX, comma separated for several
    bot_owner_id: int  # BOT_OWNER_ID (or BOT_OWNER)

    database_url: str = DEFAULT_DATABASE_URL  # any SQLAlchemy URL
    redis_url: Optional[str] = None  # sessions stay in-process without it
    log_level: str = "INFO"

    @classmethod
    def from_env(cls):
        """
        Create config from environment variables.

        Raises:
            ValueError: If a required variable is missing or malformed
        """
        token = _required("DISCORD_TOKEN")

        prefix_str = _required("COMMAND_PREFIX")
        if "," in prefix_str:
            command_prefix = [p.strip() for p in prefix_str.split(",") if p.strip()]
        else:
            command_prefix = prefix_str

        owner = _required("BOT_OWNER_ID", "BOT_OWNER")
        try:
            bot_owner_id = int(owner)
        except ValueError:
            raise ValueError(f"BOT_OWNER_ID must be a numeric Discord ID, got {owner!r}") from None

        log_level = os.getenv("LOG_LEVEL", "INFO").upper()
        if log_level not in LOG_LEVELS:
            log_level = "INFO"

        return cls(
            token=token,
            command_prefix=command_prefix,
            bot_owner_id=bot_owner_id,
            database_url=os.getenv("DATABASE_URL") or DEFAULT_DATABASE_URL,
            redis_url=os.getenv("REDIS_URL") or None,
            log_level=log_level,
        )

    def display(self):
        """Display current configuration (safe for logging)."""
        prefix_display = ", ".join(self.command_prefix) if isinstance(self.command_prefix,
                                                                      list) else self.command_prefix
        return f"""
Bot Configuration (Bootstrap):
==================
Command Prefix: {prefix_display}
Bot Owner ID: {self.bot_owner_id}
Database: {self.database_url.split('://', 1)[0]}
Redis: {'configured' if self.redis_url else 'disabled (in-process sessions only)'}
Log Level: {self.log_level}

Note: Activity settings (excluded channels, flush interval, markers) are managed
      via ConfigManager and loaded after cogs are initialized.
"""
