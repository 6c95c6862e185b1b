# base_cog.py
"""
Base cog with shared logger and lifecycle logging.
"""

import logging

from discord.ext import commands

# Configure logger
logger = logging.getLogger("activitybot.cogs")


class BaseCog(commands.Cog):
    """
    Base Cog class. All cogs should inherit from this class.
    """

    def __init__(self, bot: commands.Bot):
        self.bot = bot
        logger.info(f"Loaded cog: {self.__class__.__name__}")

    async def cog_unload(self):
        """
        Called when cog is unloaded.
        Override this in child classes for cleanup.
        """
        logger.info(f"Unloading cog: {self.__class__.__name__}")
