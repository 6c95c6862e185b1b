"""
Declaring cog settings.

A cog describes its settings as a dataclass of `config_field()`s; the
metadata (category, guild override, bounds) is read back by
CogConfigSchema.from_dataclass:

    @dataclass
    class ActivityConfig(ConfigBase):
        flush_interval_seconds: int = config_field(
            default=60,
            description="Seconds between durable flushes",
            category="Persistence",
            min_value=5,
            max_value=3600
        )
"""

from dataclasses import dataclass, field
from typing import Any, List, Optional, Union


def config_field(
    default: Any,
    description: str,
    category: str = "General",
    guild_override: bool = False,
    requires_restart: bool = False,
    min_value: Optional[Union[int, float]] = None,
    max_value: Optional[Union[int, float]] = None,
    choices: Optional[List[Any]] = None,
) -> Any:
    """
    A dataclass field carrying config metadata.

    Args:
        default: Default value; list and dict defaults are copied per instance
        description: Shown to operators
        category: Grouping, e.g. "Tracking" or "Persistence"
        guild_override: Whether a guild file may override the value
        requires_restart: Whether a change only applies after a restart
        min_value: Lower bound for numbers
        max_value: Upper bound for numbers
        choices: Allowed values
    """
    metadata = {
        "description": description,
        "category": category,
        "guild_override": guild_override,
        "requires_restart": requires_restart,
        "min_value": min_value,
        "max_value": max_value,
        "choices": choices,
    }

    if isinstance(default, (list, dict)):
        return field(default_factory=lambda: type(default)(default), metadata=metadata)
    return field(default=default, metadata=metadata)


@dataclass
class ConfigBase:
    """
    Base class for cog config schemas.

        >>> schema = CogConfigSchema.from_dataclass("Activity", ActivityConfig)
        >>> bot.config_manager.register_schema("Activity", schema)
        >>> bot.config_manager.for_guild("Activity", guild_id).flush_interval_seconds
        60
    """
