"""
Configuration System

Cogs declare their settings as dataclasses (see config_base.py); the manager
resolves each value through four layers, later layers winning:

    schema default -> data/config/base_config.json -> environment -> data/config/guilds/<id>.json

Files use a nested format, {"CogName": {"key": value}}. Environment variables
are named COG_KEY (e.g. ACTIVITY_FLUSH_INTERVAL_SECONDS) unless listed in
ENV_VAR_MAPPINGS. Invalid values are logged and fall back to the previous layer.
"""

import json
import logging
import os
from dataclasses import MISSING, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Type, Union

logger = logging.getLogger("activitybot.config_system")

# Config file paths
BASE_CONFIG_FILE = Path("data/config/base_config.json")
GUILDS_CONFIG_DIR = Path("data/config/guilds")

# Env var names kept from the single-guild deployment
ENV_VAR_MAPPINGS = {
    ("Activity", "voice_tracking_enabled"): "VOICE_TRACKING_ENABLED",
    ("Activity", "excluded_channel_ids"): "EXCLUDED_CHANNEL_IDS",
}

TRUE_STRINGS = ('true', '1', 'yes', 'on')


@dataclass
class ConfigField:
    """
    Metadata for a single configuration field.

    Attributes:
        name: Field name (e.g., "flush_interval_seconds")
        type: Python type (bool, int, float, str, list)
        default: Default value
        description: Human-readable description
        category: Grouping category
        guild_override: Whether this setting can be overridden per-guild
        requires_restart: Whether a change only applies after the bot restarts
        min_value: Minimum value (for numeric types)
        max_value: Maximum value (for numeric types)
        choices: List of valid choices
    """
    name: str
    type: Type
    default: Any
    description: str
    category: str
    guild_override: bool = False
    requires_restart: bool = False
    min_value: Optional[Union[int, float]] = None
    max_value: Optional[Union[int, float]] = None
    choices: Optional[List[Any]] = None

    def coerce(self, value: Any) -> Any:
        """
        Convert a raw value (JSON or environment string) to the field type.

        Raises:
            ValueError, TypeError: If the value cannot be converted
        """
        if isinstance(value, self.type) and not (self.type is int and isinstance(value, bool)):
            return value
        if isinstance(value, str):
            if self.type is bool:
                return value.strip().lower() in TRUE_STRINGS
            if self.type is list:
                # Comma separated: "10, 20," -> ["10", "20"]
                return [item.strip() for item in value.split(',') if item.strip()]
        if self.type is list and isinstance(value, (tuple, set)):
            return list(value)
        return self.type(value)

    def validate(self, value: Any) -> Tuple[bool, Optional[str]]:
        """
        Validate a value against this field's constraints.

        Returns:
            (is_valid, error_message)
        """
        try:
            value = self.coerce(value)
        except (ValueError, TypeError):
            return False, f"Expected {self.type.__name__}, got {type(value).__name__}"

        if self.min_value is not None and value < self.min_value:
            return False, f"Value {value} below minimum {self.min_value}"

        if self.max_value is not None and value > self.max_value:
            return False, f"Value {value} above maximum {self.max_value}"

        if self.choices is not None and value not in self.choices:
            return False, f"Value {value} not in valid choices: {self.choices}"

        return True, None


@dataclass
class CogConfigSchema:
    """Fields of one cog's config dataclass, keyed by name."""
    cog_name: str
    fields: Dict[str, ConfigField] = field(default_factory=dict)

    @classmethod
    def from_dataclass(cls, cog_name: str, config_class: Type) -> "CogConfigSchema":
        """Build a schema from a ConfigBase dataclass and its config_field() metadata."""
        from dataclasses import fields as dataclass_fields

        schema = cls(cog_name=cog_name)

        for dc_field in dataclass_fields(config_class):
            metadata = dc_field.metadata or {}

            if dc_field.default is not MISSING:
                default = dc_field.default
            elif dc_field.default_factory is not MISSING:
                default = dc_field.default_factory()
            else:
                default = None

            schema.fields[dc_field.name] = ConfigField(
                name=dc_field.name,
                type=dc_field.type,
                default=default,
                description=metadata.get("description", ""),
                category=metadata.get("category", "General"),
                guild_override=metadata.get("guild_override", False),
                requires_restart=metadata.get("requires_restart", False),
                min_value=metadata.get("min_value"),
                max_value=metadata.get("max_value"),
                choices=metadata.get("choices"),
            )

        return schema


class ConfigProxy:
    """
    Attribute access to one cog's resolved settings.

    cfg = manager.for_guild("Activity", guild_id); cfg.flush_interval_seconds
    """

    def __init__(self, manager: "ConfigManager", cog_name: str, guild_id: Optional[int] = None):
        self._manager = manager
        self._cog_name = cog_name
        self._guild_id = guild_id

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            return object.__getattribute__(self, name)
        return self._manager.get(self._cog_name, name, self._guild_id)

    def __setattr__(self, name: str, value: Any):
        if name.startswith("_"):
            object.__setattr__(self, name, value)
            return
        success, error = self._manager.set(self._cog_name, name, value, self._guild_id)
        if not success:
            raise ValueError(f"Failed to set {name}: {error}")


def _read_json(path: Path) -> Dict[str, Any]:
    with open(path, 'r', encoding='utf-8') as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"expected an object, got {type(data).__name__}")
    return data


def _write_json(path: Path, data: Dict[str, Any]):
    """Write through a temp file so a crash never leaves half a config behind."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with open(tmp_path, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
    os.replace(tmp_path, path)


class ConfigManager:
    """
    Resolves cog settings: default -> global -> env -> guild.

    Resolved values are cached per (cog, key, guild) until a set() or reload()
    touches them.
    """

    def __init__(self):
        self.schemas: Dict[str, CogConfigSchema] = {}
        self.global_overrides: Dict[str, Dict[str, Any]] = {}
        self.guild_overrides: Dict[int, Dict[str, Dict[str, Any]]] = {}
        self._cache: Dict[Tuple[str, str, Optional[int]], Any] = {}

        self._load_global_config()
        self._load_guild_configs()

    def register_schema(self, cog_name: str, schema: CogConfigSchema):
        self.schemas[cog_name] = schema
        self._cache = {k: v for k, v in self._cache.items() if k[0] != cog_name}
        logger.info(f"Registered config schema for {cog_name} ({len(schema.fields)} fields)")

    def _field(self, cog_name: str, key: str) -> Optional[ConfigField]:
        schema = self.schemas.get(cog_name)
        if schema is None:
            return None
        return schema.fields.get(key)

    def get(self, cog_name: str, key: str, guild_id: Optional[int] = None) -> Any:
        """
        Resolved value of a setting.

        Args:
            cog_name: Name of the cog
            key: Config key
            guild_id: Guild whose override applies, if any

        Returns:
            The value, or None for an unknown cog or key
        """
        cache_key = (cog_name, key, guild_id)
        if cache_key in self._cache:
            return self._cache[cache_key]

        field_meta = self._field(cog_name, key)
        if field_meta is None:
            logger.error(f"Unknown config {cog_name}.{key}, using None")
            return None

        value = field_meta.default
        for source, raw in self._layers(field_meta, cog_name, key, guild_id):
            try:
                value = field_meta.coerce(raw)
            except (ValueError, TypeError) as e:
                logger.warning(f"Ignoring {source} value {raw!r} for {cog_name}.{key}: {e}")

        self._cache[cache_key] = value
        return value

    def _layers(self, field_meta: ConfigField, cog_name: str, key: str, guild_id: Optional[int]):
        """(source, raw value) pairs that override the default, lowest priority first."""
        global_values = self.global_overrides.get(cog_name, {})
        if key in global_values:
            yield "global", global_values[key]

        env_var_name = ENV_VAR_MAPPINGS.get((cog_name, key), f"{cog_name.upper()}_{key.upper()}")
        env_value = os.getenv(env_var_name)
        if env_value is not None:
            yield f"env {env_var_name}", env_value

        if guild_id is not None and field_meta.guild_override:
            guild_values = self.guild_overrides.get(guild_id, {}).get(cog_name, {})
            if key in guild_values:
                yield f"guild {guild_id}", guild_values[key]

    def set(self, cog_name: str, key: str, value: Any, guild_id: Optional[int] = None) -> Tuple[bool, Optional[str]]:
        """
        Validate and store an override (global when guild_id is None).

        Returns:
            (success, error_message)
        """
        if cog_name not in self.schemas:
            return False, f"Unknown cog: {cog_name}"

        field_meta = self._field(cog_name, key)
        if field_meta is None:
            return False, f"Unknown config key: {key}"

        if guild_id is not None and not field_meta.guild_override:
            return False, f"Setting '{key}' does not support guild overrides"

        is_valid, error = field_meta.validate(value)
        if not is_valid:
            logger.error(f"Rejected {cog_name}.{key}={value!r}: {error}")
            return False, error
        value = field_meta.coerce(value)

        if guild_id is None:
            self.global_overrides.setdefault(cog_name, {})[key] = value
        else:
            self.guild_overrides.setdefault(guild_id, {}).setdefault(cog_name, {})[key] = value

        self._invalidate_cache(cog_name, key, guild_id)
        if field_meta.requires_restart:
            logger.info(f"{cog_name}.{key} changed to {value!r}; takes effect after restart")

        return True, None

    def for_guild(self, cog_name: str, guild_id: Optional[int] = None) -> ConfigProxy:
        return ConfigProxy(self, cog_name, guild_id)

    def get_schema(self, cog_name: str) -> Optional[CogConfigSchema]:
        return self.schemas.get(cog_name)

    def save(self):
        """Write global and guild overrides to disk."""
        try:
            _write_json(BASE_CONFIG_FILE, self.global_overrides)
            self._save_guild_configs()
            logger.info("Configuration saved successfully")
        except OSError as e:
            logger.error(f"Failed to save configuration: {e}", exc_info=True)
            raise

    def reload(self, guild_id: Optional[int] = None):
        """Re-read overrides from disk, all of them or one guild's."""
        if guild_id is None:
            self._load_global_config()
            self._load_guild_configs()
            self._cache.clear()
            logger.info("Reloaded all configurations")
        else:
            self._load_guild_config(guild_id)
            self._cache = {k: v for k, v in self._cache.items() if k[2] != guild_id}
            logger.info(f"Reloaded configuration for guild {guild_id}")

    def _load_global_config(self):
        self.global_overrides = {}
        if not BASE_CONFIG_FILE.exists():
            logger.info("No base config file found, using defaults")
            return

        try:
            self.global_overrides = _read_json(BASE_CONFIG_FILE)
            logger.info(f"Loaded global config ({len(self.global_overrides)} cogs)")
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load global config: {e}")

    def _load_guild_configs(self):
        self.guild_overrides = {}
        if not GUILDS_CONFIG_DIR.exists():
            logger.info("No guild configs directory found")
            return

        for guild_file in GUILDS_CONFIG_DIR.glob("*.json"):
            try:
                guild_id = int(guild_file.stem)
            except ValueError:
                logger.warning(f"Invalid guild config filename: {guild_file.name}")
                continue
            self._load_guild_config(guild_id)

        logger.info(f"Loaded {len(self.guild_overrides)} guild configs")

    def _load_guild_config(self, guild_id: int):
        guild_file = GUILDS_CONFIG_DIR / f"{guild_id}.json"
        if not guild_file.exists():
            self.guild_overrides.pop(guild_id, None)
            return

        try:
            self.guild_overrides[guild_id] = _read_json(guild_file)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load guild config {guild_id}: {e}")

    def _save_guild_configs(self):
        for guild_id, config in self.guild_overrides.items():
            guild_file = GUILDS_CONFIG_DIR / f"{guild_id}.json"
            if config:
                _write_json(guild_file, config)
            elif guild_file.exists():
                guild_file.unlink()

    def _invalidate_cache(self, cog_name: str, key: str, guild_id: Optional[int]):
        if guild_id is None:
            # A global change can affect every guild's resolved value
            self._cache = {k: v for k, v in self._cache.items() if k[:2] != (cog_name, key)}
            return
        self._cache.pop((cog_name, key, guild_id), None)
