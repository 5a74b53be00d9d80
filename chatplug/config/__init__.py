"""
chatplug Configuration System - TOML-based host configuration.

This module provides:
- The ``[host]`` settings of the launcher, validated against HOST_SCHEMA
- ``[plugins.<name>]`` tables handed to each plugin as ``context.config``
  (``enabled = false`` keeps a plugin from loading)
- Default config file generation

Example usage:
    from chatplug.config import load_settings

    settings = load_settings(Path("config/chatplug.toml"))
    registry = PluginRegistry(key_strategy=settings.key_strategy)
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from chatplug.config.schema import (
    HOST_SCHEMA,
    SchemaError,
    ValidationError,
    generate_default_config,
    validate_section,
)
from chatplug.config.toml_handler import (
    TOMLError,
    generate_toml_from_schema,
    read_toml,
    write_toml,
)
from chatplug.plugin.registry import KeyStrategy

DEFAULT_CONFIG_FILE = Path("config/chatplug.toml")


class ConfigError(Exception):
    """Base exception for config API errors."""

    pass


@dataclass
class Settings:
    """
    Validated host settings.

    Attributes:
        plugins_dir: Directory holding one sub-directory per plugin
        key_strategy: How plugins are keyed in the registry
        command_prefix: Prefix marking chat messages as commands
        hot_reload: Whether to watch the plugins directory
        reload_debounce: Quiet period before a change is applied
        reload_cooldown: Minimum seconds between reloads of one plugin
        log_level: Logging level name
        plugins: Per-plugin configuration tables
        disabled_plugins: Plugins whose table sets ``enabled = false``
    """

    plugins_dir: Path = Path("plugins")
    key_strategy: KeyStrategy = KeyStrategy.PATH
    command_prefix: str = "!"
    hot_reload: bool = False
    reload_debounce: float = 0.5
    reload_cooldown: float = 1.0
    log_level: str = "INFO"
    plugins: dict[str, dict[str, Any]] = field(default_factory=dict)
    disabled_plugins: set[str] = field(default_factory=set)


def settings_from_data(data: dict[str, Any]) -> Settings:
    """
    Build Settings from parsed TOML data.

    Args:
        data: Parsed TOML document

    Returns:
        Settings with defaults applied

    Raises:
        ConfigError: If a section or value is invalid
    """
    host = data.get("host", {})
    if not isinstance(host, dict):
        raise ConfigError("[host] must be a table")

    plugins = data.get("plugins", {})
    if not isinstance(plugins, dict) or not all(
        isinstance(options, dict) for options in plugins.values()
    ):
        raise ConfigError("[plugins] must only contain [plugins.<name>] tables")

    try:
        values = validate_section("host", host, HOST_SCHEMA)
    except ValidationError as e:
        raise ConfigError(str(e)) from e

    # "enabled" is read by the host and never reaches the plugin
    plugin_tables = {}
    disabled = set()
    for name, options in plugins.items():
        options = dict(options)
        enabled = options.pop("enabled", True)
        if not isinstance(enabled, bool):
            raise ConfigError(f"Field [plugins.{name}].enabled must be a boolean")
        if not enabled:
            disabled.add(name)
        plugin_tables[name] = options

    return Settings(
        plugins_dir=Path(values["plugins_dir"]),
        key_strategy=KeyStrategy(values["key_strategy"]),
        command_prefix=values["command_prefix"],
        hot_reload=values["hot_reload"],
        reload_debounce=float(values["reload_debounce"]),
        reload_cooldown=float(values["reload_cooldown"]),
        log_level=values["log_level"],
        plugins=plugin_tables,
        disabled_plugins=disabled,
    )


def load_settings(config_file: Path | None = None) -> Settings:
    """
    Load host settings, falling back to defaults when the file is absent.

    Args:
        config_file: Path to the TOML file (default: config/chatplug.toml)

    Returns:
        Settings instance

    Raises:
        ConfigError: If the file cannot be parsed or is invalid
    """
    config_file = config_file or DEFAULT_CONFIG_FILE
    if not config_file.exists():
        return settings_from_data({})

    try:
        data = read_toml(config_file)
    except TOMLError as e:
        raise ConfigError(str(e)) from e

    return settings_from_data(data)


def render_default_config(plugins: dict[str, dict[str, Any]] | None = None) -> str:
    """Render the default config file content with comments."""
    return generate_toml_from_schema(
        "host", HOST_SCHEMA, generate_default_config(HOST_SCHEMA), plugins
    )


def write_default_config(config_file: Path, overwrite: bool = False) -> None:
    """
    Write a commented default config file.

    Args:
        config_file: Destination path
        overwrite: Replace an existing file

    Raises:
        ConfigError: If the file exists and overwrite is False, or cannot be written
    """
    if config_file.exists() and not overwrite:
        raise ConfigError(f"Config file already exists: {config_file}")

    try:
        write_toml(config_file, render_default_config())
    except TOMLError as e:
        raise ConfigError(str(e)) from e


__all__ = [
    "ConfigError",
    "DEFAULT_CONFIG_FILE",
    "SchemaError",
    "Settings",
    "load_settings",
    "render_default_config",
    "settings_from_data",
    "write_default_config",
]
