"""
TOML File I/O Handler.

This module provides TOML parsing and writing with comment preservation.

Key features:
- Parse TOML files using tomllib (Python 3.11+)
- Write TOML files using tomlkit (preserves comments and formatting)
- Generate a commented host config from the schema
"""

import tomllib
from pathlib import Path
from typing import Any

import tomlkit

from chatplug.config.schema import ConfigField


class TOMLError(Exception):
    """Base exception for TOML-related errors."""

    pass


def read_toml(file_path: Path) -> dict[str, Any]:
    """
    Read and parse a TOML file.

    Args:
        file_path: Path to the TOML file

    Returns:
        Parsed TOML data as dictionary

    Raises:
        TOMLError: If file cannot be read or parsed
    """
    try:
        with open(file_path, "rb") as f:
            return tomllib.load(f)
    except FileNotFoundError as e:
        raise TOMLError(f"TOML file not found: {file_path}") from e
    except tomllib.TOMLDecodeError as e:
        raise TOMLError(f"Failed to parse TOML file {file_path}: {e}") from e
    except OSError as e:
        raise TOMLError(f"Failed to read TOML file {file_path}: {e}") from e


def write_toml(file_path: Path, content: str | dict[str, Any]) -> None:
    """
    Write a TOML document or mapping to a file.

    Args:
        file_path: Path to the TOML file
        content: Rendered TOML text, or data to serialize with tomlkit

    Raises:
        TOMLError: If file cannot be written
    """
    try:
        file_path.parent.mkdir(parents=True, exist_ok=True)

        with open(file_path, "w", encoding="utf-8") as f:
            if isinstance(content, str):
                f.write(content)
            else:
                tomlkit.dump(content, f)
    except OSError as e:
        raise TOMLError(f"Failed to write TOML file {file_path}: {e}") from e


def _constraints(field: ConfigField) -> list[str]:
    constraints = []
    if field.min is not None:
        constraints.append(f"min: {field.min}")
    if field.max is not None:
        constraints.append(f"max: {field.max}")
    if field.choices is not None:
        constraints.append(f"choices: {field.choices}")
    return constraints


def generate_toml_from_schema(
    section: str,
    schema: dict[str, ConfigField],
    values: dict[str, Any] | None = None,
    plugins: dict[str, dict[str, Any]] | None = None,
) -> str:
    """
    Generate TOML content from schema with descriptive comments.

    Args:
        section: Name of the settings table (e.g. ``host``)
        schema: Schema dictionary (field_name -> ConfigField)
        values: Values overriding the schema defaults
        plugins: Per-plugin tables rendered under ``[plugins.<name>]``

    Returns:
        TOML string with comments
    """
    values = values or {}
    doc = tomlkit.document()

    doc.add(tomlkit.comment("chatplug host configuration"))
    doc.add(tomlkit.nl())

    table = tomlkit.table()
    for field_name, field in schema.items():
        if field.description:
            table.add(tomlkit.comment(field.description))

        constraints = _constraints(field)
        if constraints:
            table.add(tomlkit.comment(f"Constraints: {', '.join(constraints)}"))

        table.add(field_name, values.get(field_name, field.default))
        table.add(tomlkit.nl())

    doc.add(section, table)

    plugins_table = tomlkit.table()
    for name, options in (plugins or {}).items():
        plugin_table = tomlkit.table()
        for key, value in options.items():
            plugin_table.add(key, value)
        plugins_table.add(name, plugin_table)

    doc.add(tomlkit.nl())
    doc.add(tomlkit.comment("Per-plugin settings, passed to each plugin as context.config"))
    doc.add(tomlkit.comment("Set enabled = false in a plugin's table to keep it from loading"))
    doc.add("plugins", plugins_table)

    return tomlkit.dumps(doc)
