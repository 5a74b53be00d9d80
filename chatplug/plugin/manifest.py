"""
Plugin Manifest System.

This module provides manifest parsing and validation for plugins.

Key features:
- plugin.json decoding through the host filesystem capability
- Shape validation that names the offending field
- Command descriptor normalization (bare names or objects)
- No code is touched until the manifest is valid
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from chatplug.plugin.cache import FileSystem, LocalFileSystem
from chatplug.plugin.errors import (
    ManifestParseError,
    ManifestValidationError,
    NotFoundError,
)

MANIFEST_FILE = "plugin.json"
DEFAULT_MAIN = "__init__.py"


@dataclass(frozen=True)
class CommandDescriptor:
    """
    A command declared by a plugin manifest.

    Attributes:
        name: Command name as typed by users (without prefix)
        description: Human-readable description
        usage: Usage hint shown in help output
        aliases: Alternative names routed to the same command
    """

    name: str
    description: str = ""
    usage: str = ""
    aliases: tuple[str, ...] = ()


@dataclass(frozen=True)
class Manifest:
    """
    Represents a plugin manifest.

    Attributes:
        name: Declared plugin name
        version: Plugin version
        main: Entry point file name inside the plugin directory
        description: Plugin description
        author: Plugin author
        dependencies: Names of plugins that must be loaded first
        commands: Declared command descriptors
        raw_data: Raw manifest data
    """

    name: str
    version: str
    main: str = DEFAULT_MAIN
    description: str = ""
    author: str = ""
    dependencies: tuple[str, ...] = ()
    commands: tuple[CommandDescriptor, ...] = ()
    raw_data: dict[str, Any] = field(default_factory=dict, compare=False)


def _is_sequence(value: Any) -> bool:
    return isinstance(value, (list, tuple))


def validate_manifest_structure(data: Any) -> None:
    """
    Validate manifest structure and required fields.

    Args:
        data: Decoded manifest data

    Raises:
        ManifestValidationError: If manifest structure is invalid
    """
    if not isinstance(data, dict):
        raise ManifestValidationError(
            "manifest", "Invalid plugin manifest: must be an object"
        )

    for required in ("name", "version"):
        value = data.get(required)
        if not isinstance(value, str) or not value.strip():
            raise ManifestValidationError(
                required,
                f"Invalid plugin manifest: '{required}' is required and must be a non-empty string",
            )

    for optional in ("description", "author"):
        if optional in data and not isinstance(data[optional], str):
            raise ManifestValidationError(
                optional, f"Invalid plugin manifest: '{optional}' must be a string"
            )

    if "main" in data:
        main = data["main"]
        if (
            not isinstance(main, str)
            or not main.endswith(".py")
            or "\\" in main
            or Path(main).name != main
        ):
            raise ManifestValidationError(
                "main",
                f"Invalid plugin manifest: 'main' must be a .py file name, got {main!r}",
            )

    if "dependencies" in data:
        dependencies = data["dependencies"]
        if not _is_sequence(dependencies):
            raise ManifestValidationError(
                "dependencies", "Invalid plugin manifest: 'dependencies' must be an array"
            )
        for dep in dependencies:
            if not isinstance(dep, str) or not dep:
                raise ManifestValidationError(
                    "dependencies",
                    f"Invalid plugin manifest: dependency names must be strings, got {dep!r}",
                )

    if "commands" in data:
        commands = data["commands"]
        if not _is_sequence(commands):
            raise ManifestValidationError(
                "commands", "Invalid plugin manifest: 'commands' must be an array"
            )
        for command in commands:
            if isinstance(command, str) and command:
                continue
            if isinstance(command, dict) and isinstance(command.get("name"), str):
                aliases = command.get("aliases", [])
                if not _is_sequence(aliases) or not all(
                    isinstance(alias, str) for alias in aliases
                ):
                    raise ManifestValidationError(
                        "commands",
                        f"Invalid plugin manifest: aliases of '{command['name']}' must be an array of strings",
                    )
                continue
            raise ManifestValidationError(
                "commands",
                f"Invalid plugin manifest: command must be a name or an object with a 'name', got {command!r}",
            )


def _parse_command(command: str | dict[str, Any]) -> CommandDescriptor:
    if isinstance(command, str):
        return CommandDescriptor(name=command)
    return CommandDescriptor(
        name=command["name"],
        description=str(command.get("description", "")),
        usage=str(command.get("usage", "")),
        aliases=tuple(command.get("aliases", ())),
    )


def manifest_from_data(data: Any) -> Manifest:
    """
    Build a Manifest from decoded data.

    Args:
        data: Decoded plugin.json content

    Returns:
        Manifest object

    Raises:
        ManifestValidationError: If the data has the wrong shape
    """
    validate_manifest_structure(data)

    return Manifest(
        name=data["name"],
        version=data["version"],
        main=data.get("main", DEFAULT_MAIN),
        description=data.get("description", ""),
        author=data.get("author", ""),
        dependencies=tuple(data.get("dependencies", ())),
        commands=tuple(_parse_command(c) for c in data.get("commands", ())),
        raw_data=dict(data),
    )


def parse_manifest(manifest_path: Path | str, fs: FileSystem | None = None) -> Manifest:
    """
    Parse a plugin.json file.

    Args:
        manifest_path: Path to plugin.json
        fs: Filesystem capability (defaults to the local disk)

    Returns:
        Manifest object

    Raises:
        NotFoundError: If the file does not exist
        ManifestParseError: If the file cannot be read or decoded
        ManifestValidationError: If the manifest is invalid
    """
    fs = fs or LocalFileSystem()

    try:
        data = fs.read_structured(manifest_path)
    except FileNotFoundError as e:
        raise NotFoundError(f"Plugin manifest not found: {manifest_path}") from e
    except ValueError as e:
        raise ManifestParseError(f"Failed to parse manifest {manifest_path}: {e}") from e
    except OSError as e:
        raise ManifestParseError(f"Failed to read manifest {manifest_path}: {e}") from e

    return manifest_from_data(data)
