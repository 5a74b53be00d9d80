"""
chatplug Plugin System - Plugin code lifecycle management.

This module handles:
- Plugin manifest parsing and validation
- Loading, unloading and hot reloading plugin directories
- Module cache purging between loads
- Dependency-ordered discovery
- Command dispatch to loaded plugins
"""

from chatplug.plugin.base import CommandContext, Plugin, PluginContext
from chatplug.plugin.cache import (
    FileSystem,
    LocalFileSystem,
    MemoryModuleCache,
    ModuleCache,
    SysModulesCache,
)
from chatplug.plugin.dispatch import CommandDispatcher, CommandInfo
from chatplug.plugin.errors import (
    DependencyError,
    InstanceError,
    ManifestError,
    ManifestParseError,
    ManifestValidationError,
    NotFoundError,
    NotLoadedError,
    PluginError,
    UnknownCommandError,
)
from chatplug.plugin.manifest import CommandDescriptor, Manifest, parse_manifest
from chatplug.plugin.registry import (
    KeyStrategy,
    LoadResult,
    PluginRegistry,
    PluginSummary,
    RegistryEntry,
)

__all__ = [
    "CommandContext",
    "CommandDescriptor",
    "CommandDispatcher",
    "CommandInfo",
    "DependencyError",
    "FileSystem",
    "InstanceError",
    "KeyStrategy",
    "LoadResult",
    "LocalFileSystem",
    "Manifest",
    "ManifestError",
    "ManifestParseError",
    "ManifestValidationError",
    "MemoryModuleCache",
    "ModuleCache",
    "NotFoundError",
    "NotLoadedError",
    "Plugin",
    "PluginContext",
    "PluginError",
    "PluginRegistry",
    "PluginSummary",
    "RegistryEntry",
    "SysModulesCache",
    "UnknownCommandError",
    "parse_manifest",
]
