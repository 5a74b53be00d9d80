"""
chatplug - Chat-bot launcher with hot-reloadable command plugins.

This is the main package that exports the public API.
"""

__version__ = "0.1.0"

from chatplug.plugin import (
    CommandContext,
    CommandDispatcher,
    KeyStrategy,
    Plugin,
    PluginContext,
    PluginError,
    PluginRegistry,
)

__all__ = [
    "__version__",
    "CommandContext",
    "CommandDispatcher",
    "KeyStrategy",
    "Plugin",
    "PluginContext",
    "PluginError",
    "PluginRegistry",
]
