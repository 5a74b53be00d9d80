"""Base classes for the plugin capability contract"""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from chatplug.plugin.manifest import CommandDescriptor, Manifest


@dataclass
class PluginContext:
    """Context handed to a plugin factory at load time

    Attributes:
        manifest: Parsed plugin manifest
        plugin_path: Plugin source directory
        plugin_name: Registry key the plugin is loaded under
        client: Chat transport client handle supplied by the host
        event_bus: Event bus handle supplied by the host
        config: Per-plugin configuration from the host config file
        extra: Any other host-supplied options
    """

    manifest: Manifest
    plugin_path: Path
    plugin_name: str
    client: Any = None
    event_bus: Any = None
    config: dict[str, Any] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        manifest: Manifest,
        plugin_path: Path,
        plugin_name: str,
        options: dict[str, Any] | None = None,
    ) -> "PluginContext":
        """Split host options into the well-known handles and ``extra``

        Args:
            manifest: Parsed plugin manifest
            plugin_path: Plugin source directory
            plugin_name: Registry key
            options: Host options (``client``, ``event_bus``, ``config``, ...)

        Returns:
            A fresh context; options are copied, never shared
        """
        remaining = dict(options or {})
        return cls(
            manifest=manifest,
            plugin_path=plugin_path,
            plugin_name=plugin_name,
            client=remaining.pop("client", None),
            event_bus=remaining.pop("event_bus", None),
            config=dict(remaining.pop("config", None) or {}),
            extra=remaining,
        )


@dataclass
class CommandContext:
    """Invocation context for a single command

    Attributes:
        command: Command name as resolved by the dispatcher
        args: Whitespace-separated arguments after the command
        message: Raw transport message
        reply: Coroutine function sending a text reply to the origin chat
        extra: Additional data supplied by the transport layer
    """

    command: str
    args: list[str] = field(default_factory=list)
    message: Any = None
    reply: Callable[[str], Awaitable[Any]] | None = None
    extra: dict[str, Any] = field(default_factory=dict)


class Plugin(ABC):
    """Base class for command plugins

    The registry owns the code lifecycle (load/unload); the plugin owns its
    functional lifecycle and reports it through ``get_info()``.
    """

    def __init__(self, context: PluginContext):
        """Initialize plugin

        Args:
            context: Context built by the registry
        """
        self.context = context
        self.manifest = context.manifest
        self.name = context.plugin_name
        self._initialized = False

    @abstractmethod
    async def initialize(self) -> None:
        """Acquire plugin resources

        Called by the host once after the plugin is loaded. Implementations set
        ``self._initialized = True`` on success.
        """
        pass

    @abstractmethod
    async def execute_command(self, command: str, context: CommandContext) -> Any:
        """Run one of the plugin's commands

        Args:
            command: Command name
            context: Invocation context

        Returns:
            Command output (transport specific)
        """
        pass

    def get_commands(self) -> list[CommandDescriptor]:
        """Commands served by this plugin (defaults to the manifest's)"""
        return list(self.manifest.commands)

    async def shutdown(self) -> None:
        """Release plugin resources

        Called by the registry when the plugin is unloaded.
        """
        self._initialized = False

    def get_info(self) -> dict[str, Any]:
        """Describe the plugin and its functional state"""
        return {
            "name": self.name,
            "version": self.manifest.version,
            "description": self.manifest.description,
            "commands": [command.name for command in self.get_commands()],
            "is_initialized": self._initialized,
        }

    @property
    def is_initialized(self) -> bool:
        """Check if plugin is initialized"""
        return self._initialized
