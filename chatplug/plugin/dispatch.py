"""
Command Dispatch.

Routes chat commands to the loaded plugin that declares them. The command
index is rebuilt from the registry on every lookup, so reloads are picked up
without any explicit invalidation.
"""

import inspect
import logging
from dataclasses import dataclass
from typing import Any

from chatplug.plugin.base import CommandContext
from chatplug.plugin.errors import UnknownCommandError
from chatplug.plugin.manifest import CommandDescriptor
from chatplug.plugin.registry import PluginRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandInfo:
    """Help entry for one command served by a loaded plugin."""

    name: str
    description: str
    usage: str
    aliases: tuple[str, ...]
    plugin: str


def _descriptors(instance: Any, fallback: tuple[CommandDescriptor, ...]) -> list[CommandDescriptor]:
    get_commands = getattr(instance, "get_commands", None)
    if not callable(get_commands):
        return list(fallback)

    descriptors = []
    for command in get_commands() or ():
        if isinstance(command, CommandDescriptor):
            descriptors.append(command)
        elif isinstance(command, str):
            descriptors.append(CommandDescriptor(name=command))
        elif isinstance(command, dict) and "name" in command:
            descriptors.append(
                CommandDescriptor(
                    name=command["name"],
                    description=command.get("description", ""),
                    usage=command.get("usage", ""),
                    aliases=tuple(command.get("aliases", ())),
                )
            )
    return descriptors


class CommandDispatcher:
    """
    Maps command names to plugins and executes them.

    Example:
        dispatcher = CommandDispatcher(registry, prefix="!")
        parsed = dispatcher.parse("!ping hello")
        if parsed:
            command, args = parsed
            await dispatcher.dispatch(command, CommandContext(command, args))
    """

    def __init__(self, registry: PluginRegistry, prefix: str = "!"):
        self.registry = registry
        self.prefix = prefix

    def _index(self) -> dict[str, tuple[str, str]]:
        # lowercase name or alias -> (plugin key, canonical command name)
        index: dict[str, tuple[str, str]] = {}

        for entry in self.registry.entries():
            for descriptor in _descriptors(entry.instance, entry.manifest.commands):
                for name in (descriptor.name, *descriptor.aliases):
                    key = name.lower()
                    owner = index.get(key, (None, None))[0]
                    if owner is not None and owner != entry.name:
                        logger.warning(
                            "Command '%s' of plugin %s is shadowed by plugin %s",
                            key,
                            entry.name,
                            owner,
                        )
                        continue
                    index[key] = (entry.name, descriptor.name.lower())

        return index

    def commands(self) -> dict[str, str]:
        """
        Build the command index.

        Returns:
            Mapping of lowercase command name/alias -> plugin key. The first
            plugin (in load order) to claim a name wins.
        """
        return {key: owner for key, (owner, _) in self._index().items()}

    def resolve(self, command: str) -> str | None:
        """Plugin key serving a command, or None."""
        return self.commands().get(command.lower())

    def parse(self, text: str) -> tuple[str, list[str]] | None:
        """
        Split a chat message into command and arguments.

        Args:
            text: Raw message text

        Returns:
            Tuple of (lowercase command, args), or None if text is not a command
        """
        if not text or not text.startswith(self.prefix):
            return None

        parts = text[len(self.prefix):].split()
        if not parts:
            return None

        return parts[0].lower(), parts[1:]

    async def dispatch(self, command: str, context: CommandContext) -> Any:
        """
        Execute a command on the plugin that declares it.

        Args:
            command: Command name or alias
            context: Invocation context

        Returns:
            Whatever the plugin's execute_command() returns

        Raises:
            UnknownCommandError: If no loaded plugin declares the command
        """
        name, canonical = self._index().get(command.lower(), (None, None))
        entry = self.registry.get_plugin_info(name) if name is not None else None
        if entry is None:
            raise UnknownCommandError(f"Unknown command: {command}")

        logger.debug("Dispatching %s to plugin %s", canonical, name)
        result = entry.instance.execute_command(canonical, context)
        if inspect.isawaitable(result):
            result = await result
        return result

    def all_commands(self) -> list[CommandInfo]:
        """
        Describe every command currently served, sorted by name.

        Aliases are folded into their command. Names taken by another plugin
        are left out, and a command none of whose names route to it is dropped.
        """
        infos: dict[tuple[str, str], CommandInfo] = {}
        index = self._index()

        for entry in self.registry.entries():
            for descriptor in _descriptors(entry.instance, entry.manifest.commands):
                name = descriptor.name.lower()
                routed = [
                    key
                    for key in (name, *(alias.lower() for alias in descriptor.aliases))
                    if index.get(key) == (entry.name, name)
                ]
                if not routed or (name, entry.name) in infos:
                    continue
                infos[name, entry.name] = CommandInfo(
                    name=name,
                    description=descriptor.description,
                    usage=descriptor.usage,
                    aliases=tuple(key for key in routed if key != name),
                    plugin=entry.name,
                )

        return [infos[key] for key in sorted(infos)]

    def command_info(self, command: str) -> CommandInfo | None:
        """Help entry for a command name or alias, or None if nothing serves it."""
        target = self._index().get(command.lower())
        if target is None:
            return None

        plugin, canonical = target
        for info in self.all_commands():
            if info.name == canonical and info.plugin == plugin:
                return info
        return None
