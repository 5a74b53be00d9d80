"""
Plugin Discovery.

This module scans a plugins directory and loads everything it finds.

Key features:
- Sub-directory scan with hidden/private name filtering
- Dependency ordering with topological sort
- Best-effort bulk loading with per-plugin outcomes
- PluginCatalog: enable/disable state and discovery statistics
"""

import inspect
import logging
from collections.abc import Collection
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from chatplug.plugin.cache import FileSystem, LocalFileSystem
from chatplug.plugin.errors import DependencyError, InstanceError, NotFoundError, PluginError
from chatplug.plugin.manifest import MANIFEST_FILE, Manifest, parse_manifest
from chatplug.plugin.registry import KeyStrategy, LoadResult, PluginRegistry

logger = logging.getLogger(__name__)


@dataclass
class DiscoveredPlugin:
    """
    A plugin directory found during a scan.

    Attributes:
        name: Key the plugin will be registered under
        path: Plugin directory
        manifest: Parsed manifest (None if it failed to parse)
        error: Parse/validation error, if any
    """

    name: str
    path: Path
    manifest: Manifest | None = None
    error: PluginError | None = None


@dataclass
class LoadOutcome:
    """Result of loading one discovered plugin."""

    name: str
    path: Path
    loaded: bool
    error: Exception | None = None
    disabled: bool = False


@dataclass
class DiscoveryStats:
    """Snapshot of a plugins directory against the registry."""

    total: int
    enabled: list[str]
    disabled: list[str]
    loaded: list[str]


def discover_plugins(
    plugins_dir: Path | str,
    fs: FileSystem | None = None,
    key_strategy: KeyStrategy = KeyStrategy.PATH,
) -> list[DiscoveredPlugin]:
    """
    Discover all plugins in a plugins directory.

    Args:
        plugins_dir: Directory containing one sub-directory per plugin
        fs: Filesystem capability (defaults to the local disk)
        key_strategy: How registry keys are derived

    Returns:
        Discovered plugins sorted by directory name
    """
    fs = fs or LocalFileSystem()
    plugins_dir = Path(plugins_dir)

    if not fs.exists(plugins_dir):
        logger.warning("Plugins directory not found: %s", plugins_dir)
        return []

    discovered = []
    for dir_name in fs.list_dirs(plugins_dir):
        if dir_name.startswith((".", "_")):
            continue

        plugin_dir = plugins_dir / dir_name
        manifest_path = plugin_dir / MANIFEST_FILE
        if not fs.exists(manifest_path):
            logger.debug("Skipping %s: no %s", plugin_dir, MANIFEST_FILE)
            continue

        try:
            manifest = parse_manifest(manifest_path, fs)
        except PluginError as e:
            # Log error but continue discovery
            logger.warning("Failed to parse manifest for %s: %s", dir_name, e)
            discovered.append(DiscoveredPlugin(name=dir_name, path=plugin_dir, error=e))
            continue

        name = manifest.name if key_strategy is KeyStrategy.MANIFEST else dir_name
        discovered.append(DiscoveredPlugin(name=name, path=plugin_dir, manifest=manifest))

    return discovered


def _topological_sort(plugins: dict[str, DiscoveredPlugin]) -> tuple[list[str], list[str]]:
    # Build dependency graph; every dependency must be a key of plugins
    graph: dict[str, list[str]] = {name: [] for name in plugins}
    in_degree: dict[str, int] = {name: 0 for name in plugins}

    for name, plugin in plugins.items():
        for dep_name in plugin.manifest.dependencies:
            # Add edge: name depends on dep_name
            graph[dep_name].append(name)
            in_degree[name] += 1

    # Topological sort using Kahn's algorithm
    queue = [node for node in graph if in_degree[node] == 0]
    result = []

    while queue:
        # Sort by name for deterministic order
        queue.sort()
        node = queue.pop(0)
        result.append(node)

        for dependent in graph[node]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                queue.append(dependent)

    blocked = sorted(name for name in graph if in_degree[name] > 0)
    return result, blocked


def resolve_load_order(plugins: list[DiscoveredPlugin]) -> list[str]:
    """
    Order plugins so that dependencies load first.

    Args:
        plugins: Discovered plugins (entries without a manifest are ignored)

    Returns:
        Plugin names in load order (dependencies first)

    Raises:
        DependencyError: If a dependency is missing or dependencies form a cycle
    """
    available = {p.name: p for p in plugins if p.manifest is not None}

    for name, plugin in available.items():
        for dep_name in plugin.manifest.dependencies:
            if dep_name not in available:
                raise DependencyError(
                    f"Plugin {name} depends on {dep_name}, but it is not installed"
                )

    order, blocked = _topological_sort(available)
    if blocked:
        raise DependencyError(f"Circular dependency detected among: {', '.join(blocked)}")

    return order


async def initialize_plugin(registry: PluginRegistry, name: str) -> None:
    """
    Run a loaded plugin's initialize(), unloading it again on failure.

    Args:
        registry: Registry holding the plugin
        name: Registry key

    Raises:
        InstanceError: If initialize() raises
    """
    entry = registry.get_plugin_info(name)
    if entry is None:
        return

    initialize = getattr(entry.instance, "initialize", None)
    if not callable(initialize):
        return

    try:
        result = initialize()
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        await registry.unload(name)
        raise InstanceError(f"Plugin {name} failed to initialize: {e}") from e


async def load_all(
    registry: PluginRegistry,
    plugins_dir: Path | str,
    options: dict[str, Any] | None = None,
    plugin_options: dict[str, dict[str, Any]] | None = None,
    initialize: bool = True,
    disabled: Collection[str] | None = None,
) -> list[LoadOutcome]:
    """
    Load every plugin in a directory in dependency order.

    Failures never abort the run: a plugin whose manifest is invalid, whose
    dependency is missing, cyclic or failed, or whose code raised is reported
    in its outcome. Disabled plugins are skipped and their dependents fail.

    Args:
        registry: Registry to load into
        plugins_dir: Plugins directory
        options: Host options shared by every plugin
        plugin_options: Per-plugin ``config`` keyed by plugin name
        initialize: Await each plugin's initialize() after loading
        disabled: Plugin names that must not be loaded

    Returns:
        One LoadOutcome per discovered plugin, in discovery order
    """
    discovered = discover_plugins(plugins_dir, registry.fs, registry.key_strategy)
    disabled = set(disabled or ())
    outcomes: dict[str, LoadOutcome] = {}

    def fail(plugin: DiscoveredPlugin, error: Exception) -> None:
        logger.error("Failed to load plugin %s: %s", plugin.name, error)
        outcomes[plugin.name] = LoadOutcome(plugin.name, plugin.path, False, error)

    for plugin in discovered:
        if plugin.error is not None:
            fail(plugin, plugin.error)

    # Drop plugins whose dependencies are missing or invalid, transitively
    valid = {p.name: p for p in discovered if p.manifest is not None}
    changed = True
    while changed:
        changed = False
        for name, plugin in list(valid.items()):
            missing = [dep for dep in plugin.manifest.dependencies if dep not in valid]
            if missing:
                fail(
                    plugin,
                    DependencyError(
                        f"Plugin {name} depends on {', '.join(missing)}, which is missing or invalid"
                    ),
                )
                del valid[name]
                changed = True

    order, blocked = _topological_sort(valid)
    for name in blocked:
        fail(valid[name], DependencyError(f"Circular dependency detected involving {name}"))

    for name in order:
        plugin = valid[name]
        if name in disabled:
            logger.info("Skipping disabled plugin: %s", name)
            outcomes[name] = LoadOutcome(name, plugin.path, False, disabled=True)
            continue

        failed_deps = [
            dep for dep in plugin.manifest.dependencies if not outcomes[dep].loaded
        ]
        if failed_deps:
            fail(
                plugin,
                DependencyError(
                    f"Plugin {name} requires {', '.join(failed_deps)}, "
                    "which failed to load or is disabled"
                ),
            )
            continue

        load_options = dict(options or {})
        if plugin_options and name in plugin_options:
            load_options["config"] = plugin_options[name]

        try:
            await registry.load(plugin.path, load_options)
            if initialize:
                await initialize_plugin(registry, name)
        except PluginError as e:
            fail(plugin, e)
            continue

        outcomes[name] = LoadOutcome(name, plugin.path, True)

    loaded = sum(1 for outcome in outcomes.values() if outcome.loaded)
    skipped = sum(1 for outcome in outcomes.values() if outcome.disabled)
    logger.info(
        "Plugin loading completed: %d loaded, %d failed, %d disabled",
        loaded,
        len(outcomes) - loaded - skipped,
        skipped,
    )

    return [outcomes[p.name] for p in discovered if p.name in outcomes]


class PluginCatalog:
    """
    The plugins of one directory together with their enabled state.

    ``disabled`` is a live set: hand the same object to a HotReloader so that
    disabled plugins are not picked up by hot reload either.

    Example:
        catalog = PluginCatalog(registry, "plugins", disabled={"spam"})
        await catalog.load_all()
        await catalog.disable_plugin("ping")   # unloads ping
        catalog.get_stats().disabled           # ['ping', 'spam']
    """

    def __init__(
        self,
        registry: PluginRegistry,
        plugins_dir: Path | str,
        options: dict[str, Any] | None = None,
        plugin_options: dict[str, dict[str, Any]] | None = None,
        disabled: Collection[str] | None = None,
    ):
        self.registry = registry
        self.plugins_dir = Path(plugins_dir)
        self.options = dict(options or {})
        self.plugin_options = dict(plugin_options or {})
        self.disabled: set[str] = set(disabled or ())

    def discover(self) -> list[DiscoveredPlugin]:
        return discover_plugins(self.plugins_dir, self.registry.fs, self.registry.key_strategy)

    def is_enabled(self, name: str) -> bool:
        return name not in self.disabled

    def _find(self, name: str) -> DiscoveredPlugin | None:
        for plugin in self.discover():
            if plugin.name == name:
                return plugin
        return None

    async def load_all(self, initialize: bool = True) -> list[LoadOutcome]:
        """Load every enabled plugin (see load_all())."""
        return await load_all(
            self.registry,
            self.plugins_dir,
            self.options,
            self.plugin_options,
            initialize,
            disabled=self.disabled,
        )

    async def load_plugin(self, name: str, initialize: bool = True) -> LoadResult:
        """
        Load (or replace) a single enabled plugin.

        Args:
            name: Registry key of a discovered plugin
            initialize: Await the plugin's initialize() after loading

        Returns:
            LoadResult for the new instance

        Raises:
            NotFoundError: If no plugin with that key is discovered
            PluginError: If the plugin is disabled or fails to load
        """
        plugin = self._find(name)
        if plugin is None:
            raise NotFoundError(f"Plugin not found: {name}")
        if plugin.error is not None:
            raise plugin.error
        if not self.is_enabled(name):
            raise PluginError(f"Plugin {name} is disabled")

        options = dict(self.options)
        if name in self.plugin_options:
            options["config"] = self.plugin_options[name]

        result = await self.registry.load(plugin.path, options)
        if initialize:
            await initialize_plugin(self.registry, name)
        return result

    async def enable_plugin(self, name: str) -> bool:
        """
        Allow a plugin to load again. Loading it is left to the caller.

        Returns:
            False if no plugin with that key is discovered
        """
        if self._find(name) is None:
            return False

        self.disabled.discard(name)
        logger.info("Enabled plugin: %s", name)
        return True

    async def disable_plugin(self, name: str) -> bool:
        """
        Keep a plugin from loading and unload it if it is loaded.

        Returns:
            False if the plugin is neither discovered nor loaded
        """
        if self._find(name) is None and not self.registry.is_plugin_loaded(name):
            return False

        self.disabled.add(name)
        await self.registry.unload(name)
        logger.info("Disabled plugin: %s", name)
        return True

    def get_stats(self) -> DiscoveryStats:
        names = [plugin.name for plugin in self.discover()]
        return DiscoveryStats(
            total=len(names),
            enabled=[name for name in names if self.is_enabled(name)],
            disabled=sorted(set(names) & self.disabled),
            loaded=self.registry.loaded_names(),
        )
