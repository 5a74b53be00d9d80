"""
Plugin Registry.

This module provides the plugin code lifecycle: load, unload, reload and bulk
teardown of plugin directories at runtime.

Key features:
- Manifest validation before any code is touched
- Stale entry modules purged before every load (hot reload)
- Directory-scoped module cache purge on unload
- Per-plugin serialization of load/unload/reload
- Best-effort bulk teardown
"""

import asyncio
import contextlib
import inspect
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from types import ModuleType
from typing import Any

from chatplug.plugin.base import Plugin, PluginContext
from chatplug.plugin.cache import (
    FileSystem,
    LocalFileSystem,
    ModuleCache,
    SysModulesCache,
    normalize_identity,
)
from chatplug.plugin.errors import InstanceError, NotFoundError, NotLoadedError
from chatplug.plugin.manifest import MANIFEST_FILE, Manifest, parse_manifest

logger = logging.getLogger(__name__)

FACTORY_NAME = "create_plugin"


class KeyStrategy(Enum):
    """How a plugin's registry key is derived."""

    PATH = "path"
    MANIFEST = "manifest"


@dataclass(frozen=True)
class RegistryEntry:
    """
    Bookkeeping record for one loaded plugin.

    Attributes:
        name: Registry key
        path: Plugin source directory
        manifest: Manifest read at load time
        instance: Plugin instance
        entry_identity: Normalized path of the entry file
        modules: Cache identities under the plugin directory after load
        loaded_at: Load timestamp (UTC)
        options: Host options the plugin was loaded with
    """

    name: str
    path: Path
    manifest: Manifest
    instance: Any = field(compare=False)
    entry_identity: str
    modules: frozenset[str]
    loaded_at: datetime
    options: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def directory_identity(self) -> str:
        return normalize_identity(self.path)


@dataclass(frozen=True)
class PluginSummary:
    """Read-only view of a loaded plugin."""

    name: str
    manifest: Manifest
    loaded_at: datetime
    path: Path


@dataclass(frozen=True)
class LoadResult:
    """
    Result of a successful load or reload.

    Attributes:
        instance: The new plugin instance
        manifest: Manifest the instance was built from
        metadata: ``name``, ``path`` and ``loaded_at`` of the registry entry
    """

    instance: Any
    manifest: Manifest
    metadata: dict[str, Any]


class PluginRegistry:
    """
    Plugin code lifecycle manager.

    A host constructs one registry at startup and passes it to whatever needs
    to dispatch commands. Loads, unloads and reloads of the same key are
    serialized; distinct keys proceed concurrently.
    """

    def __init__(
        self,
        module_cache: ModuleCache | None = None,
        fs: FileSystem | None = None,
        key_strategy: KeyStrategy = KeyStrategy.PATH,
    ):
        """
        Initialize PluginRegistry.

        Args:
            module_cache: Module cache capability (defaults to sys.modules)
            fs: Filesystem capability (defaults to the local disk)
            key_strategy: Derive keys from the directory name or the manifest name
        """
        self.module_cache = module_cache or SysModulesCache()
        self.fs = fs or LocalFileSystem()
        self.key_strategy = key_strategy
        self._entries: dict[str, RegistryEntry] = {}
        self._shutdown_errors: dict[str, BaseException] = {}
        self._name_locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._lock = threading.Lock()

    @contextlib.asynccontextmanager
    async def _name_lock(self, name: str):
        # Locks live only while an operation on the key holds or awaits them
        with self._lock:
            lock = self._name_locks.get(name)
            if lock is None:
                lock = self._name_locks[name] = asyncio.Lock()
            self._lock_users[name] = self._lock_users.get(name, 0) + 1

        try:
            async with lock:
                yield
        finally:
            with self._lock:
                self._lock_users[name] -= 1
                if not self._lock_users[name]:
                    del self._lock_users[name]
                    del self._name_locks[name]

    def read_plugin(self, source_path: Path | str) -> tuple[Path, Manifest]:
        """
        Locate and validate a plugin directory without loading any code.

        Args:
            source_path: Plugin directory

        Returns:
            Tuple of (directory path, manifest)

        Raises:
            NotFoundError: If the directory, manifest or entry file is missing
            ManifestParseError: If plugin.json cannot be decoded
            ManifestValidationError: If plugin.json has the wrong shape
        """
        path = Path(source_path)
        if not self.fs.exists(path):
            raise NotFoundError(f"Plugin directory not found: {path}")

        manifest_path = path / MANIFEST_FILE
        if not self.fs.exists(manifest_path):
            raise NotFoundError(f"Plugin manifest not found: {manifest_path}")

        manifest = parse_manifest(manifest_path, self.fs)

        entry_path = path / manifest.main
        if not self.fs.exists(entry_path):
            raise NotFoundError(f"Plugin entry point not found: {entry_path}")

        return path, manifest

    def key_for(self, path: Path, manifest: Manifest) -> str:
        """Registry key for a plugin according to the key strategy."""
        if self.key_strategy is KeyStrategy.MANIFEST:
            return manifest.name
        return path.name

    async def load(
        self, source_path: Path | str, options: dict[str, Any] | None = None
    ) -> LoadResult:
        """
        Load a plugin directory and register a fresh instance.

        A plugin already loaded under the same key is unloaded first.

        Args:
            source_path: Plugin directory
            options: Host options (``client``, ``event_bus``, ``config``, ...)

        Returns:
            LoadResult for the new instance

        Raises:
            NotFoundError: If the directory, manifest or entry file is missing
            ManifestParseError: If plugin.json cannot be decoded
            ManifestValidationError: If plugin.json has the wrong shape
            InstanceError: If the plugin code or its constructor fails
        """
        path, manifest = self.read_plugin(source_path)
        name = self.key_for(path, manifest)

        async with self._name_lock(name):
            # The manifest may have changed while waiting for the lock
            path, manifest = self.read_plugin(source_path)
            if self.key_for(path, manifest) == name:
                return await self._load_locked(name, path, manifest, options or {})

        logger.debug("Plugin at %s changed key while queued, retrying", path)
        return await self.load(source_path, options)

    async def _load_locked(
        self, name: str, path: Path, manifest: Manifest, options: dict[str, Any]
    ) -> LoadResult:
        if self.is_plugin_loaded(name):
            logger.info("Replacing loaded plugin: %s", name)
            await self._unload_locked(name)

        entry_identity = normalize_identity(path / manifest.main)
        directory_identity = normalize_identity(path)

        # Never instantiate a stale cached definition
        if self.module_cache.has(entry_identity):
            logger.debug("Purging stale cache entry: %s", entry_identity)
            self.module_cache.delete(entry_identity)

        context = PluginContext.build(manifest, path, name, options)
        try:
            exported = self.module_cache.load(entry_identity)
            instance = await self._instantiate(exported, context)
        except Exception as e:
            self._purge(entry_identity, directory_identity)
            if isinstance(e, InstanceError):
                raise
            raise InstanceError(f"Failed to load plugin {name}: {e}") from e

        loaded_at = datetime.now(timezone.utc)
        entry = RegistryEntry(
            name=name,
            path=path,
            manifest=manifest,
            instance=instance,
            entry_identity=entry_identity,
            modules=frozenset(self.module_cache.keys_under(directory_identity)),
            loaded_at=loaded_at,
            options=dict(options),
        )

        with self._lock:
            self._entries[name] = entry
            self._shutdown_errors.pop(name, None)

        if manifest.name != name:
            logger.debug("Plugin %s declares manifest name %s", name, manifest.name)
        logger.info("Loaded plugin: %s (%s) from %s", name, manifest.version, path)

        return LoadResult(
            instance=instance,
            manifest=manifest,
            metadata={"name": name, "path": path, "loaded_at": loaded_at},
        )

    def _find_factory(self, exported: Any) -> Any:
        if isinstance(exported, ModuleType):
            factory = getattr(exported, FACTORY_NAME, None)
            if callable(factory):
                return factory

            candidates = [
                item
                for item in vars(exported).values()
                if isinstance(item, type)
                and issubclass(item, Plugin)
                and item.__module__ == exported.__name__
                and not inspect.isabstract(item)
            ]
            if len(candidates) == 1:
                return candidates[0]
            if not candidates:
                raise InstanceError(
                    f"No {FACTORY_NAME}() or Plugin subclass found in {exported.__file__}"
                )
            raise InstanceError(
                f"Multiple Plugin subclasses found in {exported.__file__}; "
                f"define {FACTORY_NAME}() to choose one"
            )

        if callable(exported):
            return exported

        raise InstanceError(f"Plugin entry exports nothing callable: {exported!r}")

    async def _instantiate(self, exported: Any, context: PluginContext) -> Any:
        factory = self._find_factory(exported)
        try:
            instance = factory(context)
            if inspect.isawaitable(instance):
                instance = await instance
        except Exception as e:
            raise InstanceError(
                f"Plugin constructor for {context.plugin_name} failed: {e}"
            ) from e

        if instance is None:
            raise InstanceError(f"Plugin factory for {context.plugin_name} returned None")
        return instance

    def _purge(
        self,
        entry_identity: str,
        directory_identity: str,
        modules: frozenset[str] = frozenset(),
    ) -> None:
        self.module_cache.delete(entry_identity)

        # Helper modules the plugin pulled in, recorded or imported since
        stale = set(modules) | set(self.module_cache.keys_under(directory_identity))
        stale.discard(entry_identity)
        for identity in sorted(stale):
            self.module_cache.delete(identity)

        if stale:
            logger.debug("Purged %d cached modules under %s", len(stale), directory_identity)

    async def _shutdown_instance(self, entry: RegistryEntry) -> Exception | None:
        shutdown = getattr(entry.instance, "shutdown", None)
        if not callable(shutdown):
            return None

        try:
            result = shutdown()
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error("Error shutting down plugin %s: %s", entry.name, e, exc_info=True)
            return e
        return None

    async def unload(self, name: str) -> bool:
        """
        Unload a plugin.

        Shutdown failures are logged and recorded (see get_shutdown_error) but
        never prevent cache purge and registry removal.

        Args:
            name: Registry key

        Returns:
            True if the plugin was loaded, False otherwise
        """
        async with self._name_lock(name):
            return await self._unload_locked(name)

    async def _unload_locked(self, name: str) -> bool:
        # Detach first: readers never see an entry whose instance is shutting down
        with self._lock:
            entry = self._entries.pop(name, None)

        if entry is None:
            return False

        error = None
        try:
            error = await self._shutdown_instance(entry)
        finally:
            self._purge(entry.entry_identity, entry.directory_identity, entry.modules)

        with self._lock:
            if error is not None:
                self._shutdown_errors[name] = error
            else:
                self._shutdown_errors.pop(name, None)

        logger.info("Unloaded plugin: %s", name)
        return True

    async def reload(self, name: str) -> LoadResult:
        """
        Reload a plugin from its source directory (unload + load).

        Not atomic: if the load fails the plugin stays unloaded.

        Args:
            name: Registry key

        Returns:
            LoadResult for the new instance

        Raises:
            NotLoadedError: If the plugin is not loaded
            PluginError: Any error load() can raise
        """
        async with self._name_lock(name):
            entry = self.get_plugin_info(name)
            if entry is None:
                raise NotLoadedError(f"Plugin {name} is not loaded")

            await self._unload_locked(name)

            path, manifest = self.read_plugin(entry.path)
            new_name = self.key_for(path, manifest)
            if new_name == name:
                return await self._load_locked(name, path, manifest, entry.options)

        logger.info("Plugin %s now loads as %s", name, new_name)
        return await self.load(entry.path, entry.options)

    async def clear_all(self) -> dict[str, BaseException]:
        """
        Unload every plugin, continuing past individual failures.

        Plugins loaded while the teardown runs are unloaded as well; the
        registry is empty on return.

        Returns:
            Failures keyed by plugin name (empty on a clean teardown)
        """
        failures: dict[str, BaseException] = {}

        # unload() detaches an entry before anything can fail, so this terminates
        while names := self.loaded_names():
            for name in names:
                try:
                    unloaded = await self.unload(name)
                except Exception as e:
                    logger.error("Error unloading plugin %s: %s", name, e, exc_info=True)
                    failures[name] = e
                    continue

                error = self.get_shutdown_error(name) if unloaded else None
                if error is not None:
                    failures[name] = error

        return failures

    def get_loaded_plugins(self) -> list[PluginSummary]:
        """
        Snapshot of loaded plugins in load order.

        Returns:
            List of PluginSummary objects
        """
        with self._lock:
            return [
                PluginSummary(
                    name=entry.name,
                    manifest=entry.manifest,
                    loaded_at=entry.loaded_at,
                    path=entry.path,
                )
                for entry in self._entries.values()
            ]

    def entries(self) -> list[RegistryEntry]:
        """Snapshot of registry entries in load order."""
        with self._lock:
            return list(self._entries.values())

    def loaded_names(self) -> list[str]:
        """Registry keys in load order."""
        with self._lock:
            return list(self._entries)

    def is_plugin_loaded(self, name: str) -> bool:
        with self._lock:
            return name in self._entries

    def get_plugin_info(self, name: str) -> RegistryEntry | None:
        """
        Get the registry entry of a loaded plugin.

        Args:
            name: Registry key

        Returns:
            RegistryEntry, or None if not loaded
        """
        with self._lock:
            return self._entries.get(name)

    def get_shutdown_error(self, name: str) -> BaseException | None:
        """Exception raised by the plugin's last shutdown(), if it failed."""
        with self._lock:
            return self._shutdown_errors.get(name)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._entries
