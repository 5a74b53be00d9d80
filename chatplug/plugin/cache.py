"""
Host Capabilities for the Plugin Registry.

This module provides the filesystem and module-cache capabilities the registry
depends on.

Key features:
- Identities are normalized absolute file paths
- SysModulesCache purges and loads through sys.modules and importlib
- MemoryModuleCache keeps everything in dictionaries (embedding hosts, tests)
- Path containment helpers scope purges to a plugin directory
"""

import hashlib
import importlib
import importlib.abc
import importlib.machinery
import importlib.util
import json
import os
import re
import sys
from abc import ABC, abstractmethod
from pathlib import Path
from types import ModuleType
from typing import Any

MODULE_PREFIX = "chatplug_plugin_"


def normalize_identity(path: Path | str) -> str:
    """
    Resolve a path to the canonical identity used as a cache key.

    Args:
        path: File or directory path

    Returns:
        Normalized absolute path string
    """
    return os.path.normcase(str(Path(path).resolve()))


def is_nested(identity: str, directory: str) -> bool:
    """
    Check whether an identity is equal to or nested under a directory.

    A sibling that merely shares a string prefix (``/p/ping`` vs
    ``/p/pingpong``) is not nested.

    Args:
        identity: Normalized file identity
        directory: Normalized directory identity

    Returns:
        True if identity lives inside directory
    """
    if identity == directory:
        return True
    root = directory.rstrip(os.sep) + os.sep
    return identity.startswith(root)


class FileSystem(ABC):
    """Filesystem capability consumed by manifest parsing and discovery."""

    @abstractmethod
    def exists(self, path: Path | str) -> bool:
        """Check whether a path exists."""
        pass

    @abstractmethod
    def read_structured(self, path: Path | str) -> Any:
        """
        Read and decode a structured document.

        Raises:
            FileNotFoundError: If the document does not exist
            ValueError: If the document cannot be decoded
        """
        pass

    @abstractmethod
    def list_dirs(self, path: Path | str) -> list[str]:
        """List names of immediate sub-directories, sorted."""
        pass


class LocalFileSystem(FileSystem):
    """Local disk filesystem reading JSON documents."""

    def exists(self, path: Path | str) -> bool:
        return Path(path).exists()

    def read_structured(self, path: Path | str) -> Any:
        with open(path, encoding="utf-8") as f:
            return json.load(f)

    def list_dirs(self, path: Path | str) -> list[str]:
        return sorted(item.name for item in Path(path).iterdir() if item.is_dir())


class ModuleCache(ABC):
    """Module cache capability: loaded code keyed by normalized file path."""

    @abstractmethod
    def has(self, identity: str) -> bool:
        """Check whether an identity is cached."""
        pass

    @abstractmethod
    def delete(self, identity: str) -> None:
        """Drop an identity from the cache (no-op if absent)."""
        pass

    @abstractmethod
    def keys(self) -> list[str]:
        """Return every cached identity."""
        pass

    @abstractmethod
    def load(self, identity: str) -> Any:
        """Load an identity, cache it, and return its exported value."""
        pass

    def keys_under(self, directory: str) -> list[str]:
        """
        Return cached identities nested under a directory.

        Args:
            directory: Normalized directory identity

        Returns:
            Matching identities
        """
        return [key for key in self.keys() if is_nested(key, directory)]


class FreshSourceLoader(importlib.machinery.SourceFileLoader):
    """
    Source loader that always compiles the file on disk.

    ``__pycache__`` is neither read nor written: a cached ``.pyc`` is only
    validated against the source size and whole-second mtime, so an edit that
    keeps both would otherwise run the old code.
    """

    def get_code(self, fullname):
        source_path = self.get_filename(fullname)
        return self.source_to_code(self.get_data(source_path), source_path)


class PluginModuleFinder(importlib.abc.MetaPathFinder):
    """Finds submodules of loaded plugins and loads them with FreshSourceLoader."""

    def find_spec(self, fullname, path, target=None):
        if not fullname.startswith(MODULE_PREFIX) or "." not in fullname or path is None:
            return None

        spec = importlib.machinery.PathFinder.find_spec(fullname, path)
        if spec is None or not isinstance(spec.loader, importlib.machinery.SourceFileLoader):
            return spec

        return importlib.util.spec_from_file_location(
            fullname,
            spec.origin,
            loader=FreshSourceLoader(fullname, spec.origin),
            submodule_search_locations=spec.submodule_search_locations,
        )


def install_module_finder() -> None:
    """Put PluginModuleFinder first on sys.meta_path (idempotent)."""
    if not any(isinstance(finder, PluginModuleFinder) for finder in sys.meta_path):
        sys.meta_path.insert(0, PluginModuleFinder())


class SysModulesCache(ModuleCache):
    """
    Module cache backed by sys.modules.

    Entry files are executed as packages rooted at their own directory, so
    plugins can use relative imports for helper modules; those helpers land in
    sys.modules with a ``__file__`` under the plugin directory and are purged
    together with the entry. Entry and helpers are always compiled from
    source, never from ``__pycache__``.
    """

    def __init__(self):
        install_module_finder()

    def _module_identity(self, module: ModuleType) -> str | None:
        file = getattr(module, "__file__", None)
        if not file:
            return None
        return os.path.normcase(os.path.abspath(file))

    def _names_for(self, identity: str) -> list[str]:
        return [
            name
            for name, module in list(sys.modules.items())
            if module is not None and self._module_identity(module) == identity
        ]

    def has(self, identity: str) -> bool:
        return bool(self._names_for(identity))

    def delete(self, identity: str) -> None:
        for name in self._names_for(identity):
            sys.modules.pop(name, None)

    def keys(self) -> list[str]:
        identities = []
        for module in list(sys.modules.values()):
            if module is None:
                continue
            identity = self._module_identity(module)
            if identity is not None:
                identities.append(identity)
        return identities

    def module_name(self, identity: str) -> str:
        """
        Derive a stable, unique module name for an entry file.

        Args:
            identity: Normalized entry file identity

        Returns:
            Module name (e.g. ``chatplug_plugin_ping_1a2b3c4d``)
        """
        directory = os.path.dirname(identity)
        safe = re.sub(r"\W", "_", os.path.basename(directory)) or "plugin"
        digest = hashlib.sha1(directory.encode("utf-8")).hexdigest()[:8]
        return f"{MODULE_PREFIX}{safe}_{digest}"

    def load(self, identity: str) -> ModuleType:
        module_name = self.module_name(identity)
        importlib.invalidate_caches()

        spec = importlib.util.spec_from_file_location(
            module_name,
            identity,
            loader=FreshSourceLoader(module_name, identity),
            submodule_search_locations=[os.path.dirname(identity)],
        )
        if spec is None or spec.loader is None:
            raise ImportError(f"Failed to create module spec for {identity}")

        module = importlib.util.module_from_spec(spec)

        # Add to sys.modules before execution
        sys.modules[module_name] = module
        try:
            spec.loader.exec_module(module)
        except BaseException:
            for name in list(sys.modules):
                if name == module_name or name.startswith(module_name + "."):
                    del sys.modules[name]
            raise

        return module


class MemoryModuleCache(ModuleCache):
    """
    In-memory module cache.

    ``sources`` plays the role of the disk: ``load`` copies the current source
    value into ``modules``. Editing ``sources`` after a load simulates an
    on-disk change that only becomes visible once the cached copy is purged.

    Example:
        cache = MemoryModuleCache({entry: PingPlugin})
        cache.load(entry)           # -> PingPlugin
        cache.sources[entry] = PingPluginV2
        cache.load(entry)           # still PingPlugin until purged
    """

    def __init__(self, sources: dict[str, Any] | None = None):
        self.sources: dict[str, Any] = dict(sources or {})
        self.modules: dict[str, Any] = {}
        self.load_count = 0

    def has(self, identity: str) -> bool:
        return identity in self.modules

    def delete(self, identity: str) -> None:
        self.modules.pop(identity, None)

    def keys(self) -> list[str]:
        return list(self.modules)

    def load(self, identity: str) -> Any:
        if identity in self.modules:
            return self.modules[identity]
        if identity not in self.sources:
            raise ImportError(f"No source registered for {identity}")
        self.load_count += 1
        self.modules[identity] = self.sources[identity]
        return self.modules[identity]
