"""
Hot Reload Watcher.

This module reloads plugins when their files change on disk.

Key features:
- watchdog observer over the plugins directory
- Events mapped to the plugin directory they belong to
- Per-plugin debounce and cooldown on the event loop
- Unload on directory removal, load for newly added plugins
- Forced reloads that bypass debounce and cooldown, and reload statistics
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from chatplug.plugin.cache import normalize_identity
from chatplug.plugin.discovery import initialize_plugin
from chatplug.plugin.manifest import MANIFEST_FILE
from chatplug.plugin.registry import PluginRegistry

logger = logging.getLogger(__name__)

IGNORED_SUFFIXES = (".pyc", ".pyo", ".log", ".tmp", ".swp")
IGNORED_EVENTS = ("opened", "closed", "closed_no_write")


@dataclass
class ReloadStats:
    """
    Snapshot of hot reload activity.

    Attributes:
        is_running: Whether the observer is watching
        pending: Directories waiting for their debounce or cooldown
        in_progress: Directories being reloaded right now
        history: Last successful reload per directory (UTC)
        reloads: Successful reloads so far
        failures: Failed reloads so far
    """

    is_running: bool
    pending: list[str]
    in_progress: list[str]
    history: dict[str, datetime]
    reloads: int
    failures: int


class PluginEventHandler(FileSystemEventHandler):
    """Forwards watchdog events to a HotReloader (runs on the observer thread)."""

    def __init__(self, reloader: "HotReloader"):
        super().__init__()
        self.reloader = reloader

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type in IGNORED_EVENTS:
            return

        paths = [event.src_path]
        dest_path = getattr(event, "dest_path", "")
        if dest_path:
            paths.append(dest_path)

        for path in paths:
            if isinstance(path, bytes):
                path = path.decode()
            dir_name = self.reloader.plugin_dir_for(path)
            if dir_name is not None:
                logger.debug("File %s: %s", event.event_type, path)
                self.reloader.notify(dir_name)


class HotReloader:
    """
    Watches a plugins directory and reloads changed plugins.

    Must be constructed on (or given) the event loop that owns the registry.
    """

    def __init__(
        self,
        registry: PluginRegistry,
        plugins_dir: Path | str,
        loop: asyncio.AbstractEventLoop | None = None,
        debounce: float = 0.5,
        cooldown: float = 1.0,
        options: dict[str, Any] | None = None,
        plugin_options: dict[str, dict[str, Any]] | None = None,
        disabled: set[str] | None = None,
    ):
        """
        Initialize HotReloader.

        Args:
            registry: Registry to reload plugins in
            plugins_dir: Directory containing one sub-directory per plugin
            loop: Event loop owning the registry (defaults to the running loop)
            debounce: Quiet period in seconds before a change is applied
            cooldown: Minimum seconds between two reloads of one plugin
            options: Host options for plugins loaded for the first time
            plugin_options: Per-plugin ``config`` keyed by registry key
            disabled: Registry keys to leave alone (shared, not copied)
        """
        self.registry = registry
        self.plugins_dir = Path(plugins_dir).resolve()
        self.loop = loop or asyncio.get_running_loop()
        self.debounce = debounce
        self.cooldown = cooldown
        self.options = dict(options or {})
        self.plugin_options = dict(plugin_options or {})
        self.disabled = disabled if disabled is not None else set()

        self._pending: dict[str, asyncio.TimerHandle] = {}
        self._last_reload: dict[str, float] = {}
        self._tasks: set[asyncio.Task] = set()
        self._in_progress: set[str] = set()
        self._history: dict[str, datetime] = {}
        self._reloads = 0
        self._failures = 0
        self._observer: Any = None

    @property
    def is_running(self) -> bool:
        return self._observer is not None

    def start(self) -> None:
        """Start the watchdog observer."""
        if self._observer is not None:
            return

        observer = Observer()
        observer.schedule(PluginEventHandler(self), str(self.plugins_dir), recursive=True)
        observer.start()
        self._observer = observer
        logger.info("Watching plugins directory: %s", self.plugins_dir)

    def stop(self) -> None:
        """Stop the observer and drop pending reloads."""
        for handle in self._pending.values():
            handle.cancel()
        self._pending.clear()

        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
            logger.info("Stopped watching %s", self.plugins_dir)

    def plugin_dir_for(self, path: Path | str) -> str | None:
        """
        Map a changed path to the plugin directory name it belongs to.

        Args:
            path: Path reported by the observer

        Returns:
            Directory name, or None for paths that never trigger a reload
        """
        try:
            relative = Path(path).resolve().relative_to(self.plugins_dir)
        except ValueError:
            return None

        parts = relative.parts
        if not parts or parts[0].startswith((".", "_")):
            return None
        if "__pycache__" in parts or any(part.startswith(".") for part in parts[1:]):
            return None
        if relative.suffix in IGNORED_SUFFIXES:
            return None

        return parts[0]

    def notify(self, dir_name: str) -> None:
        """Queue a change for a plugin directory (thread-safe)."""
        self.loop.call_soon_threadsafe(self._schedule, dir_name, self.debounce)

    def _schedule(self, dir_name: str, delay: float) -> None:
        # Debounce: the latest event restarts the timer
        handle = self._pending.pop(dir_name, None)
        if handle is not None:
            handle.cancel()
        self._pending[dir_name] = self.loop.call_later(delay, self._fire, dir_name)

    def _fire(self, dir_name: str) -> None:
        self._pending.pop(dir_name, None)

        elapsed = self.loop.time() - self._last_reload.get(dir_name, float("-inf"))
        if elapsed < self.cooldown:
            logger.debug("Deferring reload of %s (cooldown)", dir_name)
            self._schedule(dir_name, self.cooldown - elapsed)
            return

        self._last_reload[dir_name] = self.loop.time()
        task = self.loop.create_task(self._apply(dir_name))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _key_for_dir(self, plugin_dir: Path) -> str | None:
        directory = normalize_identity(plugin_dir)
        for entry in self.registry.entries():
            if entry.directory_identity == directory:
                return entry.name
        return None

    async def _apply(self, dir_name: str) -> bool:
        plugin_dir = self.plugins_dir / dir_name
        key = self._key_for_dir(plugin_dir)
        self._in_progress.add(dir_name)

        try:
            if not plugin_dir.exists():
                if key is None:
                    return False
                logger.info("Plugin directory removed, unloading: %s", key)
                await self.registry.unload(key)
            elif key is not None:
                if key in self.disabled:
                    logger.debug("Not reloading disabled plugin: %s", key)
                    return False
                logger.info("Reloading plugin: %s", key)
                result = await self.registry.reload(key)
                await initialize_plugin(self.registry, result.metadata["name"])
            elif (plugin_dir / MANIFEST_FILE).exists():
                key = self.registry.key_for(*self.registry.read_plugin(plugin_dir))
                if key in self.disabled:
                    logger.debug("Not loading disabled plugin: %s", key)
                    return False
                logger.info("New plugin detected: %s", key)
                options = dict(self.options)
                if key in self.plugin_options:
                    options["config"] = self.plugin_options[key]
                result = await self.registry.load(plugin_dir, options)
                await initialize_plugin(self.registry, result.metadata["name"])
            else:
                return False

        except Exception as e:
            logger.error("Hot reload of %s failed: %s", dir_name, e, exc_info=True)
            self._failures += 1
            return False
        finally:
            self._in_progress.discard(dir_name)

        self._reloads += 1
        self._history[dir_name] = datetime.now(timezone.utc)
        return True

    async def force_reload(self, dir_name: str) -> bool:
        """
        Reload a plugin directory now, skipping debounce and cooldown.

        Args:
            dir_name: Plugin directory name under the plugins directory

        Returns:
            True if the plugin was loaded, reloaded or unloaded
        """
        handle = self._pending.pop(dir_name, None)
        if handle is not None:
            handle.cancel()

        logger.info("Force reloading: %s", dir_name)
        self._last_reload[dir_name] = self.loop.time()
        return await self._apply(dir_name)

    async def reload_all(self) -> list[str]:
        """
        Force a reload of every plugin directory.

        Returns:
            Directory names that were reloaded successfully
        """
        if not self.plugins_dir.is_dir():
            return []

        dir_names = sorted(
            child.name
            for child in self.plugins_dir.iterdir()
            if child.is_dir() and not child.name.startswith((".", "_"))
        )
        return [dir_name for dir_name in dir_names if await self.force_reload(dir_name)]

    def get_stats(self) -> ReloadStats:
        return ReloadStats(
            is_running=self.is_running,
            pending=sorted(self._pending),
            in_progress=sorted(self._in_progress),
            history=dict(self._history),
            reloads=self._reloads,
            failures=self._failures,
        )

    async def wait_idle(self) -> None:
        """Wait until no reload is pending or running."""
        while self._pending or self._tasks:
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
            else:
                await asyncio.sleep(0.01)
