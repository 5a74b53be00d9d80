"""
Tests for Hot Reload Watcher.

This test suite covers:
1. Mapping changed paths to plugin directories
2. watchdog event forwarding
3. Debounce and cooldown
4. Reload, load of new plugins, unload of removed plugins
5. Forced reloads, disabled plugins and reload statistics
6. Observer start/stop
"""

import asyncio
import json
import shutil
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from watchdog.events import FileClosedEvent, FileModifiedEvent, FileMovedEvent

from chatplug.plugin.base import CommandContext, Plugin
from chatplug.plugin.cache import MemoryModuleCache, normalize_identity
from chatplug.plugin.registry import PluginRegistry
from chatplug.plugin.watcher import HotReloader, PluginEventHandler


class WatchedPlugin(Plugin):
    async def initialize(self) -> None:
        self._initialized = True

    async def execute_command(self, command: str, context: CommandContext):
        return command


def make_plugin(root: Path, dir_name: str, version: str = "1.0.0") -> Path:
    plugin_dir = root / dir_name
    plugin_dir.mkdir(parents=True, exist_ok=True)
    (plugin_dir / "plugin.json").write_text(json.dumps({"name": dir_name, "version": version}))
    (plugin_dir / "__init__.py").write_text("")
    return plugin_dir


async def settle(reloader: HotReloader) -> None:
    # Let call_soon_threadsafe callbacks run before waiting
    await asyncio.sleep(0.01)
    await reloader.wait_idle()


@pytest.fixture
def plugins_dir(tmp_path):
    root = tmp_path / "plugins"
    root.mkdir()
    return root


@pytest.fixture
def cache(plugins_dir):
    return MemoryModuleCache(
        {
            normalize_identity(plugins_dir / name / "__init__.py"): WatchedPlugin
            for name in ("ping", "fresh")
        }
    )


class TestPathMapping:
    """Test plugin_dir_for()."""

    @pytest.mark.asyncio
    async def test_maps_files_to_plugin_directory(self, plugins_dir):
        reloader = HotReloader(PluginRegistry(module_cache=MemoryModuleCache()), plugins_dir)

        assert reloader.plugin_dir_for(plugins_dir / "ping" / "__init__.py") == "ping"
        assert reloader.plugin_dir_for(plugins_dir / "ping" / "lib" / "util.py") == "ping"
        assert reloader.plugin_dir_for(plugins_dir / "ping") == "ping"

    @pytest.mark.asyncio
    async def test_ignores_noise(self, plugins_dir, tmp_path):
        reloader = HotReloader(PluginRegistry(module_cache=MemoryModuleCache()), plugins_dir)

        assert reloader.plugin_dir_for(plugins_dir) is None
        assert reloader.plugin_dir_for(tmp_path / "elsewhere.py") is None
        assert reloader.plugin_dir_for(plugins_dir / ".git" / "HEAD") is None
        assert reloader.plugin_dir_for(plugins_dir / "_disabled" / "x.py") is None
        assert reloader.plugin_dir_for(plugins_dir / "ping" / "__pycache__" / "x.cpython-311.pyc") is None
        assert reloader.plugin_dir_for(plugins_dir / "ping" / ".x.py.swp") is None
        assert reloader.plugin_dir_for(plugins_dir / "ping" / "debug.log") is None


class TestEventHandler:
    """Test watchdog event forwarding."""

    def test_modified_event_notifies(self, plugins_dir):
        reloader = MagicMock()
        reloader.plugin_dir_for.side_effect = lambda path: "ping" if "ping" in path else None
        handler = PluginEventHandler(reloader)

        handler.on_any_event(FileModifiedEvent(str(plugins_dir / "ping" / "__init__.py")))

        reloader.notify.assert_called_once_with("ping")

    def test_moved_event_notifies_both_sides(self, plugins_dir):
        reloader = MagicMock()
        reloader.plugin_dir_for.side_effect = lambda path: Path(path).parent.name
        handler = PluginEventHandler(reloader)

        handler.on_any_event(
            FileMovedEvent(str(plugins_dir / "a" / "x.py"), str(plugins_dir / "b" / "x.py"))
        )

        assert [c.args[0] for c in reloader.notify.call_args_list] == ["a", "b"]

    def test_closed_event_ignored(self, plugins_dir):
        reloader = MagicMock()
        handler = PluginEventHandler(reloader)

        handler.on_any_event(FileClosedEvent(str(plugins_dir / "ping" / "__init__.py")))

        reloader.notify.assert_not_called()


class TestReloading:
    """Test debounce, cooldown and applied changes."""

    @pytest.mark.asyncio
    async def test_burst_debounced_to_one_reload(self, plugins_dir, cache):
        registry = PluginRegistry(module_cache=cache)
        await registry.load(make_plugin(plugins_dir, "ping"))
        reloader = HotReloader(registry, plugins_dir, debounce=0.05, cooldown=0)

        for _ in range(3):
            reloader.notify("ping")
        await settle(reloader)

        assert cache.load_count == 2
        assert registry.get_plugin_info("ping").instance.is_initialized

    @pytest.mark.asyncio
    async def test_reload_picks_up_manifest(self, plugins_dir, cache):
        registry = PluginRegistry(module_cache=cache)
        await registry.load(make_plugin(plugins_dir, "ping"))
        reloader = HotReloader(registry, plugins_dir, debounce=0.01, cooldown=0)

        make_plugin(plugins_dir, "ping", version="1.1.0")
        reloader.notify("ping")
        await settle(reloader)

        assert registry.get_plugin_info("ping").manifest.version == "1.1.0"

    @pytest.mark.asyncio
    async def test_cooldown_defers_second_reload(self, plugins_dir, cache):
        registry = PluginRegistry(module_cache=cache)
        await registry.load(make_plugin(plugins_dir, "ping"))
        reloader = HotReloader(registry, plugins_dir, debounce=0.01, cooldown=0.2)
        loop = asyncio.get_running_loop()

        reloader.notify("ping")
        await settle(reloader)
        first = loop.time()

        reloader.notify("ping")
        await settle(reloader)

        assert cache.load_count == 3
        assert loop.time() - first >= 0.15

    @pytest.mark.asyncio
    async def test_new_plugin_loaded_with_config(self, plugins_dir, cache):
        registry = PluginRegistry(module_cache=cache)
        reloader = HotReloader(
            registry,
            plugins_dir,
            debounce=0.01,
            cooldown=0,
            options={"client": "bot"},
            plugin_options={"fresh": {"reply": "hi"}},
        )

        make_plugin(plugins_dir, "fresh")
        reloader.notify("fresh")
        await settle(reloader)

        instance = registry.get_plugin_info("fresh").instance
        assert instance.is_initialized
        assert instance.context.client == "bot"
        assert instance.context.config == {"reply": "hi"}

    @pytest.mark.asyncio
    async def test_removed_directory_unloads(self, plugins_dir, cache):
        registry = PluginRegistry(module_cache=cache)
        plugin_dir = make_plugin(plugins_dir, "ping")
        await registry.load(plugin_dir)
        reloader = HotReloader(registry, plugins_dir, debounce=0.01, cooldown=0)

        shutil.rmtree(plugin_dir)
        reloader.notify("ping")
        await settle(reloader)

        assert not registry.is_plugin_loaded("ping")
        assert cache.keys() == []

    @pytest.mark.asyncio
    async def test_failed_reload_is_logged(self, plugins_dir, cache, caplog):
        registry = PluginRegistry(module_cache=cache)
        plugin_dir = make_plugin(plugins_dir, "ping")
        await registry.load(plugin_dir)
        reloader = HotReloader(registry, plugins_dir, debounce=0.01, cooldown=0)

        (plugin_dir / "plugin.json").write_text("{ broken")
        reloader.notify("ping")
        await settle(reloader)

        assert not registry.is_plugin_loaded("ping")
        assert "Hot reload of ping failed" in caplog.text

    @pytest.mark.asyncio
    async def test_directory_without_manifest_ignored(self, plugins_dir, cache):
        registry = PluginRegistry(module_cache=cache)
        reloader = HotReloader(registry, plugins_dir, debounce=0.01, cooldown=0)

        (plugins_dir / "scratch").mkdir()
        reloader.notify("scratch")
        await settle(reloader)

        assert len(registry) == 0


class TestForcedReload:
    """Test force_reload(), reload_all(), disabled plugins and get_stats()."""

    @pytest.mark.asyncio
    async def test_force_reload_skips_debounce_and_cooldown(self, plugins_dir, cache):
        registry = PluginRegistry(module_cache=cache)
        await registry.load(make_plugin(plugins_dir, "ping"))
        reloader = HotReloader(registry, plugins_dir, debounce=10, cooldown=10)

        reloader.notify("ping")
        await asyncio.sleep(0.01)
        assert await reloader.force_reload("ping")
        assert await reloader.force_reload("ping")

        assert cache.load_count == 3
        assert reloader.get_stats().pending == []
        assert registry.get_plugin_info("ping").instance.is_initialized

    @pytest.mark.asyncio
    async def test_reload_all(self, plugins_dir, cache):
        registry = PluginRegistry(module_cache=cache)
        await registry.load(make_plugin(plugins_dir, "ping"))
        make_plugin(plugins_dir, "fresh")
        (plugins_dir / "scratch").mkdir()
        (plugins_dir / "_private").mkdir()
        reloader = HotReloader(registry, plugins_dir, cooldown=10)

        assert await reloader.reload_all() == ["fresh", "ping"]

        assert sorted(registry.loaded_names()) == ["fresh", "ping"]
        assert cache.load_count == 3

    @pytest.mark.asyncio
    async def test_reload_all_without_directory(self, tmp_path):
        reloader = HotReloader(
            PluginRegistry(module_cache=MemoryModuleCache()), tmp_path / "missing"
        )

        assert await reloader.reload_all() == []

    @pytest.mark.asyncio
    async def test_disabled_plugins_left_alone(self, plugins_dir, cache):
        registry = PluginRegistry(module_cache=cache)
        await registry.load(make_plugin(plugins_dir, "ping"))
        disabled = {"fresh"}
        reloader = HotReloader(registry, plugins_dir, debounce=0.01, cooldown=0, disabled=disabled)

        make_plugin(plugins_dir, "fresh")
        reloader.notify("fresh")
        await settle(reloader)
        assert not registry.is_plugin_loaded("fresh")

        # The set is shared, so later changes apply too
        disabled.add("ping")
        assert not await reloader.force_reload("ping")
        assert cache.load_count == 1

        disabled.clear()
        assert await reloader.force_reload("fresh")
        assert registry.is_plugin_loaded("fresh")

    @pytest.mark.asyncio
    async def test_stats(self, plugins_dir, cache):
        registry = PluginRegistry(module_cache=cache)
        plugin_dir = make_plugin(plugins_dir, "ping")
        await registry.load(plugin_dir)
        reloader = HotReloader(registry, plugins_dir, debounce=10, cooldown=0)

        stats = reloader.get_stats()
        assert not stats.is_running
        assert (stats.reloads, stats.failures, stats.history) == (0, 0, {})

        await reloader.force_reload("ping")
        (plugin_dir / "plugin.json").write_text("{ broken")
        await reloader.force_reload("ping")
        reloader.notify("ping")
        await asyncio.sleep(0.01)

        stats = reloader.get_stats()
        assert (stats.reloads, stats.failures) == (1, 1)
        assert list(stats.history) == ["ping"]
        assert stats.history["ping"].tzinfo is not None
        assert stats.pending == ["ping"]
        assert stats.in_progress == []

        reloader.stop()


class TestObserver:
    """Test observer lifecycle."""

    @pytest.mark.asyncio
    async def test_start_stop(self, plugins_dir):
        reloader = HotReloader(PluginRegistry(module_cache=MemoryModuleCache()), plugins_dir)

        reloader.start()
        assert reloader.is_running

        reloader.stop()

        assert not reloader.is_running
