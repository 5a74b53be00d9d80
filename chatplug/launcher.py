"""
chatplug launcher - host process for command plugins.

Usage:
    chatplug run [--config FILE] [--console]     Load plugins and serve until stopped
    chatplug check [--config FILE] [DIR]         Validate plugin directories
    chatplug list [--config FILE] [DIR]          List discovered plugins
    chatplug init-config [--config FILE] [--force]
"""

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Any

from chatplug import __version__
from chatplug.config import DEFAULT_CONFIG_FILE, ConfigError, Settings, load_settings, write_default_config
from chatplug.plugin.base import CommandContext
from chatplug.plugin.discovery import PluginCatalog, discover_plugins, resolve_load_order
from chatplug.plugin.dispatch import CommandDispatcher
from chatplug.plugin.errors import PluginError
from chatplug.plugin.registry import PluginRegistry
from chatplug.plugin.watcher import HotReloader

logger = logging.getLogger(__name__)


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser with one sub-command per operation."""
    parser = argparse.ArgumentParser(
        prog="chatplug",
        description="chatplug - chat-bot launcher with hot-reloadable plugins",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_FILE,
        help=f"Host config file (default: {DEFAULT_CONFIG_FILE})",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", help="Load plugins and serve until stopped")
    run.add_argument(
        "--console",
        action="store_true",
        help="Read commands from stdin instead of a chat transport",
    )

    check = commands.add_parser("check", help="Validate plugin directories")
    check.add_argument("plugins_dir", nargs="?", type=Path, help="Override plugins_dir")

    listing = commands.add_parser("list", help="List discovered plugins")
    listing.add_argument("plugins_dir", nargs="?", type=Path, help="Override plugins_dir")

    init = commands.add_parser("init-config", help="Write a default config file")
    init.add_argument("--force", action="store_true", help="Overwrite an existing file")

    return parser


def setup_logging(level: str, verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )


def _read_stdin(loop: asyncio.AbstractEventLoop, queue: asyncio.Queue) -> None:
    for line in sys.stdin:
        loop.call_soon_threadsafe(queue.put_nowait, line)
    loop.call_soon_threadsafe(queue.put_nowait, None)


async def _console_loop(dispatcher: CommandDispatcher, stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()

    # Daemon thread: a blocked stdin read must not hold up interpreter exit
    threading.Thread(target=_read_stdin, args=(loop, queue), daemon=True).start()

    async def reply(text: str) -> None:
        print(text, flush=True)

    while not stop_event.is_set():
        line = await queue.get()
        if line is None:
            stop_event.set()
            return

        parsed = dispatcher.parse(line.strip())
        if parsed is None:
            continue

        command, args = parsed
        try:
            result = await dispatcher.dispatch(
                command, CommandContext(command=command, args=args, message=line, reply=reply)
            )
        except PluginError as e:
            print(f"Error: {e}", file=sys.stderr, flush=True)
            continue
        except Exception as e:
            logger.error("Command %s failed: %s", command, e, exc_info=True)
            continue

        if isinstance(result, str):
            print(result, flush=True)


async def run_host(
    settings: Settings,
    stop_event: asyncio.Event,
    options: dict[str, Any] | None = None,
    console: bool = False,
) -> int:
    """
    Load plugins, optionally watch them, and tear everything down on stop.

    Args:
        settings: Host settings
        stop_event: Set to shut the host down
        options: Host options for plugins (``client``, ``event_bus``, ...)
        console: Dispatch commands read from stdin

    Returns:
        Exit code (1 if any plugin failed to shut down cleanly)
    """
    options = dict(options or {})
    registry = PluginRegistry(key_strategy=settings.key_strategy)
    dispatcher = CommandDispatcher(registry, prefix=settings.command_prefix)

    catalog = PluginCatalog(
        registry,
        settings.plugins_dir,
        options,
        settings.plugins,
        disabled=settings.disabled_plugins,
    )

    for outcome in await catalog.load_all():
        if not outcome.loaded and not outcome.disabled:
            logger.warning("Plugin %s not loaded: %s", outcome.name, outcome.error)

    stats = catalog.get_stats()
    logger.info(
        "%d of %d plugins loaded (%d disabled)", len(stats.loaded), stats.total, len(stats.disabled)
    )

    reloader = None
    if settings.hot_reload:
        reloader = HotReloader(
            registry,
            settings.plugins_dir,
            debounce=settings.reload_debounce,
            cooldown=settings.reload_cooldown,
            options=options,
            plugin_options=settings.plugins,
            disabled=catalog.disabled,
        )
        reloader.start()

    console_task = None
    if console:
        console_task = asyncio.create_task(_console_loop(dispatcher, stop_event))

    try:
        await stop_event.wait()
    finally:
        if console_task is not None:
            console_task.cancel()
        if reloader is not None:
            reloader.stop()
        failures = await registry.clear_all()

    for name, error in failures.items():
        logger.error("Plugin %s did not shut down cleanly: %s", name, error)

    return 1 if failures else 0


async def _run_async(settings: Settings, console: bool) -> int:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop_event.set)

    return await run_host(settings, stop_event, console=console)


def run_command(settings: Settings, args: argparse.Namespace) -> int:
    return asyncio.run(_run_async(settings, args.console))


def check_command(settings: Settings, args: argparse.Namespace) -> int:
    """Validate every plugin directory without loading any code."""
    plugins_dir = args.plugins_dir or settings.plugins_dir
    registry = PluginRegistry(key_strategy=settings.key_strategy)
    discovered = discover_plugins(plugins_dir, key_strategy=settings.key_strategy)

    if not discovered:
        print(f"No plugins found in {plugins_dir}")
        return 0

    errors = 0
    for plugin in discovered:
        error = plugin.error
        if error is None:
            try:
                registry.read_plugin(plugin.path)
            except PluginError as e:
                error = e

        if error is None:
            print(f"ok     {plugin.name} {plugin.manifest.version}")
        else:
            errors += 1
            print(f"error  {plugin.name}: {error}")

    try:
        order = resolve_load_order(discovered)
        print(f"Load order: {', '.join(order)}")
    except PluginError as e:
        errors += 1
        print(f"error  {e}")

    return 1 if errors else 0


def list_command(settings: Settings, args: argparse.Namespace) -> int:
    plugins_dir = args.plugins_dir or settings.plugins_dir
    for plugin in discover_plugins(plugins_dir, key_strategy=settings.key_strategy):
        if plugin.manifest is None:
            print(f"{plugin.name:<20} (invalid manifest)")
            continue
        commands = ", ".join(c.name for c in plugin.manifest.commands) or "-"
        status = " (disabled)" if plugin.name in settings.disabled_plugins else ""
        print(f"{plugin.name:<20} {plugin.manifest.version:<10} {commands}{status}")
    return 0


def init_config_command(args: argparse.Namespace) -> int:
    write_default_config(args.config, overwrite=args.force)
    print(f"Wrote {args.config}")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the chatplug CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    try:
        if args.command == "init-config":
            return init_config_command(args)

        settings = load_settings(args.config)
        setup_logging(settings.log_level, args.verbose)

        if args.command == "run":
            return run_command(settings, args)
        if args.command == "check":
            return check_command(settings, args)
        if args.command == "list":
            return list_command(settings, args)

        parser.print_help()
        return 1

    except (ConfigError, PluginError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
