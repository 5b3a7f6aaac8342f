"""
Hot reload functionality for Cert Alarm.
"""

import asyncio
from pathlib import Path
from typing import Any, Coroutine, List, Optional, Set

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from cert_alarm.config import Config, load_config
from cert_alarm.logger import get_logger, log_hot_reload
from cert_alarm.resolver import CertificateResolver
from cert_alarm.scheduler import CertificateScheduler

# Settings baked into the resolver and its probes at construction time
RESOLVER_KEYS = {
    "workers",
    "probe_timeout",
    "dns_timeout",
    "tls_versions",
    "cdn_ipv4_prefixes",
    "cdn_ipv6_prefixes",
    "cdn_domain_suffixes",
    "static_overrides",
    "cdn_certificate",
    "certspotter_url",
    "crtsh_url",
}

# Secrets are reported as changed without their values
SENSITIVE_KEYS = {"smtp", "tls_key", "allowed_ips"}


def changed_keys(old: Config, new: Config) -> List[str]:
    """Top-level configuration keys whose values differ."""
    old_data = old.model_dump()
    new_data = new.model_dump()
    return sorted(key for key in new_data if old_data.get(key) != new_data[key])


class ConfigFileHandler(FileSystemEventHandler):
    """Handler for configuration file system events."""

    def __init__(self, hot_reload_manager: "HotReloadManager"):
        self.manager = hot_reload_manager
        self.logger = get_logger("hot_reload.config")

    def on_modified(self, event: FileSystemEvent) -> None:
        """Handle configuration file modification."""
        if event.is_directory:
            return

        file_path = Path(event.src_path)

        # Skip temporary files created by editors
        if file_path.name.startswith(".") or ".tmp" in file_path.name:
            return

        try:
            if (
                self.manager.config_path
                and file_path.exists()
                and file_path.samefile(self.manager.config_path)
            ):
                self.logger.info(f"Configuration file modified: {file_path}")
                self.manager._schedule_coro(self.manager._handle_config_change())
        except OSError:
            # File might be a temporary file that was quickly deleted
            pass

    # Editors that save by rename produce a move onto the config path
    def on_moved(self, event: FileSystemEvent) -> None:
        if event.is_directory or not self.manager.config_path:
            return
        if Path(getattr(event, "dest_path", "")).name == self.manager.config_path.name:
            self.logger.info(f"Configuration file replaced: {event.dest_path}")
            self.manager._schedule_coro(self.manager._handle_config_change())


class HotReloadManager:
    """
    Reload the configuration file on change and apply it to the scheduler.

    Changes are debounced; an invalid file is logged and the running
    configuration is kept.
    """

    DEBOUNCE_SECONDS = 2.0

    def __init__(
        self, config: Config, scheduler: CertificateScheduler, config_path: Optional[str] = None
    ):
        self.config = config
        self.scheduler = scheduler
        self.config_path = Path(config_path) if config_path else None
        self.logger = get_logger("hot_reload")

        self._observer = Observer()
        self._watching = False
        self._watched_paths: Set[str] = set()
        self._event_loop: Optional[asyncio.AbstractEventLoop] = None

        self._config_handler = ConfigFileHandler(self)
        self._config_change_task: Optional[asyncio.Task] = None

        self.logger.info("Hot reload manager initialized")

    def _schedule_coro(self, coro: Coroutine[Any, Any, Any]) -> None:
        """Schedule a coroutine from a thread safely."""
        if self._event_loop and not self._event_loop.is_closed():
            asyncio.run_coroutine_threadsafe(coro, self._event_loop)
        else:
            coro.close()
            self.logger.warning("Cannot schedule coroutine: event loop not available")

    async def start(self) -> None:
        """Start hot reload monitoring."""
        if not self.config.hot_reload:
            self.logger.info("Hot reload disabled in configuration")
            return

        if self._watching:
            self.logger.warning("Hot reload already started")
            return

        if not self.config_path or not self.config_path.exists():
            self.logger.info("No configuration file to watch, hot reload inactive")
            return

        self._event_loop = asyncio.get_running_loop()

        config_dir = self.config_path.parent
        self._observer.schedule(self._config_handler, str(config_dir), recursive=False)
        self._watched_paths.add(str(config_dir))
        self._observer.start()
        self._watching = True

        self.logger.info(f"Watching configuration file: {self.config_path}")

    async def stop(self) -> None:
        """Stop hot reload monitoring."""
        if not self._watching:
            return

        self._observer.stop()
        self._observer.join(timeout=5.0)

        if self._config_change_task:
            self._config_change_task.cancel()

        self._watching = False
        self._watched_paths.clear()
        self.logger.info("Hot reload stopped")

    async def _handle_config_change(self) -> None:
        """Restart the debounce timer for a configuration change."""
        if self._config_change_task and not self._config_change_task.done():
            self._config_change_task.cancel()

        self._config_change_task = asyncio.create_task(self._debounced_config_change())

    async def _debounced_config_change(self) -> None:
        """Debounced configuration change handler."""
        try:
            await asyncio.sleep(self.DEBOUNCE_SECONDS)
            self.reload()
        except asyncio.CancelledError:
            self.logger.debug("Configuration change handling cancelled")

    def reload(self) -> bool:
        """
        Load the configuration file and apply it.

        Returns:
            True if the new configuration was applied
        """
        self.logger.info("Reloading configuration due to file change")
        try:
            new_config = load_config(str(self.config_path) if self.config_path else None)
        except Exception as e:
            self.logger.error(f"Error reloading configuration, keeping current settings: {e}")
            return False

        changes = changed_keys(self.config, new_config)
        if not changes:
            self.logger.info("Configuration reloaded (no significant changes detected)")
            self.config = new_config
            return True

        described = []
        for key in changes:
            if key in SENSITIVE_KEYS:
                described.append(f"{key} (changed)")
            elif key == "domains":
                added = set(new_config.domains) - set(self.config.domains)
                removed = set(self.config.domains) - set(new_config.domains)
                described.append(f"domains (+{len(added)}/-{len(removed)})")
            else:
                described.append(key)

        resolver = None
        if RESOLVER_KEYS.intersection(changes):
            resolver = CertificateResolver.from_config(new_config)

        self.config = new_config
        self.scheduler.reload(new_config, resolver=resolver)
        self.logger.info(f"Configuration updated: {', '.join(described)}")

        log_hot_reload(self.logger, str(self.config_path), "config_reloaded")
        return True

    def get_status(self) -> dict:
        """Get hot reload status information."""
        return {
            "enabled": self.config.hot_reload,
            "watching": self._watching,
            "watched_paths": list(self._watched_paths),
            "config_path": str(self.config_path) if self.config_path else None,
            "active_config_task": (
                self._config_change_task is not None and not self._config_change_task.done()
            ),
        }
