"""Lifecycle of the host-side bridge.

``HostBridge`` is the explicit server context: it owns the registry,
dispatcher, activity tracker, discovery file, connection handler and auth
token, and hooks itself into the host loop's update and reload events.
"""

from __future__ import annotations

import os
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Dict, Optional

from .discovery import InstanceDiscovery
from .dispatcher import MainThreadDispatcher
from .host import HostLoop
from .server import ConnectionHandler
from .shared.config import AppConfig
from .shared.logging import get_logger, set_debug
from .tools import ToolRegistry
from .tracker import ActivityMonitor, CallActivityTracker

logger = get_logger(__name__)


def generate_token() -> str:
    return str(uuid.uuid4())


def save_token(token: str, path: Path) -> bool:
    try:
        path.write_text(token, encoding="utf-8")
    except OSError as exc:
        logger.warning("Bridge: Could not save auth token to %s: %s", path, exc)
        return False
    try:
        os.chmod(path, 0o600)
    except OSError:
        pass
    return True


class HostBridge:
    def __init__(self, config: Optional[AppConfig] = None, host: Optional[HostLoop] = None) -> None:
        self.config = config or AppConfig()
        self.host = host or HostLoop(
            project_path=self.config.discovery.project_path,
            tick_interval=self.config.host.tick_interval,
        )
        self.reloading = threading.Event()
        self.dispatcher: Optional[MainThreadDispatcher] = None
        self.registry: Optional[ToolRegistry] = None
        self.tracker = CallActivityTracker()
        self.monitor = ActivityMonitor(self.tracker)
        self.discovery = InstanceDiscovery(self.config.discovery, project_path=self.host.project_path)
        self.handler: Optional[ConnectionHandler] = None
        self.auth_token: Optional[str] = None
        self.is_running = False
        self._debug = self.config.logging.debug
        self._last_heartbeat = 0.0
        self._listeners_installed = False

    # -------------------------
    # Properties
    # -------------------------

    @property
    def port(self) -> Optional[int]:
        return self.handler.actual_port if self.handler is not None else None

    @property
    def tool_count(self) -> int:
        return self.registry.tool_count if self.registry is not None else 0

    @property
    def connected_clients(self) -> int:
        return self.handler.connected_clients if self.handler is not None else 0

    @property
    def token_path(self) -> Path:
        return self.host.project_path / self.config.server.token_file

    @property
    def debug_mode(self) -> bool:
        return self._debug

    @debug_mode.setter
    def debug_mode(self, enabled: bool) -> None:
        self._debug = enabled
        set_debug(enabled)
        logger.info("Bridge: Debug mode: %s", "ON" if enabled else "OFF")

    # -------------------------
    # Lifecycle
    # -------------------------

    def start(self) -> int:
        if self.is_running and self.handler is not None and self.handler.port is not None:
            logger.debug("Bridge: start skipped - already running")
            return self.handler.port

        self.reloading.clear()
        self.discovery.initialize()
        dispatcher = self._ensure_dispatcher()
        self.host.register_update(self.update)
        self._install_listeners()

        try:
            port = self._start_handler(dispatcher)
        except Exception:
            logger.error("Bridge: Server failed to start - detaching from host")
            self.host.unregister_update(self.update)
            self._remove_listeners()
            self._discard_token()
            raise

        self.discovery.write_status(port)
        self._last_heartbeat = time.monotonic()
        self.is_running = True
        logger.info(
            "Bridge: Server started on port %d with %d tools (hash: %s)",
            port,
            self.tool_count,
            self.discovery.instance_hash,
        )
        return port

    def _start_handler(self, dispatcher: MainThreadDispatcher) -> int:
        tools = self.config.tools
        self.registry = ToolRegistry(
            tools.modules,
            entry_point_group=tools.entry_point_group if tools.use_entry_points else None,
        )
        self.registry.discover()

        self.auth_token = None
        if self.config.server.use_auth_token:
            self.auth_token = generate_token()
            save_token(self.auth_token, self.token_path)

        handler = ConnectionHandler(
            self.registry,
            dispatcher,
            self.tracker,
            self.config.server,
            reloading=self.reloading,
        )
        handler.set_auth_token(self.auth_token)
        handler.cache_tool_schemas()
        port = handler.start()
        self.handler = handler
        return port

    def _discard_token(self) -> None:
        if self.auth_token is None:
            return
        self.auth_token = None
        try:
            self.token_path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Bridge: Could not remove auth token %s: %s", self.token_path, exc)

    def stop(self, reason: Optional[str] = None) -> None:
        if not self.is_running:
            return
        if self.handler is not None:
            self.handler.stop(reason)
        self.handler = None
        self.is_running = False
        self.discovery.cleanup()
        self.host.unregister_update(self.update)
        self._remove_listeners()
        logger.info("Bridge: Server stopped")

    def before_reload(self) -> None:
        """Close clients with ``reload`` and flag the discovery file before internals are torn down."""
        logger.debug("Bridge: Reload imminent - stopping server cleanly")
        self.reloading.set()
        port = self.port or self.config.server.port
        self.discovery.mark_reloading(port)
        if self.handler is not None:
            self.handler.stop("reload")
            self.handler = None
        self.is_running = False
        if self.dispatcher is not None:
            self.dispatcher.clear()

    def after_reload(self) -> None:
        logger.debug("Bridge: Reload finished - restarting server")
        self.start()

    def restart_client(self) -> int:
        """Tell connected clients to exit, then come back up on a fresh token."""
        self.stop("shutdown")
        return self.start()

    def refresh_tools(self) -> int:
        if self.registry is None:
            return 0
        self.registry.refresh()
        if self.handler is not None:
            self.handler.cache_tool_schemas()
        logger.info("Bridge: Refreshed tools (%d registered)", self.registry.tool_count)
        return self.registry.tool_count

    # -------------------------
    # Main loop
    # -------------------------

    def update(self) -> None:
        dispatcher = self.dispatcher
        if dispatcher is not None:
            if not dispatcher.is_main_thread():
                dispatcher.bind_current_thread()
            dispatcher.drain()

        now = time.monotonic()
        handler = self.handler
        if (
            self.is_running
            and handler is not None
            and handler.port is not None
            and now - self._last_heartbeat >= self.config.discovery.heartbeat_interval
        ):
            self._last_heartbeat = now
            self.discovery.heartbeat(handler.port)

        self.monitor.poll(now)

    def status(self) -> Dict[str, Any]:
        handler = self.handler
        return {
            "running": self.is_running,
            "reloading": self.reloading.is_set(),
            "port": self.port,
            "url": handler.url if handler is not None else None,
            "connected_clients": self.connected_clients,
            "tool_count": self.tool_count,
            "instance_hash": self.discovery.instance_hash,
            "auth": self.auth_token is not None,
            "activity": self.monitor.label,
            "debug": self._debug,
        }

    # -------------------------
    # Internals
    # -------------------------

    def _ensure_dispatcher(self) -> MainThreadDispatcher:
        if self.dispatcher is None:
            self.dispatcher = MainThreadDispatcher()
        return self.dispatcher

    def _install_listeners(self) -> None:
        if self._listeners_installed:
            return
        self.host.before_reload.append(self.before_reload)
        self.host.after_reload.append(self.after_reload)
        self.host.quitting.append(self.stop)
        self._listeners_installed = True

    def _remove_listeners(self) -> None:
        if not self._listeners_installed:
            return
        for listeners, callback in (
            (self.host.before_reload, self.before_reload),
            (self.host.after_reload, self.after_reload),
            (self.host.quitting, self.stop),
        ):
            if callback in listeners:
                listeners.remove(callback)
        self._listeners_installed = False
