"""Websocket connection handler for the host side of the bridge.

One listening socket per host instance, a thread per connection (the
``websockets.sync`` server model), and one response per request. Tool calls
are marshalled onto the host's main thread through the dispatcher.
"""

from __future__ import annotations

import enum
import threading
import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any, Callable, Dict, List, Optional

from websockets.exceptions import ConnectionClosed
from websockets.sync.server import Server, ServerConnection, serve

from . import protocol
from .dispatcher import MainThreadDispatcher
from .shared.config import ServerConfig
from .shared.errors import (
    AuthenticationRequired,
    DispatchTimeout,
    DispatcherUnavailable,
    HostMcpError,
    HostReloading,
    HostStalled,
    PortUnavailable,
    ProtocolError,
)
from .shared.logging import get_logger
from .tools import ToolRegistry
from .tracker import CallActivityTracker

logger = get_logger(__name__)

# how often a waiting connection thread re-checks reloading/stall state
WAIT_SLICE_SECONDS = 0.25

CLOSE_GOING_AWAY = 1001
CLOSE_NORMAL = 1000


class ServerState(enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    LISTENING = "listening"


@dataclass
class Connection:
    id: str
    remote_address: Optional[str] = None
    opened_at: float = field(default_factory=time.time)
    authenticated: bool = False
    websocket: Any = field(default=None, repr=False, compare=False)


def _format_address(address: Any) -> Optional[str]:
    if isinstance(address, (tuple, list)) and len(address) >= 2:
        return f"{address[0]}:{address[1]}"
    return str(address) if address else None


def _describe_close(exc: ConnectionClosed) -> str:
    frame = exc.rcvd or exc.sent
    if frame is None:
        return "error"
    return frame.reason or "normal"


class ConnectionHandler:
    def __init__(
        self,
        registry: ToolRegistry,
        dispatcher: Optional[MainThreadDispatcher],
        tracker: CallActivityTracker,
        config: Optional[ServerConfig] = None,
        *,
        reloading: Optional[threading.Event] = None,
    ) -> None:
        self.registry = registry
        self.dispatcher = dispatcher
        self.tracker = tracker
        self.config = config or ServerConfig()
        self.reloading = reloading or threading.Event()
        self.auth_token: Optional[str] = None
        self.state = ServerState.STOPPED
        self.port: Optional[int] = None
        self._server: Optional[Server] = None
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._connections: Dict[str, Connection] = {}
        self._connected = 0
        self._cached_schemas: Optional[str] = None

    # -------------------------
    # Properties
    # -------------------------

    @property
    def is_listening(self) -> bool:
        return self.state is ServerState.LISTENING

    @property
    def actual_port(self) -> Optional[int]:
        return self.port if self.is_listening else None

    @property
    def connected_clients(self) -> int:
        return self._connected

    @property
    def connections(self) -> List[Connection]:
        with self._lock:
            return list(self._connections.values())

    @property
    def url(self) -> Optional[str]:
        if not self.is_listening:
            return None
        return f"ws://{self.config.host}:{self.port}{self.config.path}"

    def set_auth_token(self, token: Optional[str]) -> None:
        self.auth_token = token

    def cache_tool_schemas(self) -> None:
        self._cached_schemas = self.registry.get_schemas_json()

    def clear_schema_cache(self) -> None:
        self._cached_schemas = None

    # -------------------------
    # Lifecycle
    # -------------------------

    def start(self) -> int:
        if self.state is not ServerState.STOPPED and self.port is not None:
            return self.port

        self.state = ServerState.STARTING
        base_port = self.config.port
        attempts = max(0, self.config.max_port_retries) + 1
        last_error: Optional[OSError] = None

        for attempt in range(attempts):
            port = base_port + attempt if base_port else 0
            try:
                server = serve(
                    self._handle_connection,
                    self.config.host,
                    port,
                    process_request=self._process_request,
                )
            except OSError as exc:
                last_error = exc
                logger.debug("WS: Port %d unavailable (%s)", port, exc)
                if not base_port:
                    break
                continue

            self._server = server
            self.port = server.socket.getsockname()[1]
            self._thread = threading.Thread(
                target=server.serve_forever, name=f"host-mcp-ws-{self.port}", daemon=True
            )
            self._thread.start()
            self.state = ServerState.LISTENING
            if base_port and self.port != base_port:
                logger.info("WS: Port %d in use, using port %d instead", base_port, self.port)
            logger.info("WS: Server listening on %s", self.url)
            return self.port

        self.state = ServerState.STOPPED
        last_port = base_port + attempts - 1 if base_port else 0
        error = PortUnavailable(base_port, last_port, str(last_error) if last_error else "unknown error")
        logger.error("WS: %s", error.message)
        raise error

    def stop(self, reason: Optional[str] = None) -> None:
        server = self._server
        if server is None:
            self.state = ServerState.STOPPED
            return

        code = CLOSE_GOING_AWAY if reason else CLOSE_NORMAL
        for connection in self.connections:
            try:
                connection.websocket.close(code=code, reason=reason or "")
            except Exception as exc:  # noqa: BLE001
                logger.debug("WS: Error closing %s: %s", connection.id, exc)

        try:
            server.shutdown()
        except Exception as exc:  # noqa: BLE001
            logger.debug("WS: Error during stop: %s", exc)
        if self._thread is not None:
            self._thread.join(timeout=5.0)

        self._server = None
        self._thread = None
        self.state = ServerState.STOPPED
        with self._lock:
            self._connections.clear()
            self._connected = 0
        logger.debug("WS: Server stopped%s", f" (reason: {reason})" if reason else "")

    # -------------------------
    # Connections
    # -------------------------

    def _process_request(self, connection: ServerConnection, request: Any) -> Any:
        path = request.path.split("?", 1)[0]
        if path != self.config.path:
            return connection.respond(HTTPStatus.NOT_FOUND, "Not found\n")
        return None

    def on_client_connected(self, session: Connection) -> int:
        with self._lock:
            self._connections[session.id] = session
            self._connected += 1
            count = self._connected
        logger.debug("WS: Client connected: %s (total: %d)", session.id, count)
        return count

    def on_client_disconnected(self, session_id: str, reason: str) -> int:
        with self._lock:
            self._connections.pop(session_id, None)
            self._connected = max(0, self._connected - 1)
            count = self._connected
        logger.debug("WS: Client disconnected: %s, reason=%s (total: %d)", session_id, reason, count)
        return count

    def _handle_connection(self, websocket: ServerConnection) -> None:
        session = Connection(
            id=str(websocket.id),
            remote_address=_format_address(websocket.remote_address),
            authenticated=not (self.config.require_auth and self.auth_token),
            websocket=websocket,
        )
        self.on_client_connected(session)
        reason = "normal"
        try:
            while True:
                try:
                    message = websocket.recv()
                except ConnectionClosed as exc:
                    reason = _describe_close(exc)
                    break
                if isinstance(message, bytes):
                    message = message.decode("utf-8", errors="replace")
                response = self.process_message(message, session)
                try:
                    websocket.send(response)
                except ConnectionClosed as exc:
                    reason = _describe_close(exc)
                    break
        except Exception as exc:  # noqa: BLE001
            reason = "error"
            logger.error("WS: Connection %s failed: %s", session.id, exc, exc_info=True)
        finally:
            self.on_client_disconnected(session.id, reason)

    # -------------------------
    # Commands
    # -------------------------

    def process_message(self, text: str, session: Optional[Connection] = None) -> str:
        try:
            request = protocol.parse_request(text)
        except ProtocolError as exc:
            logger.warning("WS: %s", exc.message)
            return protocol.serialize(exc.to_payload())

        command = request["command"]
        if command != protocol.HEARTBEAT:
            logger.debug("WS: Command: %s", command)

        try:
            if command == protocol.DISCOVER:
                self._require_auth(session)
                return self.handle_discover()
            if command == protocol.CALL:
                self._require_auth(session)
                arguments = protocol.unwrap_arguments(request.get("arguments"))
                return self.handle_call(request["tool"], arguments)
            if command == protocol.AUTH:
                return self.handle_auth(request.get("token"), session)
            if command == protocol.HEARTBEAT:
                return self.handle_heartbeat()
        except HostMcpError as exc:
            return protocol.serialize(exc.to_payload())
        except Exception as exc:  # noqa: BLE001
            logger.error("WS: Error processing message: %s", exc, exc_info=True)
            return protocol.serialize(protocol.error_payload(f"Processing failed: {exc}"))

        logger.warning("WS: Unknown command: %s", command)
        return protocol.serialize(protocol.error_payload("Unknown command"))

    def _require_auth(self, session: Optional[Connection]) -> None:
        if session is None or session.authenticated:
            return
        if self.config.require_auth and self.auth_token:
            raise AuthenticationRequired("authentication required")

    def handle_discover(self) -> str:
        cached = self._cached_schemas
        if cached:
            return cached

        def build() -> str:
            schemas = self.registry.get_schemas_json()
            self._cached_schemas = schemas
            return schemas

        return self._dispatch(build, "discover")

    def handle_call(self, tool: str, arguments: Dict[str, Any]) -> str:
        self.tracker.on_call_started(tool)
        success = False
        try:
            def run() -> str:
                logger.debug("WS: Executing on main thread: %s", tool)
                return self.registry.invoke(tool, arguments)

            output = protocol.embed_tool_output(self._dispatch(run, tool))
            success = not protocol.is_error_payload(output)
            return protocol.serialize({"result": output})
        finally:
            self.tracker.on_call_completed(success)
            logger.debug("WS: Tool %s done (success=%s)", tool, success)

    def handle_auth(self, token: Optional[str], session: Optional[Connection] = None) -> str:
        if not self.auth_token or token == self.auth_token:
            if session is not None:
                session.authenticated = True
            logger.debug("WS: Authentication successful")
            return protocol.serialize({"status": "ok"})
        logger.warning("WS: Authentication failed")
        return protocol.serialize(protocol.error_payload("invalid token"))

    def handle_heartbeat(self) -> str:
        return protocol.serialize({"status": "ok", "tools_count": self.registry.tool_count})

    # -------------------------
    # Dispatch
    # -------------------------

    def _dispatch(self, fn: Callable[[], str], label: str) -> str:
        if self.reloading.is_set():
            raise HostReloading()

        dispatcher = self.dispatcher
        if dispatcher is None:
            logger.debug("WS: Dispatcher not available for %s", label)
            raise DispatcherUnavailable()

        threshold = self.config.stall_threshold
        inactive = dispatcher.seconds_since_last_drain()
        if inactive > threshold:
            logger.debug("WS: Main thread stalled (%.1fs since last drain) for %s", inactive, label)
            raise HostStalled(inactive)

        future: Future = dispatcher.enqueue_with_result(fn)
        started = time.monotonic()
        deadline = started + self.config.call_timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            try:
                return future.result(timeout=min(WAIT_SLICE_SECONDS, remaining))
            except FutureTimeout:
                pass

            if self.reloading.is_set():
                future.cancel()
                raise HostReloading()
            if not future.running():
                inactive = dispatcher.seconds_since_last_drain()
                if inactive > threshold and future.cancel():
                    logger.debug("WS: Main thread stalled while %s was queued", label)
                    raise HostStalled(inactive)

        future.cancel()
        waited = time.monotonic() - started
        logger.warning("WS: Main thread dispatch timeout (%.1fs) for %s", waited, label)
        raise DispatchTimeout(label, waited)
