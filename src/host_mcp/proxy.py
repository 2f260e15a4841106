"""Companion MCP server speaking stdio to the agent and websocket to the host."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from .discovery import InstanceStatus, find_instance
from .shared.config import AppConfig
from .shared.errors import ToolExecutionError
from .shared.logging import get_logger

logger = get_logger(__name__)

RELOAD_WAIT_SECONDS = 30.0
RELOAD_POLL_SECONDS = 0.5


def _close_reason(exc: ConnectionClosed) -> str:
    frame = exc.rcvd or exc.sent
    if frame is None:
        return "error"
    return frame.reason or "normal"


class HostClient:
    def __init__(
        self,
        config: Optional[AppConfig] = None,
        *,
        url: Optional[str] = None,
        token: Optional[str] = None,
    ) -> None:
        self.config = config or AppConfig()
        self._url = url
        self._token = token
        self._status: Optional[InstanceStatus] = None
        self._ws: Optional[ClientConnection] = None
        self._lock = asyncio.Lock()
        self.shutdown_requested = False

    @property
    def connected(self) -> bool:
        return self._ws is not None

    def _find(self) -> Optional[InstanceStatus]:
        discovery = self.config.discovery
        return find_instance(
            discovery.resolved_directory(),
            discovery.project_path,
            stale_after=discovery.stale_after,
        )

    def locate(self) -> str:
        if self._url:
            return self._url
        status = self._find()
        if status is None:
            raise ToolExecutionError(
                f"No running host instance found in {self.config.discovery.resolved_directory()}"
            )
        self._status = status
        return f"ws://127.0.0.1:{status.ws_port}{self.config.server.path}"

    def read_token(self) -> Optional[str]:
        if self._token is not None:
            return self._token
        if self._status is not None:
            project = Path(self._status.project_path)
        else:
            project = self.config.discovery.resolved_project_path()
        try:
            return (project / self.config.server.token_file).read_text(encoding="utf-8").strip() or None
        except OSError:
            return None

    async def connect(self) -> None:
        url = self.locate()
        logger.debug("Proxy: connecting to %s", url)
        try:
            self._ws = await connect(url, max_size=None)
        except (OSError, InvalidHandshake) as exc:
            raise ToolExecutionError(f"Host unreachable at {url}: {exc}") from exc

        token = self.read_token()
        if token:
            reply = await self._roundtrip({"command": "auth", "token": token})
            if "error" in reply:
                await self.close()
                raise ToolExecutionError(f"Authentication failed: {reply['error']}")

    async def close(self) -> None:
        ws = self._ws
        self._ws = None
        if ws is not None:
            await ws.close()

    async def _roundtrip(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        assert self._ws is not None
        await self._ws.send(json.dumps(payload))
        raw = await self._ws.recv()
        reply = json.loads(raw)
        if not isinstance(reply, dict):
            raise ToolExecutionError("Host sent a non-object reply")
        return reply

    async def _wait_for_reload(self) -> None:
        if self._url:
            await asyncio.sleep(RELOAD_POLL_SECONDS)
            return
        loop = asyncio.get_running_loop()
        deadline = loop.time() + RELOAD_WAIT_SECONDS
        while loop.time() < deadline:
            status = self._find()
            if status is not None and not status.reloading:
                return
            await asyncio.sleep(RELOAD_POLL_SECONDS)
        raise ToolExecutionError("Timed out waiting for the host to finish reloading")

    async def request(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        async with self._lock:
            if self._ws is None:
                await self.connect()
            try:
                return await self._roundtrip(payload)
            except ConnectionClosed as exc:
                self._ws = None
                reason = _close_reason(exc)
                if reason == "shutdown":
                    self.shutdown_requested = True
                    raise ToolExecutionError("Host asked the proxy to shut down") from exc
                if reason != "reload":
                    raise ToolExecutionError(f"Connection to host closed: {reason}") from exc
                logger.info("Proxy: host is reloading, waiting to reconnect")

            await self._wait_for_reload()
            await self.connect()
            return await self._roundtrip(payload)

    async def discover(self) -> Dict[str, Any]:
        reply = await self.request({"command": "discover"})
        if "error" in reply:
            raise ToolExecutionError(reply["error"])
        return reply

    async def call(self, tool: str, arguments: Optional[Dict[str, Any]] = None) -> Any:
        reply = await self.request({"command": "call", "tool": tool, "arguments": arguments or {}})
        if "error" in reply:
            raise ToolExecutionError(reply["error"])
        result = reply.get("result")
        if isinstance(result, dict) and "error" in result:
            raise ToolExecutionError(str(result["error"]))
        return result

    async def heartbeat(self) -> Dict[str, Any]:
        return await self.request({"command": "heartbeat"})


async def list_host_tools(client: HostClient) -> List[Tool]:
    payload = await client.discover()
    return [
        Tool(
            name=entry["name"],
            description=entry.get("description", ""),
            inputSchema=entry.get("inputSchema") or {"type": "object", "properties": {}},
        )
        for entry in payload.get("tools", [])
    ]


async def call_host_tool(
    client: HostClient, name: str, arguments: Optional[Dict[str, Any]]
) -> List[TextContent]:
    result = await client.call(name, arguments or {})
    text = result if isinstance(result, str) else json.dumps(result)
    return [TextContent(type="text", text=text)]


def build_server(client: HostClient, name: str = "host_mcp") -> Server:
    app = Server(name)

    @app.list_tools()
    async def list_tools() -> List[Tool]:
        return await list_host_tools(client)

    @app.call_tool()
    async def call_tool(name: str, arguments: Optional[Dict[str, Any]]) -> List[TextContent]:
        return await call_host_tool(client, name, arguments)

    return app


async def run_proxy(config: Optional[AppConfig] = None) -> None:
    config = config or AppConfig()
    client = HostClient(config)
    app = build_server(client)
    try:
        async with stdio_server() as (read_stream, write_stream):
            await app.run(read_stream, write_stream, app.create_initialization_options())
    finally:
        await client.close()
