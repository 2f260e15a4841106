"""Expose a host application's tools to MCP agents over a websocket."""

from .bridge import HostBridge
from .dispatcher import MainThreadDispatcher
from .server import ConnectionHandler
from .shared.errors import HostMcpError, ToolError
from .tools import McpParam, ToolRegistry, mcp_tool
from .tracker import CallActivityTracker, CallState

__version__ = "0.1.0"

__all__ = [
    "CallActivityTracker",
    "CallState",
    "ConnectionHandler",
    "HostBridge",
    "HostMcpError",
    "MainThreadDispatcher",
    "McpParam",
    "ToolError",
    "ToolRegistry",
    "mcp_tool",
]
