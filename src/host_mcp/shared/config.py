from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_PORT = 18711
DEFAULT_TOOL_MODULES = ("host_mcp.tools_packs",)


@dataclass(frozen=True)
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = DEFAULT_PORT
    max_port_retries: int = 10
    path: str = "/mcp"
    call_timeout: float = 30.0
    stall_threshold: float = 8.0
    use_auth_token: bool = True
    require_auth: bool = False
    token_file: str = ".mcp_auth_token"


@dataclass(frozen=True)
class DiscoveryConfig:
    directory: str = "~/.host-mcp"
    heartbeat_interval: float = 5.0
    stale_after: float = 15.0
    project_path: str | None = None

    def resolved_directory(self) -> Path:
        return Path(self.directory).expanduser()

    def resolved_project_path(self) -> Path:
        return Path(self.project_path or os.getcwd()).resolve()


@dataclass(frozen=True)
class ToolsConfig:
    modules: tuple[str, ...] = DEFAULT_TOOL_MODULES
    entry_point_group: str = "host_mcp.tools"
    use_entry_points: bool = True


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    file: str | None = None
    debug: bool = False


@dataclass(frozen=True)
class HostConfig:
    tick_interval: float = 0.02


@dataclass(frozen=True)
class AppConfig:
    server: ServerConfig = field(default_factory=ServerConfig)
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    tools: ToolsConfig = field(default_factory=ToolsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    host: HostConfig = field(default_factory=HostConfig)


def _load_json(path: Path) -> dict[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def load_config(path: str | os.PathLike[str] | None = None) -> AppConfig:
    config_path = path or os.getenv("HOST_MCP_CONFIG")
    if not config_path:
        return AppConfig()

    path = Path(config_path)
    if not path.exists():
        return AppConfig()

    raw = _load_json(path)
    server_raw = raw.get("server", {})
    discovery_raw = raw.get("discovery", {})
    tools_raw = raw.get("tools", {})
    logging_raw = raw.get("logging", {})
    host_raw = raw.get("host", {})
    return AppConfig(
        server=ServerConfig(
            host=str(server_raw.get("host", "127.0.0.1")),
            port=int(server_raw.get("port", DEFAULT_PORT)),
            max_port_retries=int(server_raw.get("max_port_retries", 10)),
            path=str(server_raw.get("path", "/mcp")),
            call_timeout=float(server_raw.get("call_timeout", 30.0)),
            stall_threshold=float(server_raw.get("stall_threshold", 8.0)),
            use_auth_token=bool(server_raw.get("use_auth_token", True)),
            require_auth=bool(server_raw.get("require_auth", False)),
            token_file=str(server_raw.get("token_file", ".mcp_auth_token")),
        ),
        discovery=DiscoveryConfig(
            directory=str(discovery_raw.get("directory", "~/.host-mcp")),
            heartbeat_interval=float(discovery_raw.get("heartbeat_interval", 5.0)),
            stale_after=float(discovery_raw.get("stale_after", 15.0)),
            project_path=discovery_raw.get("project_path"),
        ),
        tools=ToolsConfig(
            modules=tuple(tools_raw.get("modules", DEFAULT_TOOL_MODULES)),
            entry_point_group=str(tools_raw.get("entry_point_group", "host_mcp.tools")),
            use_entry_points=bool(tools_raw.get("use_entry_points", True)),
        ),
        logging=LoggingConfig(
            level=str(logging_raw.get("level", "INFO")),
            file=logging_raw.get("file"),
            debug=bool(logging_raw.get("debug", False)),
        ),
        host=HostConfig(
            tick_interval=float(host_raw.get("tick_interval", 0.02)),
        ),
    )
