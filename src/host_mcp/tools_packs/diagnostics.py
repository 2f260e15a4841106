from __future__ import annotations

import json
import os
from typing import Annotated

from ..host import current_host
from ..tools import McpParam, mcp_tool


class DiagnosticTools:
    @staticmethod
    @mcp_tool("Get host process information")
    def host_info() -> str:
        host = current_host()
        return json.dumps(
            {
                "pid": os.getpid(),
                "project_path": str(host.project_path),
                "tick_count": host.tick_count,
                "uptime": round(host.uptime, 3),
            }
        )

    @staticmethod
    @mcp_tool("Echo text back (connectivity check)")
    def echo(text: Annotated[str, McpParam("Text to echo")] = "") -> str:
        return json.dumps({"text": text})
