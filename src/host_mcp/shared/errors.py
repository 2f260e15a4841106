from __future__ import annotations

from typing import Any


class HostMcpError(Exception):
    code = "host_mcp_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict[str, Any]:
        return {"error": self.message}


class ProtocolError(HostMcpError):
    code = "protocol_error"


class AuthenticationRequired(HostMcpError):
    code = "authentication_required"


class ToolError(HostMcpError):
    code = "tool_error"


class ToolNotFound(ToolError):
    code = "tool_not_found"

    def __init__(self, name: str) -> None:
        super().__init__(f"Tool '{name}' not found")
        self.name = name


class MissingArgument(ToolError):
    code = "missing_argument"

    def __init__(self, argument: str) -> None:
        super().__init__(f"Missing required argument '{argument}'")
        self.argument = argument


class ArgumentTypeMismatch(ToolError):
    code = "argument_type_mismatch"

    def __init__(self, argument: str, reason: str) -> None:
        super().__init__(f"Invalid argument '{argument}': {reason}")
        self.argument = argument


class InvocationFailure(ToolError):
    code = "invocation_failure"

    def __init__(self, name: str, cause: BaseException) -> None:
        super().__init__(f"Tool execution failed: {cause}")
        self.name = name
        self.cause = cause


class DispatchError(HostMcpError):
    code = "dispatch_error"


class HostReloading(DispatchError):
    code = "host_reloading"

    def __init__(self) -> None:
        super().__init__("Host is reloading. Try again in a few seconds.")


class HostStalled(DispatchError):
    code = "host_stalled"

    def __init__(self, inactive_seconds: float) -> None:
        super().__init__(
            f"Host is busy. Main thread inactive for {inactive_seconds:.0f}s. Try again shortly."
        )
        self.inactive_seconds = inactive_seconds


class DispatchTimeout(DispatchError):
    code = "dispatch_timeout"

    def __init__(self, label: str, waited: float) -> None:
        super().__init__(
            f"Main thread dispatch timeout for {label} after {waited:.1f}s. Host may be unresponsive."
        )
        self.label = label
        self.waited = waited


class DispatcherUnavailable(DispatchError):
    code = "dispatcher_unavailable"

    def __init__(self) -> None:
        super().__init__("Main thread dispatcher not ready (reload in progress?)")


class PortUnavailable(HostMcpError):
    code = "port_unavailable"

    def __init__(self, base_port: int, last_port: int, reason: str) -> None:
        super().__init__(f"Failed to start server on ports {base_port}-{last_port}: {reason}")
        self.base_port = base_port
        self.last_port = last_port


class ToolExecutionError(HostMcpError):
    code = "tool_execution_error"
