from __future__ import annotations

import json
import re
from typing import Any, Dict, Optional

from jsonschema import Draft7Validator

from .shared.errors import ProtocolError

DISCOVER = "discover"
CALL = "call"
AUTH = "auth"
HEARTBEAT = "heartbeat"

COMMANDS = (DISCOVER, CALL, AUTH, HEARTBEAT)

_REQUEST_SCHEMA = {
    "type": "object",
    "properties": {"command": {"type": "string"}},
    "required": ["command"],
}

_COMMAND_SCHEMAS: Dict[str, Dict[str, Any]] = {
    CALL: {
        "type": "object",
        "properties": {
            "tool": {"type": "string", "minLength": 1},
            "arguments": {"type": ["object", "string", "null"]},
        },
        "required": ["tool"],
    },
    AUTH: {
        "type": "object",
        "properties": {"token": {"type": ["string", "null"]}},
    },
}

_REQUEST_VALIDATOR = Draft7Validator(_REQUEST_SCHEMA)
_COMMAND_VALIDATORS = {name: Draft7Validator(schema) for name, schema in _COMMAND_SCHEMAS.items()}

_PAIR_SEPARATORS = re.compile(r"[,\n]")


def normalize_command(command: str) -> str:
    """Map ``__discover__`` style command names onto their bare form."""
    if len(command) > 4 and command.startswith("__") and command.endswith("__"):
        return command[2:-2]
    return command


def _validate(validator: Draft7Validator, message: Dict[str, Any]) -> None:
    errors = sorted(validator.iter_errors(message), key=lambda e: list(e.path))
    if errors:
        first = errors[0]
        path = ".".join(str(p) for p in first.path) or "<root>"
        raise ProtocolError(f"Invalid request: {path}: {first.message}")


def parse_request(text: str) -> Dict[str, Any]:
    """Parse one wire message and return it with ``command`` normalized.

    Unknown commands are not rejected here; the handler answers them.
    """
    try:
        message = json.loads(text)
    except (json.JSONDecodeError, TypeError) as exc:
        raise ProtocolError("Invalid JSON") from exc
    if not isinstance(message, dict):
        raise ProtocolError("Message must be a JSON object")

    _validate(_REQUEST_VALIDATOR, message)
    message["command"] = normalize_command(message["command"])
    validator = _COMMAND_VALIDATORS.get(message["command"])
    if validator is not None:
        _validate(validator, message)
    return message


def parse_key_value_pairs(raw: str) -> Dict[str, str]:
    """Parse ``"name=Foo, x=1.5"`` (or newline separated) into string pairs."""
    result: Dict[str, str] = {}
    for pair in _PAIR_SEPARATORS.split(raw):
        key, sep, value = pair.partition("=")
        key = key.strip()
        if not sep or not key:
            continue
        result[key] = value.strip()
    return result


def _parse_argument_string(raw: str) -> Dict[str, Any]:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        parsed = None
    if isinstance(parsed, dict):
        return parsed
    return parse_key_value_pairs(raw)


def unwrap_arguments(raw: Any) -> Dict[str, Any]:
    """Normalize the ``arguments`` field of a ``call`` request.

    Some MCP proxies wrap every parameter into a single ``kwargs`` key, either
    as an object, a JSON string, or a ``key=value`` list.
    """
    if raw is None:
        return {}
    if isinstance(raw, str):
        return _parse_argument_string(raw)
    if not isinstance(raw, dict):
        return {}

    if len(raw) == 1 and "kwargs" in raw:
        wrapped = raw["kwargs"]
        if isinstance(wrapped, dict):
            return dict(wrapped)
        if isinstance(wrapped, str):
            return _parse_argument_string(wrapped)
        if wrapped is None:
            return {}
    return dict(raw)


def serialize(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"), default=str)


def error_payload(message: str) -> Dict[str, Any]:
    return {"error": message}


def embed_tool_output(text: Optional[str]) -> Any:
    """Return the tool's JSON output as a value, or the raw text when it is not JSON."""
    if text is None:
        return None
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return text


def is_error_payload(value: Any) -> bool:
    return isinstance(value, dict) and "error" in value
