"""Tool registry: discovery, schema caching and invocation of host tools.

A tool is a plain function (or a static method) marked with ``@mcp_tool``
that returns a JSON string. Discovery scans the configured modules and the
``host_mcp.tools`` entry-point group, builds one ``ToolDescriptor`` per
valid procedure and swaps the finished catalogue in by reference, so
connection threads can read it without locking.
"""

from __future__ import annotations

import importlib
import inspect
import json
import pkgutil
import re
import threading
import typing
from dataclasses import dataclass, field
from functools import cached_property
from importlib import metadata
from types import ModuleType
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple, Union

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError

from .schema import ParameterDescriptor, JsonDict, _strip_optional, generate_input_schema, semantic_type_for
from .shared.config import DEFAULT_TOOL_MODULES
from .shared.errors import ArgumentTypeMismatch, InvocationFailure, MissingArgument, ToolError, ToolNotFound
from .shared.logging import get_logger

SCHEMA_VERSION = "1.0.0"
MARKER_ATTR = "__mcp_tool__"

logger = get_logger(__name__)

_BOUNDARY = re.compile(r"(?<!^)(?<!_)(?=[A-Z])")
_TRUE_STRINGS = {"true", "1", "yes", "on"}
_FALSE_STRINGS = {"false", "0", "no", "off"}


@dataclass(frozen=True)
class McpParam:
    """Parameter description, attached with ``Annotated[T, McpParam("...")]``."""

    description: str


@dataclass(frozen=True)
class ToolMarker:
    description: str
    name: Optional[str] = None


def mcp_tool(description: str, name: Optional[str] = None) -> Callable[[Callable[..., str]], Callable[..., str]]:
    """Mark a function as a tool.

    The tool name defaults to the function name in snake_case; ``name``
    overrides it verbatim.
    """
    if description is None:
        raise TypeError("description must not be None")

    def decorator(fn: Callable[..., str]) -> Callable[..., str]:
        setattr(fn, MARKER_ATTR, ToolMarker(description=description, name=name))
        return fn

    return decorator


def to_snake_case(identifier: str) -> str:
    if not identifier:
        return identifier
    return _BOUNDARY.sub("_", identifier).lower()


class InvalidToolSignature(ValueError):
    pass


@dataclass(frozen=True)
class ToolDescriptor:
    name: str
    description: str
    handle: Callable[..., Any] = field(repr=False)
    parameters: Tuple[ParameterDescriptor, ...]
    schema: JsonDict = field(compare=False, repr=False)
    source: str = ""

    @property
    def category(self) -> str:
        head, sep, _ = self.name.partition("_")
        return head if sep and head else "other"

    def to_schema_entry(self) -> JsonDict:
        return {"name": self.name, "description": self.description, "inputSchema": self.schema}


def _split_annotated(annotation: Any) -> Tuple[Any, str]:
    description = ""
    if typing.get_origin(annotation) is typing.Annotated:
        base, *extras = typing.get_args(annotation)
        for extra in extras:
            if isinstance(extra, McpParam):
                description = extra.description
        return base, description
    return annotation, description


def _resolve_hints(fn: Callable[..., Any]) -> Dict[str, Any]:
    try:
        return typing.get_type_hints(fn, include_extras=True)
    except Exception:  # noqa: BLE001
        # unresolvable forward references: fall back to the raw annotations
        return dict(getattr(fn, "__annotations__", {}) or {})


def describe_procedure(fn: Callable[..., Any], description: str = "", name: Optional[str] = None) -> ToolDescriptor:
    hints = _resolve_hints(fn)
    returns = hints.get("return", inspect.Signature.empty)
    if returns is not str and returns != "str":
        raise InvalidToolSignature("Return type must be str")

    parameters: List[ParameterDescriptor] = []
    for param in inspect.signature(fn).parameters.values():
        if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
            continue
        annotation = hints.get(param.name, param.annotation)
        base, param_description = _split_annotated(annotation)
        if base is inspect.Parameter.empty:
            base = None
        parameters.append(
            ParameterDescriptor(
                name=param.name,
                semantic_type=semantic_type_for(base),
                description=param_description,
                default=param.default,
                annotation=_strip_optional(base) if base is not None else None,
            )
        )

    schema = generate_input_schema(parameters)
    try:
        Draft7Validator.check_schema(schema)
    except SchemaError as exc:
        raise InvalidToolSignature(f"Generated schema is invalid: {exc.message}") from exc

    tool_name = name or to_snake_case(fn.__name__)
    return ToolDescriptor(
        name=tool_name,
        description=description or "",
        handle=fn,
        parameters=tuple(parameters),
        schema=schema,
        source=f"{getattr(fn, '__module__', '?')}.{getattr(fn, '__qualname__', fn.__name__)}",
    )


def coerce_argument(value: Any, param: ParameterDescriptor) -> Any:
    if value is None:
        return None
    target = param.annotation

    if target is str:
        if isinstance(value, str):
            return value
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (dict, list)):
            return json.dumps(value)
        return str(value)

    if target is bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)) and value in (0, 1):
            return bool(value)
        if isinstance(value, str):
            text = value.strip().lower()
            if text in _TRUE_STRINGS:
                return True
            if text in _FALSE_STRINGS:
                return False
        raise ValueError(f"Cannot convert {value!r} to boolean")

    if target is int:
        if isinstance(value, bool):
            raise ValueError("Cannot convert boolean to integer")
        if isinstance(value, int):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
        if isinstance(value, str):
            text = value.strip()
            try:
                return int(text)
            except ValueError:
                try:
                    as_float = float(text)
                except ValueError:
                    as_float = None
                if as_float is not None and as_float.is_integer():
                    return int(as_float)
        raise ValueError(f"Cannot convert {value!r} to integer")

    if target is float:
        if isinstance(value, bool):
            raise ValueError("Cannot convert boolean to number")
        if isinstance(value, (int, float)):
            return float(value)
        if isinstance(value, str):
            try:
                return float(value.strip())
            except ValueError:
                pass
        raise ValueError(f"Cannot convert {value!r} to number")

    return value


def bind_arguments(descriptor: ToolDescriptor, arguments: Mapping[str, Any]) -> Tuple[List[Any], Dict[str, Any]]:
    signature = inspect.signature(descriptor.handle)
    positional: List[Any] = []
    keyword: Dict[str, Any] = {}
    for param in descriptor.parameters:
        if param.name in arguments:
            try:
                value = coerce_argument(arguments[param.name], param)
            except ValueError as exc:
                raise ArgumentTypeMismatch(param.name, str(exc)) from exc
        elif param.has_default:
            value = param.default
        else:
            raise MissingArgument(param.name)

        if signature.parameters[param.name].kind is inspect.Parameter.POSITIONAL_ONLY:
            positional.append(value)
        else:
            keyword[param.name] = value
    return positional, keyword


def render_result(result: Any) -> str:
    if result is None:
        return '{"result":null}'
    if isinstance(result, str):
        return result
    return json.dumps(result, default=str)


class _Catalog:
    """Immutable snapshot of the registered tools."""

    def __init__(self, tools: Dict[str, ToolDescriptor]) -> None:
        self.tools = tools

    @cached_property
    def schemas(self) -> JsonDict:
        return {
            "tools": [descriptor.to_schema_entry() for descriptor in self.tools.values()],
            "schema_version": SCHEMA_VERSION,
        }

    @cached_property
    def schemas_json(self) -> str:
        return json.dumps(self.schemas, separators=(",", ":"))


Candidate = Tuple[Callable[..., Any], ToolMarker, str]


def _iter_marked(module: ModuleType) -> Iterator[Candidate]:
    for attr_name, value in list(vars(module).items()):
        if attr_name.startswith("_"):
            continue
        if getattr(value, "__module__", None) != module.__name__:
            continue
        if inspect.isfunction(value):
            marker = getattr(value, MARKER_ATTR, None)
            if isinstance(marker, ToolMarker):
                yield value, marker, f"{module.__name__}.{value.__qualname__}"
        elif inspect.isclass(value):
            for member_name, member in vars(value).items():
                if member_name.startswith("_") or not isinstance(member, staticmethod):
                    continue
                fn = member.__func__
                marker = getattr(member, MARKER_ATTR, None) or getattr(fn, MARKER_ATTR, None)
                if isinstance(marker, ToolMarker):
                    yield fn, marker, f"{module.__name__}.{value.__qualname__}.{member_name}"


class ToolRegistry:
    def __init__(
        self,
        modules: Iterable[Union[str, ModuleType]] = DEFAULT_TOOL_MODULES,
        *,
        entry_point_group: Optional[str] = None,
    ) -> None:
        self._sources = list(modules)
        self._entry_point_group = entry_point_group
        self._catalog = _Catalog({})
        self._added: Dict[str, ToolDescriptor] = {}
        self._initialized = False
        self._lock = threading.Lock()
        self.warnings: List[str] = []

    @property
    def tool_count(self) -> int:
        return len(self._catalog.tools)

    @property
    def tool_names(self) -> List[str]:
        return list(self._catalog.tools)

    def __len__(self) -> int:
        return self.tool_count

    def __contains__(self, name: object) -> bool:
        return name in self._catalog.tools

    def get_tool(self, name: str) -> Optional[ToolDescriptor]:
        return self._catalog.tools.get(name)

    def all_tools(self) -> Dict[str, ToolDescriptor]:
        return dict(self._catalog.tools)

    # -------------------------
    # Discovery
    # -------------------------

    def discover(self) -> None:
        if self._initialized:
            return
        self._rebuild()

    def refresh(self) -> None:
        self._rebuild()

    def add(self, fn: Callable[..., Any], description: str = "", name: Optional[str] = None) -> ToolDescriptor:
        """Register one procedure explicitly, without scanning for it."""
        marker = getattr(fn, MARKER_ATTR, None)
        if isinstance(marker, ToolMarker):
            description = description or marker.description
            name = name or marker.name
        descriptor = describe_procedure(fn, description, name)
        with self._lock:
            self._added[descriptor.name] = descriptor
            tools = dict(self._catalog.tools)
            self._put(tools, descriptor, self.warnings)
            self._catalog = _Catalog(tools)
        return descriptor

    def _warn(self, warnings: List[str], message: str) -> None:
        warnings.append(message)
        logger.warning("Registry: %s", message)

    def _put(self, tools: Dict[str, ToolDescriptor], descriptor: ToolDescriptor, warnings: List[str]) -> None:
        existing = tools.get(descriptor.name)
        if existing is not None and existing.handle is not descriptor.handle:
            self._warn(warnings, f"Duplicate tool name '{descriptor.name}' - using {descriptor.source}")
        tools[descriptor.name] = descriptor

    def _rebuild(self) -> None:
        with self._lock:
            warnings: List[str] = []
            tools: Dict[str, ToolDescriptor] = {}
            for fn, marker, source in self._iter_candidates(warnings):
                try:
                    descriptor = describe_procedure(fn, marker.description, marker.name)
                except InvalidToolSignature as exc:
                    self._warn(warnings, f"Skipping {source}: {exc}")
                    continue
                self._put(tools, descriptor, warnings)
            for descriptor in self._added.values():
                self._put(tools, descriptor, warnings)
            self._catalog = _Catalog(tools)
            self.warnings = warnings
            self._initialized = True
        logger.debug("Registry: Discovered %d tools", len(tools))

    def _import(self, name: str, warnings: List[str]) -> Optional[ModuleType]:
        try:
            return importlib.import_module(name)
        except Exception as exc:  # noqa: BLE001
            self._warn(warnings, f"Error importing tool module {name}: {exc}")
            return None

    def _iter_modules(self, warnings: List[str]) -> Iterator[ModuleType]:
        seen: set[str] = set()
        pending: List[Union[str, ModuleType]] = list(self._sources)
        pending.extend(self._entry_point_modules(warnings))
        for source in pending:
            module = self._import(source, warnings) if isinstance(source, str) else source
            if module is None or module.__name__ in seen:
                continue
            seen.add(module.__name__)
            yield module
            if hasattr(module, "__path__"):
                for info in pkgutil.walk_packages(module.__path__, module.__name__ + "."):
                    if info.name in seen:
                        continue
                    sub = self._import(info.name, warnings)
                    if sub is not None:
                        seen.add(sub.__name__)
                        yield sub

    def _entry_point_modules(self, warnings: List[str]) -> List[ModuleType]:
        if not self._entry_point_group:
            return []
        modules: List[ModuleType] = []
        for entry_point in metadata.entry_points(group=self._entry_point_group):
            try:
                loaded = entry_point.load()
            except Exception as exc:  # noqa: BLE001
                self._warn(warnings, f"Error loading entry point {entry_point.name}: {exc}")
                continue
            if isinstance(loaded, ModuleType):
                modules.append(loaded)
            else:
                module = inspect.getmodule(loaded)
                if module is not None:
                    modules.append(module)
        return modules

    def _iter_candidates(self, warnings: List[str]) -> Iterator[Candidate]:
        for module in self._iter_modules(warnings):
            try:
                yield from _iter_marked(module)
            except Exception as exc:  # noqa: BLE001
                self._warn(warnings, f"Error scanning module {module.__name__}: {exc}")

    # -------------------------
    # Schemas
    # -------------------------

    def get_schemas(self) -> JsonDict:
        return self._catalog.schemas

    def get_schemas_json(self) -> str:
        return self._catalog.schemas_json

    def tool_infos(self) -> List[JsonDict]:
        infos = []
        for descriptor in self._catalog.tools.values():
            infos.append(
                {
                    "name": descriptor.name,
                    "description": descriptor.description,
                    "category": descriptor.category,
                    "source": descriptor.source,
                    "parameters": [
                        {
                            "name": p.name,
                            "type": p.semantic_type,
                            "description": p.description,
                            "optional": p.has_default,
                        }
                        for p in descriptor.parameters
                    ],
                }
            )
        return sorted(infos, key=lambda info: (info["category"], info["name"]))

    # -------------------------
    # Invocation
    # -------------------------

    def invoke(self, name: str, arguments: Optional[Mapping[str, Any]] = None) -> str:
        descriptor = self._catalog.tools.get(name)
        if descriptor is None:
            raise ToolNotFound(name)
        positional, keyword = bind_arguments(descriptor, arguments or {})
        try:
            result = descriptor.handle(*positional, **keyword)
        except Exception as exc:  # noqa: BLE001
            logger.error("Registry: Error calling tool '%s': %s", name, exc, exc_info=True)
            raise InvocationFailure(name, exc) from exc
        return render_result(result)

    def call_tool(self, name: str, arguments: Optional[Mapping[str, Any]] = None) -> str:
        try:
            return self.invoke(name, arguments)
        except ToolError as exc:
            return json.dumps(exc.to_payload())
