"""Input schema generation for tool parameters.

Maps Python annotations to the four semantic types understood by clients
and renders the JSON-Schema subset advertised in ``discover`` responses.
"""

from __future__ import annotations

import inspect
import types
import typing
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence

JsonDict = Dict[str, Any]

STRING = "string"
INTEGER = "integer"
NUMBER = "number"
BOOLEAN = "boolean"

SEMANTIC_TYPES = (STRING, INTEGER, NUMBER, BOOLEAN)

_NO_DEFAULT = inspect.Parameter.empty


@dataclass(frozen=True)
class ParameterDescriptor:
    name: str
    semantic_type: str = STRING
    description: str = ""
    default: Any = _NO_DEFAULT
    annotation: Any = None

    @property
    def required(self) -> bool:
        return self.default is _NO_DEFAULT

    @property
    def has_default(self) -> bool:
        return not self.required


def _strip_optional(annotation: Any) -> Any:
    origin = typing.get_origin(annotation)
    if origin is typing.Union or origin is getattr(types, "UnionType", None):
        args = [a for a in typing.get_args(annotation) if a is not type(None)]
        if len(args) == 1:
            return args[0]
    return annotation


def semantic_type_for(annotation: Any) -> str:
    if typing.get_origin(annotation) is typing.Annotated:
        annotation = typing.get_args(annotation)[0]
    annotation = _strip_optional(annotation)
    # bool is a subclass of int
    if annotation is bool:
        return BOOLEAN
    if annotation is int:
        return INTEGER
    if annotation is float:
        return NUMBER
    return STRING


def generate_input_schema(parameters: Sequence[ParameterDescriptor]) -> JsonDict:
    properties: JsonDict = {}
    required: List[str] = []
    for param in parameters:
        json_type = param.semantic_type if param.semantic_type in SEMANTIC_TYPES else STRING
        prop: JsonDict = {"type": json_type}
        if param.description:
            prop["description"] = param.description
        properties[param.name] = prop
        if param.required:
            required.append(param.name)

    schema: JsonDict = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema
