from typing import Annotated, List, Optional

from host_mcp.schema import ParameterDescriptor, generate_input_schema, semantic_type_for
from host_mcp.tools import McpParam


def test_zero_parameters_shape():
    assert generate_input_schema([]) == {"type": "object", "properties": {}}


def test_all_defaults_has_no_required_key():
    schema = generate_input_schema(
        [
            ParameterDescriptor("a", "integer", default=1),
            ParameterDescriptor("b", "string", default=None),
        ]
    )
    assert "required" not in schema
    assert schema["properties"] == {"a": {"type": "integer"}, "b": {"type": "string"}}


def test_required_lists_parameters_without_defaults():
    schema = generate_input_schema(
        [
            ParameterDescriptor("name", "string"),
            ParameterDescriptor("speed", "number", default=1.0),
            ParameterDescriptor("count", "integer"),
        ]
    )
    assert set(schema["required"]) == {"name", "count"}


def test_description_only_when_present():
    schema = generate_input_schema(
        [
            ParameterDescriptor("speed", "number", description="Speed multiplier"),
            ParameterDescriptor("label", "string", description=""),
        ]
    )
    assert schema["properties"]["speed"] == {"type": "number", "description": "Speed multiplier"}
    assert schema["properties"]["label"] == {"type": "string"}


def test_unknown_semantic_type_falls_back_to_string():
    schema = generate_input_schema([ParameterDescriptor("blob", "object")])
    assert schema["properties"]["blob"] == {"type": "string"}


def test_required_is_computed_from_default():
    assert ParameterDescriptor("x").required is True
    assert ParameterDescriptor("x", default=None).required is False
    assert ParameterDescriptor("x", default=None).has_default is True


def test_semantic_type_mapping():
    assert semantic_type_for(str) == "string"
    assert semantic_type_for(int) == "integer"
    assert semantic_type_for(float) == "number"
    assert semantic_type_for(bool) == "boolean"
    assert semantic_type_for(Optional[int]) == "integer"
    assert semantic_type_for(Annotated[float, McpParam("x")]) == "number"
    assert semantic_type_for(List[int]) == "string"
    assert semantic_type_for(None) == "string"
