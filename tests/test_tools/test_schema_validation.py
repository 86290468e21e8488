import pytest

from helmsman.exceptions import SchemaError
from helmsman.tools.schema import ToolDescriptor, ToolSource, validate


def _descriptor(parameters: dict) -> ToolDescriptor:
    return ToolDescriptor(name="read", description="Read a file", parameters=parameters)


READ_SCHEMA = {
    "type": "object",
    "properties": {
        "path": {"type": "string"},
        "limit": {"type": "integer", "default": 50},
        "mode": {"type": "string", "enum": ["text", "raw"]},
    },
    "required": ["path"],
}


def test_wrong_type_names_field_and_expected_type():
    with pytest.raises(SchemaError) as exc_info:
        validate(_descriptor(READ_SCHEMA), {"path": 42})

    err = exc_info.value
    assert err.field_path == "path"
    assert err.expected == "string"
    assert "path" in str(err)
    assert "integer" in str(err)


def test_missing_required_field_is_rejected():
    with pytest.raises(SchemaError) as exc_info:
        validate(_descriptor(READ_SCHEMA), {"limit": 3})

    assert exc_info.value.field_path == "path"
    assert "required" in str(exc_info.value)


def test_defaults_are_applied_and_values_kept():
    validated = validate(_descriptor(READ_SCHEMA), {"path": "a.txt"})

    assert validated.tool_name == "read"
    assert validated.values == {"path": "a.txt", "limit": 50}


def test_enum_violation_lists_allowed_values():
    with pytest.raises(SchemaError) as exc_info:
        validate(_descriptor(READ_SCHEMA), {"path": "a.txt", "mode": "binary"})

    assert exc_info.value.field_path == "mode"
    assert "'text'" in exc_info.value.expected


def test_boolean_is_not_accepted_as_integer():
    with pytest.raises(SchemaError) as exc_info:
        validate(_descriptor(READ_SCHEMA), {"path": "a.txt", "limit": True})

    assert exc_info.value.field_path == "limit"


def test_integral_float_counts_as_integer():
    validated = validate(_descriptor(READ_SCHEMA), {"path": "a.txt", "limit": 10.0})
    assert validated.values["limit"] == 10.0


def test_nested_paths_are_reported_with_dots_and_indexes():
    schema = {
        "type": "object",
        "properties": {
            "files": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {"name": {"type": "string"}},
                    "required": ["name"],
                },
            },
        },
    }

    with pytest.raises(SchemaError) as exc_info:
        validate(_descriptor(schema), {"files": [{"name": "ok"}, {"name": 7}]})

    assert exc_info.value.field_path == "files[1].name"


def test_additional_properties_false_rejects_unknown_keys():
    schema = dict(READ_SCHEMA, additionalProperties=False)

    with pytest.raises(SchemaError) as exc_info:
        validate(_descriptor(schema), {"path": "a.txt", "bogus": 1})

    assert exc_info.value.field_path == "bogus"


def test_non_object_arguments_are_rejected():
    with pytest.raises(SchemaError) as exc_info:
        validate(_descriptor(READ_SCHEMA), ["a.txt"])

    assert exc_info.value.field_path == ""
    assert "<arguments>" in str(exc_info.value)


def test_none_arguments_validate_as_empty_object():
    validated = validate(_descriptor({"type": "object", "properties": {}}), None)
    assert validated.values == {}


def test_union_types_accept_any_listed_type():
    schema = {"type": "object", "properties": {"value": {"type": ["string", "null"]}}}

    assert validate(_descriptor(schema), {"value": None}).values == {"value": None}
    with pytest.raises(SchemaError) as exc_info:
        validate(_descriptor(schema), {"value": 1})
    assert exc_info.value.expected == "string | null"


def test_descriptor_definition_is_a_copy():
    descriptor = ToolDescriptor(
        name="remote_tool",
        parameters={"type": "object", "properties": {"q": {"type": "string"}}},
        source=ToolSource.plugin("acme"),
    )

    definition = descriptor.get_definition()
    definition["parameters"]["properties"]["q"]["type"] = "integer"

    assert descriptor.parameters["properties"]["q"]["type"] == "string"
    assert descriptor.source.label == "plugin:acme"
