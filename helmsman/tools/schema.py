"""Tool descriptors and argument validation against their parameter schema."""

import copy
from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from helmsman.exceptions import SchemaError

_JSON_TYPES = {"string", "number", "integer", "boolean", "array", "object", "null"}


class ToolSource(BaseModel):
    """Where a tool implementation lives."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["builtin", "plugin"] = "builtin"
    plugin_id: str | None = None

    @classmethod
    def builtin(cls) -> "ToolSource":
        return cls(kind="builtin")

    @classmethod
    def plugin(cls, plugin_id: str) -> "ToolSource":
        return cls(kind="plugin", plugin_id=plugin_id)

    @property
    def label(self) -> str:
        if self.kind == "plugin":
            return f"plugin:{self.plugin_id}"
        return "builtin"


class ToolDescriptor(BaseModel):
    """Model-visible shape of a callable tool."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    parameters: dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})
    requires_confirmation: bool = False
    source: ToolSource = Field(default_factory=ToolSource.builtin)
    # Name the provider knows the tool by, when different from ``name``.
    remote_name: str | None = None

    def get_definition(self) -> dict[str, Any]:
        """OpenAI function-style definition sent to the model."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": copy.deepcopy(self.parameters),
        }


@dataclass(frozen=True)
class ValidatedArguments:
    """Arguments that passed schema validation, with declared defaults applied."""

    tool_name: str
    values: dict[str, Any] = field(default_factory=dict)


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def _matches_type(value: Any, expected: str) -> bool:
    actual = _type_name(value)
    if expected == "number":
        return actual in {"integer", "number"}
    if expected == "integer":
        return actual == "integer" or (actual == "number" and float(value).is_integer())
    return actual == expected


def _declared_types(schema: dict[str, Any]) -> list[str]:
    raw = schema.get("type")
    if raw is None:
        return []
    if isinstance(raw, str):
        return [raw] if raw in _JSON_TYPES else []
    return [item for item in raw if isinstance(item, str) and item in _JSON_TYPES]


def _join_path(parent: str, key: str) -> str:
    return f"{parent}.{key}" if parent else key


def _check(tool_name: str, schema: dict[str, Any], value: Any, path: str) -> Any:
    """Validate one value against a schema node; returns the value with defaults filled."""
    types = _declared_types(schema)
    if types and not any(_matches_type(value, t) for t in types):
        expected = " | ".join(types)
        raise SchemaError(tool_name, path, expected, f"has type {_type_name(value)}")

    enum = schema.get("enum")
    if isinstance(enum, list) and value not in enum:
        allowed = ", ".join(repr(item) for item in enum)
        raise SchemaError(tool_name, path, f"one of {allowed}", f"has value {value!r}")

    if isinstance(value, dict) and ("properties" in schema or "object" in types):
        return _check_object(tool_name, schema, value, path)

    if isinstance(value, (list, tuple)) and isinstance(schema.get("items"), dict):
        item_schema = schema["items"]
        return [
            _check(tool_name, item_schema, item, f"{path}[{idx}]")
            for idx, item in enumerate(value)
        ]
    return value


def _check_object(tool_name: str, schema: dict[str, Any], value: dict[str, Any], path: str) -> dict[str, Any]:
    properties = schema.get("properties") or {}
    if not isinstance(properties, dict):
        properties = {}

    for required in schema.get("required") or []:
        if required not in value:
            prop = properties.get(required) or {}
            expected = " | ".join(_declared_types(prop)) or "a value"
            raise SchemaError(tool_name, _join_path(path, required), expected, "is required but missing")

    if schema.get("additionalProperties") is False:
        for key in value:
            if key not in properties:
                raise SchemaError(
                    tool_name,
                    _join_path(path, key),
                    f"one of the declared fields ({', '.join(properties) or 'none'})",
                    "is not allowed",
                )

    result: dict[str, Any] = {}
    for key, item in value.items():
        prop = properties.get(key)
        if isinstance(prop, dict):
            result[key] = _check(tool_name, prop, item, _join_path(path, key))
        else:
            result[key] = item

    for key, prop in properties.items():
        if key not in result and isinstance(prop, dict) and "default" in prop:
            result[key] = copy.deepcopy(prop["default"])
    return result


def validate(descriptor: ToolDescriptor, arguments: Any) -> ValidatedArguments:
    """Validate call arguments against the descriptor's parameter schema.

    Checks required fields, JSON types, enumerations, nested objects and
    arrays. Never executes anything.

    Raises:
        SchemaError naming the offending field path and the expected type
    """
    if arguments is None:
        arguments = {}
    if not isinstance(arguments, dict):
        raise SchemaError(descriptor.name, "", "object", f"has type {_type_name(arguments)}")

    schema = descriptor.parameters or {}
    values = _check_object(descriptor.name, schema, dict(arguments), "")
    return ValidatedArguments(tool_name=descriptor.name, values=values)
