from __future__ import annotations

from typing import Any

UNSUPPORTED_SCHEMA_KEYS = frozenset(
    {
        "$schema",
        "$id",
        "$defs",
        "definitions",
        "allOf",
        "anyOf",
        "oneOf",
        "not",
        "if",
        "then",
        "else",
        "pattern",
        "patternProperties",
        "propertyNames",
        "minLength",
        "maxLength",
        "minItems",
        "maxItems",
        "uniqueItems",
        "contains",
        "minimum",
        "maximum",
        "exclusiveMinimum",
        "exclusiveMaximum",
        "multipleOf",
        "dependentSchemas",
        "dependentRequired",
        "additionalItems",
        "unevaluatedItems",
        "unevaluatedProperties",
    }
)


def normalize_json_schema(schema: Any) -> Any:
    """Drop JSON-Schema keywords the upstream function declarations reject.

    Descends into ``properties``, ``items`` and object-valued
    ``additionalProperties``. Applying it twice yields the same result.
    """
    if isinstance(schema, list):
        return [normalize_json_schema(item) for item in schema]
    if not isinstance(schema, dict):
        return schema

    cleaned: dict[str, Any] = {}
    for key, value in schema.items():
        if key in UNSUPPORTED_SCHEMA_KEYS:
            continue
        if key == "properties" and isinstance(value, dict):
            cleaned[key] = {
                name: normalize_json_schema(child) for name, child in value.items()
            }
        elif key == "items":
            cleaned[key] = normalize_json_schema(value)
        elif key == "additionalProperties" and isinstance(value, dict):
            cleaned[key] = normalize_json_schema(value)
        else:
            cleaned[key] = value
    return cleaned


def convert_openai_tools(tools: Any) -> list[dict[str, Any]]:
    """OpenAI ``tools`` list -> one upstream ``functionDeclarations`` block."""
    if not isinstance(tools, list):
        return []
    declarations: list[dict[str, Any]] = []
    for tool in tools:
        if not isinstance(tool, dict):
            continue
        function = tool.get("function") if tool.get("type", "function") == "function" else None
        if not isinstance(function, dict):
            continue
        name = function.get("name")
        if not isinstance(name, str) or not name.strip():
            continue
        declaration: dict[str, Any] = {"name": name.strip()}
        description = function.get("description")
        if isinstance(description, str):
            declaration["description"] = description
        parameters = function.get("parameters")
        if isinstance(parameters, dict):
            declaration["parameters"] = normalize_json_schema(parameters)
        declarations.append(declaration)
    if not declarations:
        return []
    return [{"functionDeclarations": declarations}]
