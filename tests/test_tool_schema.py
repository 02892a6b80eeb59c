from __future__ import annotations

from typing import Any

from pool_gateway.tool_schema import (
    UNSUPPORTED_SCHEMA_KEYS,
    convert_openai_tools,
    normalize_json_schema,
)

SEARCH_SCHEMA: dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["query"],
    "additionalProperties": {
        "type": "string",
        "minLength": 1,
    },
    "properties": {
        "query": {
            "type": "string",
            "description": "Search text",
            "pattern": "^[a-z]+$",
            "maxLength": 200,
            "default": "news",
        },
        "mode": {"type": "string", "enum": ["fast", "deep"], "format": "slug"},
        "filters": {
            "type": "array",
            "minItems": 1,
            "items": {
                "type": "object",
                "properties": {
                    "score": {"type": "number", "minimum": 0, "exclusiveMaximum": 1},
                },
                "anyOf": [{"required": ["score"]}],
            },
        },
    },
}


def _keys(schema: Any) -> set[str]:
    if isinstance(schema, list):
        return set().union(*(_keys(item) for item in schema)) if schema else set()
    if not isinstance(schema, dict):
        return set()
    found = set(schema)
    for key, value in schema.items():
        if key == "properties" and isinstance(value, dict):
            for child in value.values():
                found |= _keys(child)
        elif key in ("items", "additionalProperties"):
            found |= _keys(value)
    return found


def test_normalize_removes_unsupported_keys_at_every_depth() -> None:
    cleaned = normalize_json_schema(SEARCH_SCHEMA)

    assert not _keys(cleaned) & UNSUPPORTED_SCHEMA_KEYS
    assert cleaned["additionalProperties"] == {"type": "string"}
    assert cleaned["properties"]["filters"]["items"]["properties"]["score"] == {
        "type": "number"
    }


def test_normalize_preserves_descriptive_keywords() -> None:
    cleaned = normalize_json_schema(SEARCH_SCHEMA)

    assert cleaned["required"] == ["query"]
    assert cleaned["properties"]["query"] == {
        "type": "string",
        "description": "Search text",
        "default": "news",
    }
    assert cleaned["properties"]["mode"]["enum"] == ["fast", "deep"]
    assert cleaned["properties"]["mode"]["format"] == "slug"


def test_normalize_is_idempotent() -> None:
    once = normalize_json_schema(SEARCH_SCHEMA)

    assert normalize_json_schema(once) == once


def test_normalize_does_not_mutate_input() -> None:
    schema = {"type": "string", "pattern": "x"}

    normalize_json_schema(schema)

    assert schema == {"type": "string", "pattern": "x"}


def test_property_named_like_a_keyword_is_kept() -> None:
    cleaned = normalize_json_schema(
        {"type": "object", "properties": {"pattern": {"type": "string"}}}
    )

    assert cleaned["properties"] == {"pattern": {"type": "string"}}


def test_convert_openai_tools_builds_single_declaration_block() -> None:
    tools = [
        {
            "type": "function",
            "function": {
                "name": "search",
                "description": "Search the web",
                "parameters": SEARCH_SCHEMA,
            },
        },
        {"type": "function", "function": {"name": "noop"}},
        {"type": "retrieval"},
        {"type": "function", "function": {"name": "  "}},
    ]

    converted = convert_openai_tools(tools)

    assert len(converted) == 1
    declarations = converted[0]["functionDeclarations"]
    assert [item["name"] for item in declarations] == ["search", "noop"]
    assert declarations[0]["description"] == "Search the web"
    assert "$schema" not in declarations[0]["parameters"]
    assert "parameters" not in declarations[1]


def test_convert_openai_tools_ignores_missing_tools() -> None:
    assert convert_openai_tools(None) == []
    assert convert_openai_tools([]) == []
