"""Tests for Structured node schema building and JSON extraction."""

import json

import pytest

from mdxflow.models import FieldDef
from mdxflow.structured import (
    JSON_FOOTER,
    JSON_INSTRUCTION,
    build_json_schema,
    build_structured_prompt,
    describe_fields,
    extract_json,
)

FIELDS = [
    FieldDef(name="title", type="text", description="Short title"),
    FieldDef(name="score", type="number"),
    FieldDef(name="ok", type="boolean"),
    FieldDef(name="tags", type="list", children=[FieldDef(type="text")]),
    FieldDef(
        name="people",
        type="list",
        children=[FieldDef(name="name", type="text"), FieldDef(name="age", type="number")],
    ),
    FieldDef(name="meta", type="object", children=[FieldDef(name="source", type="text")]),
    FieldDef(name="extra", type="object", description="Anything else"),
]


def test_build_json_schema() -> None:
    schema = build_json_schema(FIELDS)

    assert schema["type"] == "object"
    assert schema["required"] == ["title", "score", "ok", "tags", "people", "meta", "extra"]
    props = schema["properties"]
    assert props["title"] == {"type": "string", "description": "Short title"}
    assert props["score"] == {"type": "number"}
    assert props["ok"] == {"type": "boolean"}
    assert props["tags"] == {"type": "array", "items": {"type": "string"}}
    assert props["people"]["items"] == {
        "type": "object",
        "properties": {"name": {"type": "string"}, "age": {"type": "number"}},
        "required": ["name", "age"],
    }
    assert props["meta"]["properties"] == {"source": {"type": "string"}}
    assert props["extra"] == {"type": "object", "description": "Anything else"}


def test_list_without_children_defaults_to_strings() -> None:
    schema = build_json_schema([FieldDef(name="xs", type="list")])
    assert schema["properties"]["xs"] == {"type": "array", "items": {"type": "string"}}


def test_unnamed_top_level_fields_are_skipped() -> None:
    assert build_json_schema([FieldDef(type="text")])["properties"] == {}


def test_describe_fields() -> None:
    text = describe_fields(FIELDS[:4])
    assert text.splitlines() == [
        '- "title": text - Short title',
        '- "score": number',
        '- "ok": boolean',
        '- "tags": array of:',
        '  - "(element)": text',
    ]


def test_build_structured_prompt() -> None:
    """Test the prompt appends instruction, field list, schema and footer to the context."""
    fields = [FieldDef(name="answer", type="text")]
    prompt = build_structured_prompt("Some context", fields)

    assert prompt.startswith(f"Some context\n\n{JSON_INSTRUCTION}\n- \"answer\": text\n\nJSON Schema:\n```json\n")
    assert prompt.endswith(f"\n```\n\n{JSON_FOOTER}")
    schema_text = prompt.split("```json\n")[1].split("\n```")[0]
    assert json.loads(schema_text) == build_json_schema(fields)


@pytest.mark.parametrize(
    ("response", "expected"),
    [
        ('{"a": 1}', {"a": 1}),
        ('```json\n{"a": 1}\n```', {"a": 1}),
        ('```\n[1, 2]\n```', [1, 2]),
        ('Here you go: {"a": {"b": 2}} Hope that helps!', {"a": {"b": 2}}),
        ('First {"a": 1} then {"b": 2}', {"a": 1}),
    ],
)
def test_extract_json(response: str, expected: object) -> None:
    assert extract_json(response) == expected


def test_extract_json_sentinels() -> None:
    """Test unparseable responses degrade to a sentinel instead of raising."""
    assert extract_json("no json here") == {"_raw": "no json here", "_error": "No JSON found in response"}
    assert extract_json("{broken: }") == {"_raw": "{broken: }", "_error": "Failed to parse JSON"}
