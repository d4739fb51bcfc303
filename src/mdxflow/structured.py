"""JSON schema building and response parsing for Structured nodes."""

import json
import re
from typing import Any

from mdxflow.models import FieldDef

JSON_INSTRUCTION = "Respond with ONLY valid JSON matching this schema:"
JSON_FOOTER = "Output ONLY the JSON object, no markdown fences, no explanation."

_LEADING_FENCE_RE = re.compile(r"^```(?:json)?\s*\n?", re.IGNORECASE)
_TRAILING_FENCE_RE = re.compile(r"\n?```\s*$")


def build_json_schema(fields: list[FieldDef]) -> dict[str, Any]:
    """Object schema whose properties are the named fields, all required."""
    properties: dict[str, Any] = {}
    required: list[str] = []
    for field in fields:
        if not field.name:
            continue
        properties[field.name] = field_schema(field)
        required.append(field.name)
    return {"type": "object", "properties": properties, "required": required}


def _with_description(schema: dict[str, Any], field: FieldDef) -> dict[str, Any]:
    if field.description is not None:
        schema["description"] = field.description
    return schema


def field_schema(field: FieldDef) -> dict[str, Any]:
    match field.type:
        case "text":
            return _with_description({"type": "string"}, field)
        case "number":
            return _with_description({"type": "number"}, field)
        case "boolean":
            return _with_description({"type": "boolean"}, field)
        case "list":
            if field.children:
                first = field.children[0]
                items = build_json_schema(field.children) if first.name else field_schema(first)
            else:
                items = {"type": "string"}
            return _with_description({"type": "array", "items": items}, field)
        case "object":
            if field.children:
                return build_json_schema(field.children)
            return _with_description({"type": "object"}, field)
        case _:
            return {"type": "string"}


def describe_fields(fields: list[FieldDef], indent: int = 0) -> str:
    """Describe the target shape as a bulleted list for the model."""
    pad = "  " * indent
    lines: list[str] = []
    for field in fields:
        name = field.name or "(element)"
        if field.type == "list" and field.children:
            lines.append(f'{pad}- "{name}": array of:')
            lines.append(describe_fields(field.children, indent + 1))
        elif field.type == "object" and field.children:
            lines.append(f'{pad}- "{name}": object with:')
            lines.append(describe_fields(field.children, indent + 1))
        else:
            description = f" - {field.description}" if field.description else ""
            lines.append(f'{pad}- "{name}": {field.type}{description}')
    return "\n".join(lines)


def build_structured_prompt(context_prompt: str, fields: list[FieldDef]) -> str:
    schema = json.dumps(build_json_schema(fields), indent=2, ensure_ascii=False)
    return (
        f"{context_prompt}\n\n"
        f"{JSON_INSTRUCTION}\n"
        f"{describe_fields(fields)}\n\n"
        f"JSON Schema:\n```json\n{schema}\n```\n\n"
        f"{JSON_FOOTER}"
    )


def extract_json(text: str) -> Any:
    """Parse a model response as JSON, falling back to a sentinel.

    Strategies, in order: the whole response with a surrounding code fence
    stripped; the span from the first ``{`` to the last ``}``; the first
    ``{`` from which a complete JSON value decodes. When all fail the result
    is ``{"_raw": text, "_error": ...}``; this function never raises.
    """
    cleaned = _TRAILING_FENCE_RE.sub("", _LEADING_FENCE_RE.sub("", text.strip())).strip()
    try:
        return json.loads(cleaned)
    except ValueError:
        pass

    first = text.find("{")
    last = text.rfind("}")
    if first == -1 or last <= first:
        return {"_raw": text, "_error": "No JSON found in response"}

    try:
        return json.loads(text[first : last + 1])
    except ValueError:
        pass

    decoder = json.JSONDecoder()
    start = first
    while start != -1:
        try:
            value, _ = decoder.raw_decode(text, start)
            return value
        except ValueError:
            start = text.find("{", start + 1)
    return {"_raw": text, "_error": "Failed to parse JSON"}
