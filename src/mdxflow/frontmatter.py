"""Frontmatter splitting and input declaration parsing."""

import re
from typing import Any

import yaml

from mdxflow.exceptions import ParseError
from mdxflow.models import InputDef

_FRONTMATTER_RE = re.compile(r"^---\r?\n([\s\S]*?)\r?\n---\r?\n?([\s\S]*)$")
_LIST_TYPE_RE = re.compile(r"^list<(\w+)>$")


def split_frontmatter(source: str) -> tuple[str, str, int]:
    """Split ``source`` into (yaml, body, body_line_offset).

    ``body_line_offset`` is the number of lines preceding the body, so a
    position in the body can be reported as a line of the whole file.
    """
    match = _FRONTMATTER_RE.match(source)
    if not match:
        return "", source, 0
    body_start = match.start(2)
    return match.group(1), match.group(2), source.count("\n", 0, body_start)


def load_frontmatter(text: str) -> dict[str, Any]:
    """Load the frontmatter YAML; a non-mapping document counts as empty."""
    if not text.strip():
        return {}
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        line = None
        mark = getattr(e, "problem_mark", None)
        if mark is not None:
            # +1 for 1-based lines, +1 for the opening fence
            line = mark.line + 2
        raise ParseError(f"Invalid frontmatter: {getattr(e, 'problem', None) or e}", line) from e
    return data if isinstance(data, dict) else {}


def _scalar(raw: str) -> Any:
    text = raw.strip()
    if text == "":
        return None
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:
        return text


def parse_type_declaration(raw: str) -> tuple[str, str | None, bool, Any]:
    """Parse ``type``, ``type = default`` or ``list<T>`` declarations.

    Returns (type, element_type, has_default, default).
    """
    text = raw.strip()
    type_text, sep, default_text = text.partition("=")
    has_default = bool(sep)
    default = _scalar(default_text) if has_default else None
    type_text = type_text.strip()
    list_match = _LIST_TYPE_RE.match(type_text)
    if list_match:
        return "list", list_match.group(1), has_default, default
    return type_text or "text", None, has_default, default


def _inferred_type(value: Any) -> str:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, list):
        return "list"
    if isinstance(value, dict):
        return "object"
    return "text"


def _input_def(name: str, raw: Any) -> InputDef:
    if isinstance(raw, str):
        type_name, element_type, has_default, default = parse_type_declaration(raw)
        return InputDef(
            name=name,
            type=type_name,
            required=not has_default,
            default=default,
            element_type=element_type,
        )
    if isinstance(raw, dict):
        children = {
            str(child): _input_def(str(child), child_raw)
            for child, child_raw in raw.items()
            if isinstance(child_raw, str)
        }
        return InputDef(name=name, type="object", required=True, children=children)
    # A bare scalar or list (`count: 3`) is an untyped default
    return InputDef(name=name, type=_inferred_type(raw), required=raw is None, default=raw)


def parse_inputs(raw: Any) -> list[InputDef]:
    if not isinstance(raw, dict):
        return []
    return [_input_def(str(name), value) for name, value in raw.items()]


def parse_outputs(raw: Any) -> list[str] | None:
    if isinstance(raw, list):
        return [str(item) for item in raw]
    return None
