"""Workflow document parser.

Turns a ``.mdx`` workflow (YAML frontmatter plus a body that mixes prose
with PascalCase component tags) into a WorkflowDefinition. The body is
scanned by hand rather than with an MDX toolchain: components are located
by a tag matcher that skips ``{...}`` expressions and quoted strings, and
block tags are closed by a depth-counting scan.

Parsing is a pure function of the text. Unknown components are kept as
prose so the validator can report them; only structurally broken documents
(unclosed or broken tags, malformed frontmatter) raise ParseError.
"""

import json
import logging
import math
import re
from pathlib import Path
from typing import Any, NamedTuple

from mdxflow.exceptions import ParseError
from mdxflow.frontmatter import load_frontmatter, parse_inputs, parse_outputs, split_frontmatter
from mdxflow.lexing import find_matching_brace, line_at, skip_string, split_top_level
from mdxflow.log import LOG_LEVELS
from mdxflow.models import (
    CommentNode,
    ConfirmNode,
    Expression,
    FieldDef,
    FlowNode,
    GenerationNode,
    IfNode,
    LogNode,
    LoopNode,
    PromptNode,
    ProseNode,
    SelectNode,
    SetNode,
    StructuredNode,
    WebFetchNode,
    WebSearchNode,
    WorkflowDefinition,
)

logger = logging.getLogger(__name__)

KNOWN_COMPONENTS = frozenset(
    {
        "Generation",
        "Structured",
        "WebSearch",
        "WebFetch",
        "Loop",
        "If",
        "Else",
        "Set",
        "Log",
        "Comment",
        "Flow",
        "Field",
        "Prompt",
        "Select",
        "Confirm",
    }
)


_TAG_NAME_RE = re.compile(r"<([A-Z]\w*)")
_PROP_KEY_RE = re.compile(r"[A-Za-z0-9_]+")
_SPECIAL_RE = re.compile(r"[{<]")

Props = dict[str, Expression]


class TagMatch(NamedTuple):
    name: str
    attrs: str
    start: int
    end: int
    self_closing: bool


def match_tag(text: str, pos: int, end: int | None = None) -> TagMatch | None:
    """Match an opening or self-closing component tag at ``pos``.

    ``{...}`` prop expressions and double-quoted values are skipped whole, so
    a ``>`` inside them never ends the tag. Returns None when another ``<``
    is reached first or the tag never ends.
    """
    limit = len(text) if end is None else end
    name_match = _TAG_NAME_RE.match(text, pos, limit)
    if not name_match:
        return None
    i = name_match.end()
    while i < limit:
        ch = text[i]
        if ch == "{":
            close = find_matching_brace(text, i, limit)
            if close == -1:
                return None
            i = close + 1
        elif ch == '"':
            close = skip_string(text, i, limit)
            if close == -1:
                return None
            i = close + 1
        elif ch == "/" and text.startswith("/>", i):
            attrs = text[name_match.end() : i].strip()
            return TagMatch(name_match.group(1), attrs, pos, i + 2, True)
        elif ch == ">":
            attrs = text[name_match.end() : i].strip()
            return TagMatch(name_match.group(1), attrs, pos, i + 1, False)
        elif ch == "<":
            return None
        else:
            i += 1
    return None


def find_closing_tag(text: str, name: str, start: int, end: int | None = None) -> tuple[int, int] | None:
    """Locate ``</name>`` closing the tag whose body starts at ``start``.

    Nested same-name tags increase depth; same-name self-closing tags are
    skipped. Returns (close_start, close_end) or None.
    """
    limit = len(text) if end is None else end
    closing = re.compile(rf"</{name}\s*>")
    depth = 1
    i = start
    while i < limit:
        if text[i] == "<":
            tag = match_tag(text, i, limit)
            if tag and tag.name == name:
                if not tag.self_closing:
                    depth += 1
                i = tag.end
                continue
            close = closing.match(text, i, limit)
            if close:
                depth -= 1
                if depth == 0:
                    return close.start(), close.end()
                i = close.end()
                continue
        i += 1
    return None


def parse_props(attrs: str) -> Props:
    """Parse a tag's attribute string into Expressions.

    ``key="text"`` is static (backslash escapes honoured), ``key={expr}`` is
    dynamic, ``key=token`` is a static bare token and a lone ``key`` is
    static ``"true"``.
    """
    props: Props = {}
    s = attrs.strip()
    i = 0
    while i < len(s):
        while i < len(s) and s[i].isspace():
            i += 1
        if i >= len(s):
            break
        key_match = _PROP_KEY_RE.match(s, i)
        if not key_match:
            i += 1
            continue
        key = key_match.group()
        i = key_match.end()
        while i < len(s) and s[i].isspace():
            i += 1
        if i >= len(s) or s[i] != "=":
            props[key] = Expression.static("true")
            continue
        i += 1
        while i < len(s) and s[i].isspace():
            i += 1
        if i >= len(s):
            props[key] = Expression.static("")
            break
        if s[i] == '"':
            i += 1
            chars: list[str] = []
            while i < len(s) and s[i] != '"':
                if s[i] == "\\" and i + 1 < len(s):
                    i += 1
                chars.append(s[i])
                i += 1
            i += 1
            props[key] = Expression.static("".join(chars))
        elif s[i] == "{":
            close = find_matching_brace(s, i)
            if close == -1:
                # Malformed: take the rest
                props[key] = Expression.dynamic(s[i + 1 :])
                break
            props[key] = Expression.dynamic(s[i + 1 : close].strip())
            i = close + 1
        else:
            start = i
            while i < len(s) and not s[i].isspace():
                i += 1
            props[key] = Expression.static(s[start:i])
    return props


def parse_object_expression(raw: str) -> dict[str, Expression]:
    """Split ``{ key: expr, other }`` into one dynamic Expression per key."""
    inner = raw.strip()
    if inner.startswith("{") and inner.endswith("}"):
        inner = inner[1:-1].strip()
    result: dict[str, Expression] = {}
    for entry in split_top_level(inner):
        key, sep, value = entry.partition(":")
        key = key.strip()
        if len(key) >= 2 and key[0] == key[-1] and key[0] in "\"'":
            key = key[1:-1]
        if not key:
            continue
        # Shorthand `{ topic }` passes the same-named variable
        result[key] = Expression.dynamic(value.strip() if sep else key)
    return result


def _number(expr: Expression | None) -> float | None:
    if expr is None:
        return None
    try:
        value = float(expr.raw)
    except ValueError:
        return None
    return None if math.isnan(value) else value


def _integer(expr: Expression | None) -> int | None:
    value = _number(expr)
    if value is None or math.isinf(value):
        return None
    return int(value)


def _raw(props: Props, key: str) -> str | None:
    expr = props.get(key)
    return expr.raw if expr is not None else None


def _stop_sequences(expr: Expression | None) -> list[str] | None:
    if expr is None:
        return None
    try:
        value = json.loads(expr.raw.replace("'", '"'))
    except ValueError:
        return [expr.raw] if expr.is_static and expr.raw else None
    if isinstance(value, list):
        return [str(item) for item in value]
    if isinstance(value, str):
        return [value]
    return None


class _BodyParser:
    """Recursive scanner over one document body.

    Works on index ranges of the full body so positions, and therefore
    error line numbers, stay absolute.
    """

    def __init__(self, text: str, line_offset: int = 0) -> None:
        self.text = text
        self.line_offset = line_offset

    def line(self, pos: int) -> int:
        return line_at(self.text, pos) + self.line_offset

    def parse(self) -> list[Any]:
        return self.parse_nodes(0, len(self.text))

    def parse_nodes(self, start: int, end: int) -> list[Any]:
        text = self.text
        nodes: list[Any] = []
        prose: list[str] = []

        def flush() -> None:
            content = "".join(prose).strip()
            if content:
                nodes.append(ProseNode(content=content))
            prose.clear()

        i = start
        while i < end:
            ch = text[i]
            if ch == "{":
                if text.startswith("{/*", i):
                    flush()
                    comment_end = text.find("*/}", i + 3, end)
                    if comment_end == -1:
                        break
                    nodes.append(CommentNode())
                    i = comment_end + 3
                    continue
                # Interpolations stay prose, and tags inside them are not components
                close = find_matching_brace(text, i, end)
                if close != -1:
                    prose.append(text[i : close + 1])
                    i = close + 1
                    continue
            elif ch == "<":
                tag = match_tag(text, i, end)
                if tag:
                    flush()
                    i = self._component(tag, end, nodes)
                    continue
                broken = _TAG_NAME_RE.match(text, i, end)
                if broken:
                    raise ParseError(
                        f"Expected closing tag or self-closing for <{broken.group(1)}>",
                        self.line(i),
                    )
                if text.startswith("</", i):
                    bracket = text.find(">", i, end)
                    if bracket != -1:
                        i = bracket + 1
                        continue
            special = _SPECIAL_RE.search(text, i + 1, end)
            stop = special.start() if special else end
            prose.append(text[i:stop])
            i = stop

        flush()
        return nodes

    def _component(self, tag: TagMatch, end: int, nodes: list[Any]) -> int:
        """Build the node for ``tag``, append it, and return the resume index."""
        props = parse_props(tag.attrs)
        if tag.self_closing:
            node = self._build(tag, props, tag.end, tag.end)
            if node is not None:
                nodes.append(node)
            return tag.end

        close = find_closing_tag(self.text, tag.name, tag.end, end)
        if close is None:
            raise ParseError(f"Unclosed <{tag.name}> tag", self.line(tag.start))
        close_start, resume = close

        if tag.name == "If":
            else_children = None
            found = self._try_else(resume, end)
            if found is not None:
                else_children, resume = found
            nodes.append(
                IfNode(
                    condition=props.get("condition") or Expression.dynamic("false"),
                    children=self.parse_nodes(tag.end, close_start),
                    else_children=else_children,
                )
            )
            return resume

        node = self._build(tag, props, tag.end, close_start)
        if node is not None:
            nodes.append(node)
        return resume

    def _try_else(self, pos: int, end: int) -> tuple[list[Any], int] | None:
        """Look past whitespace and comments for an Else directly after an If."""
        text = self.text
        i = pos
        while i < end:
            if text[i].isspace():
                i += 1
                continue
            if text.startswith("{/*", i):
                comment_end = text.find("*/}", i + 3, end)
                if comment_end != -1:
                    i = comment_end + 3
                    continue
            break
        if i >= end:
            return None
        tag = match_tag(text, i, end)
        if tag is None or tag.name != "Else":
            return None
        if tag.self_closing:
            return [], tag.end
        close = find_closing_tag(text, "Else", tag.end, end)
        if close is None:
            return None
        return self.parse_nodes(tag.end, close[0]), close[1]

    def _build(self, tag: TagMatch, props: Props, inner_start: int, inner_end: int) -> Any:
        name = props.get("name")
        node_name = name.raw if name is not None else ""
        inner = self.text[inner_start:inner_end]

        match tag.name:
            case "Generation":
                return GenerationNode(
                    name=node_name,
                    model=_raw(props, "model"),
                    temperature=_number(props.get("temperature")),
                    max_tokens=_integer(props.get("maxTokens")),
                    stop=_stop_sequences(props.get("stop")),
                )
            case "Structured":
                return StructuredNode(
                    name=node_name,
                    model=_raw(props, "model"),
                    fields=self._fields(inner_start, inner_end),
                )
            case "WebSearch":
                return WebSearchNode(
                    name=node_name,
                    query=props.get("query") or Expression.static(""),
                    max_results=_integer(props.get("maxResults")),
                    provider=_raw(props, "provider"),
                )
            case "WebFetch":
                return WebFetchNode(
                    name=node_name,
                    url=props.get("url") or Expression.static(""),
                    max_tokens=_integer(props.get("maxTokens")),
                    selector=_raw(props, "selector"),
                )
            case "Loop":
                return LoopNode(
                    name=node_name,
                    over=props.get("over"),
                    count=props.get("count"),
                    children=self.parse_nodes(inner_start, inner_end),
                )
            case "If":
                return IfNode(
                    condition=props.get("condition") or Expression.dynamic("false"),
                    children=self.parse_nodes(inner_start, inner_end),
                )
            case "Set":
                return SetNode(
                    name=node_name,
                    value=props.get("value") or Expression.dynamic("undefined"),
                )
            case "Log":
                level = _raw(props, "level")
                return LogNode(
                    level=level if level in LOG_LEVELS else "info",
                    content=inner.strip(),
                )
            case "Comment":
                return CommentNode()
            case "Flow":
                inputs = props.get("inputs")
                return FlowNode(
                    name=node_name,
                    src=_raw(props, "src") or "",
                    inputs=parse_object_expression(inputs.raw) if inputs is not None else None,
                )
            case "Prompt":
                return PromptNode(
                    name=node_name,
                    message=props.get("message") or Expression.static(""),
                    default=props.get("default"),
                    input_type="number" if _raw(props, "type") == "number" else "text",
                )
            case "Select":
                return SelectNode(
                    name=node_name,
                    message=props.get("message") or Expression.static(""),
                    options=props.get("options") or Expression.dynamic("[]"),
                    label_key=_raw(props, "labelKey"),
                    value_key=_raw(props, "valueKey"),
                )
            case "Confirm":
                return ConfirmNode(
                    name=node_name,
                    message=props.get("message") or Expression.static(""),
                    default=props.get("default"),
                )
            case "Field" | "Else":
                return None
            case _:
                if tag.self_closing:
                    return ProseNode(content=f"<{tag.name} />")
                return ProseNode(content=f"<{tag.name}>{inner}</{tag.name}>")

    def _fields(self, start: int, end: int) -> list[FieldDef]:
        text = self.text
        fields: list[FieldDef] = []
        i = start
        while i < end:
            if text[i] != "<":
                i += 1
                continue
            tag = match_tag(text, i, end)
            if tag is None or tag.name != "Field":
                i += 1
                continue
            props = parse_props(tag.attrs)
            children = None
            resume = tag.end
            if not tag.self_closing:
                close = find_closing_tag(text, "Field", tag.end, end)
                if close is None:
                    raise ParseError("Unclosed <Field> tag", self.line(tag.start))
                children = self._fields(tag.end, close[0]) or None
                resume = close[1]
            fields.append(
                FieldDef(
                    name=_raw(props, "name"),
                    type=_raw(props, "type") or "text",
                    description=_raw(props, "description"),
                    children=children,
                )
            )
            i = resume
        return fields


def parse(source: str) -> WorkflowDefinition:
    """Parse workflow source text into a WorkflowDefinition."""
    yaml_text, body, line_offset = split_frontmatter(source)
    frontmatter = load_frontmatter(yaml_text)
    nodes = _BodyParser(body, line_offset).parse()

    name = frontmatter.get("name")
    description = frontmatter.get("description")
    return WorkflowDefinition(
        name=str(name) if name is not None else "",
        description=str(description) if description is not None else None,
        inputs=parse_inputs(frontmatter.get("inputs")),
        outputs=parse_outputs(frontmatter.get("outputs")),
        nodes=nodes,
    )


def parse_file(path: str | Path) -> WorkflowDefinition:
    """Read and parse a workflow file.

    Raises:
        ParseError: With ``path`` set, if the document is malformed
        OSError: If the file cannot be read
    """
    path = Path(path)
    source = path.read_text(encoding="utf-8")
    try:
        definition = parse(source)
    except ParseError as e:
        raise e.with_path(path) from e
    logger.debug("Parsed %s: %d nodes", path, definition.count_nodes())
    return definition
