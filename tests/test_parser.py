"""Tests for the workflow document parser."""

from pathlib import Path

import pytest

from mdxflow.exceptions import ParseError
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
)
from mdxflow.parser import (
    find_closing_tag,
    match_tag,
    parse,
    parse_file,
    parse_object_expression,
    parse_props,
)

RESEARCH = """---
name: research
description: Research a topic
inputs:
  topic: text
  depth: number = 2
  tags: list<text>
  count: 3
outputs:
  - summary
---

# Research {topic}

Look at it from {depth} angles.

<Generation name="summary" model="anthropic/claude-sonnet-4" temperature={0.2} maxTokens={500} />
"""


def test_parse_frontmatter() -> None:
    """Test name, description, inputs and outputs come from the frontmatter."""
    definition = parse(RESEARCH)

    assert definition.name == "research"
    assert definition.description == "Research a topic"
    assert definition.outputs == ["summary"]

    inputs = {i.name: i for i in definition.inputs}
    assert list(inputs) == ["topic", "depth", "tags", "count"]
    assert inputs["topic"].type == "text"
    assert inputs["topic"].required is True
    assert inputs["depth"].type == "number"
    assert inputs["depth"].required is False
    assert inputs["depth"].default == 2
    assert inputs["tags"].type == "list"
    assert inputs["tags"].element_type == "text"
    assert inputs["count"].type == "number"
    assert inputs["count"].default == 3
    assert inputs["count"].required is False


def test_parse_object_input() -> None:
    """Test a nested mapping declares an object input with children."""
    source = "---\ninputs:\n  person:\n    name: text\n    age: number = 30\n---\nHi\n"
    (person,) = parse(source).inputs

    assert person.type == "object"
    assert person.children is not None
    assert person.children["name"].required is True
    assert person.children["age"].default == 30


def test_parse_body_nodes() -> None:
    """Test prose spans are trimmed and components become nodes."""
    definition = parse(RESEARCH)

    assert definition.nodes[0] == ProseNode(content="# Research {topic}\n\nLook at it from {depth} angles.")
    generation = definition.nodes[1]
    assert isinstance(generation, GenerationNode)
    assert generation.name == "summary"
    assert generation.model == "anthropic/claude-sonnet-4"
    assert generation.temperature == 0.2
    assert generation.max_tokens == 500
    assert generation.stop is None


def test_parse_without_frontmatter() -> None:
    definition = parse("Just prose.\n\n   \n")
    assert definition.name == ""
    assert definition.inputs == []
    assert definition.outputs is None
    assert definition.nodes == [ProseNode(content="Just prose.")]


def test_whitespace_only_prose_is_dropped() -> None:
    definition = parse('<Set name="a" value={1} />\n\n   \n<Set name="b" value={2} />')
    assert [node.kind for node in definition.nodes] == ["set", "set"]


def test_generation_stop_sequences() -> None:
    """Test stop accepts list literals with either quote style."""
    double = parse('<Generation name="g" stop={["###", "END"]} />').nodes[0]
    single = parse("<Generation name=\"g\" stop={['###']} />").nodes[0]
    broken = parse('<Generation name="g" stop={[oops} />').nodes[0]

    assert double.stop == ["###", "END"]
    assert single.stop == ["###"]
    assert broken.stop is None


def test_generation_block_form_ignores_body() -> None:
    definition = parse('<Generation name="g">ignored body</Generation>\nAfter')
    assert definition.nodes == [GenerationNode(name="g"), ProseNode(content="After")]


def test_structured_fields() -> None:
    """Test nested Field children build the field tree."""
    source = """<Structured name="analysis" model="openai/gpt-4o">
  <Field name="sentiment" type="text" description="Overall tone" />
  <Field name="score" type="number" />
  <Field name="points" type="list">
    <Field type="text" />
  </Field>
  <Field name="meta">
  </Field>
</Structured>"""
    node = parse(source).nodes[0]

    assert isinstance(node, StructuredNode)
    assert node.name == "analysis"
    assert node.model == "openai/gpt-4o"
    assert node.fields == [
        FieldDef(name="sentiment", type="text", description="Overall tone"),
        FieldDef(name="score", type="number"),
        FieldDef(name="points", type="list", children=[FieldDef(type="text")]),
        FieldDef(name="meta", type="text"),
    ]


def test_unclosed_field_raises() -> None:
    with pytest.raises(ParseError, match="Unclosed <Field> tag"):
        parse('<Structured name="s">\n<Field name="x" type="list">\n</Structured>')


def test_if_else_with_comment_between() -> None:
    """Test an Else after an If is attached even across whitespace and comments."""
    source = """<If condition={score > 0.5}>
High
</If>

{/* otherwise */}
<Else>
Low
</Else>
Done"""
    nodes = parse(source).nodes

    assert len(nodes) == 2
    if_node = nodes[0]
    assert isinstance(if_node, IfNode)
    assert if_node.condition == Expression.dynamic("score > 0.5")
    assert if_node.children == [ProseNode(content="High")]
    assert if_node.else_children == [ProseNode(content="Low")]
    assert nodes[1] == ProseNode(content="Done")


def test_if_without_else() -> None:
    (if_node,) = parse("<If condition={flag}>\nYes\n</If>").nodes
    assert if_node.else_children is None


def test_self_closing_else_gives_empty_branch() -> None:
    (if_node,) = parse("<If condition={flag}>Yes</If><Else />").nodes
    assert if_node.else_children == []


def test_standalone_else_and_field_produce_nothing() -> None:
    nodes = parse("<Else>orphan</Else>\n<Field name=\"x\" />\nText").nodes
    assert nodes == [ProseNode(content="Text")]


def test_loop_with_children() -> None:
    source = """<Loop name="each" over={items}>
Item: {item}
<Generation name="g" />
</Loop>"""
    (loop,) = parse(source).nodes

    assert isinstance(loop, LoopNode)
    assert loop.over == Expression.dynamic("items")
    assert loop.count is None
    assert loop.children == [ProseNode(content="Item: {item}"), GenerationNode(name="g")]


def test_nested_same_name_tags() -> None:
    """Test the closing scan counts nested tags of the same name."""
    source = """<Loop name="outer" count={2}>
<Loop name="inner" count={3}>
x
</Loop>
y
</Loop>"""
    (outer,) = parse(source).nodes

    assert outer.name == "outer"
    inner, prose = outer.children
    assert inner.name == "inner"
    assert inner.children == [ProseNode(content="x")]
    assert prose == ProseNode(content="y")


def test_retrieval_and_variable_nodes() -> None:
    source = """<WebSearch name="results" query={`news about ${topic}`} maxResults={5} provider="exa" />
<WebFetch name="page" url="https://example.com" maxTokens={1000} selector="main" />
<Set name="total" value={a + b} />
<Set name="empty" />"""
    search, fetch, total, empty = parse(source).nodes

    assert search == WebSearchNode(
        name="results",
        query=Expression.dynamic("`news about ${topic}`"),
        max_results=5,
        provider="exa",
    )
    assert fetch == WebFetchNode(
        name="page",
        url=Expression.static("https://example.com"),
        max_tokens=1000,
        selector="main",
    )
    assert total == SetNode(name="total", value=Expression.dynamic("a + b"))
    assert empty.value == Expression.dynamic("undefined")


def test_log_and_comment_nodes() -> None:
    source = """<Log level="warn">Score is {score}</Log>
<Log level="loud">x</Log>
<Log />
<Comment>not executed</Comment>
{/* also a comment */}"""
    warn, fallback, empty, comment, inline = parse(source).nodes

    assert warn == LogNode(level="warn", content="Score is {score}")
    assert fallback.level == "info"
    assert empty == LogNode(level="info", content="")
    assert comment == CommentNode()
    assert inline == CommentNode()


@pytest.mark.parametrize("level", sorted(LOG_LEVELS))
def test_log_accepts_every_logging_level(level: str) -> None:
    (node,) = parse(f'<Log level="{level}">x</Log>').nodes
    assert node.level == level


def test_unterminated_comment_ends_body() -> None:
    nodes = parse("Before\n{/* never closed\n<Generation name=\"g\" />").nodes
    assert nodes == [ProseNode(content="Before")]


def test_flow_inputs() -> None:
    """Test Flow inputs are split into one expression per key."""
    source = """<Flow name="sub" src="./sub.mdx" inputs={{ topic, depth: depth + 1, "label": 'x, y' }} />"""
    (flow,) = parse(source).nodes

    assert isinstance(flow, FlowNode)
    assert flow.src == "./sub.mdx"
    assert flow.inputs == {
        "topic": Expression.dynamic("topic"),
        "depth": Expression.dynamic("depth + 1"),
        "label": Expression.dynamic("'x, y'"),
    }


def test_human_input_nodes() -> None:
    source = """<Prompt name="age" message="How old?" default="30" type="number" />
<Select name="pick" message={`Pick one of ${n}`} options={choices} labelKey="title" valueKey="id" />
<Select name="bare" message="Choose" />
<Confirm name="ok" message="Proceed?" default={false} />"""
    prompt, select, bare, confirm = parse(source).nodes

    assert prompt == PromptNode(
        name="age",
        message=Expression.static("How old?"),
        default=Expression.static("30"),
        input_type="number",
    )
    assert isinstance(select, SelectNode)
    assert select.options == Expression.dynamic("choices")
    assert select.label_key == "title"
    assert select.value_key == "id"
    assert bare.options == Expression.dynamic("[]")
    assert confirm == ConfirmNode(
        name="ok", message=Expression.static("Proceed?"), default=Expression.dynamic("false")
    )


def test_unknown_components_become_prose() -> None:
    """Test unknown tags are kept as text so validation can report them."""
    nodes = parse('<Chart data={rows} />\n<Widget>inner text</Widget>').nodes
    assert nodes == [
        ProseNode(content="<Chart />"),
        ProseNode(content="<Widget>inner text</Widget>"),
    ]


def test_gt_inside_expression_does_not_end_tag() -> None:
    (node,) = parse('<Set name="big" value={count > 10 ? "a>b" : "c"} />').nodes
    assert node.value == Expression.dynamic('count > 10 ? "a>b" : "c"')


def test_tags_inside_interpolation_stay_prose() -> None:
    nodes = parse('Literal {"<Generation name=\\"x\\" />"} here').nodes
    assert len(nodes) == 1
    assert isinstance(nodes[0], ProseNode)


def test_stray_closing_tags_are_skipped() -> None:
    assert parse("Hello </Loop> world").nodes == [ProseNode(content="Hello  world")]


def test_lowercase_tags_and_comparisons_are_prose() -> None:
    source = "Compare x < y and <br> here"
    assert parse(source).nodes == [ProseNode(content=source)]


def test_broken_tag_raises_with_line() -> None:
    """Test a tag that neither closes nor self-closes reports the file line."""
    source = '---\nname: x\n---\nHello\n<Generation name="g"\n<b>'
    with pytest.raises(ParseError) as exc_info:
        parse(source)

    assert exc_info.value.line == 5
    assert "Expected closing tag or self-closing for <Generation>" in str(exc_info.value)


def test_unclosed_block_tag_raises() -> None:
    with pytest.raises(ParseError) as exc_info:
        parse("Intro\n\n<Loop name=\"l\" count={2}>\nbody\n")

    assert exc_info.value.line == 3
    assert exc_info.value.message == "Unclosed <Loop> tag"


def test_malformed_frontmatter_raises() -> None:
    with pytest.raises(ParseError, match="Invalid frontmatter"):
        parse("---\nname: [unclosed\n---\nBody\n")


def test_non_mapping_frontmatter_is_empty() -> None:
    definition = parse("---\n- just\n- a list\n---\nBody\n")
    assert definition.name == ""
    assert definition.nodes == [ProseNode(content="Body")]


def test_reparse_is_idempotent() -> None:
    assert parse(RESEARCH) == parse(RESEARCH)


def test_parse_file_sets_path_on_error(tmp_path: Path) -> None:
    path = tmp_path / "broken.mdx"
    path.write_text('<Loop name="l">\nnever closed\n', encoding="utf-8")

    with pytest.raises(ParseError) as exc_info:
        parse_file(path)

    assert exc_info.value.path == str(path)
    assert str(exc_info.value) == f"{path}:1: Unclosed <Loop> tag"


def test_parse_file_reads_document(tmp_path: Path) -> None:
    path = tmp_path / "ok.mdx"
    path.write_text(RESEARCH, encoding="utf-8")
    assert parse_file(path) == parse(RESEARCH)


def test_parse_props() -> None:
    props = parse_props('name="a \\"quoted\\" word" count={n + 1} mode=fast enabled')
    assert props == {
        "name": Expression.static('a "quoted" word'),
        "count": Expression.dynamic("n + 1"),
        "mode": Expression.static("fast"),
        "enabled": Expression.static("true"),
    }


def test_parse_props_nested_braces() -> None:
    props = parse_props("value={{ a: { b: 1 } }}")
    assert props["value"] == Expression.dynamic("{ a: { b: 1 } }")


def test_parse_object_expression_quoted_keys() -> None:
    assert parse_object_expression("{ 'a': 1, \"b\": [1, 2] }") == {
        "a": Expression.dynamic("1"),
        "b": Expression.dynamic("[1, 2]"),
    }


def test_match_tag_and_find_closing_tag() -> None:
    text = '<If condition={a > b}>x<If condition={c}/>y</If>'
    tag = match_tag(text, 0)

    assert tag is not None
    assert tag.name == "If"
    assert tag.attrs == "condition={a > b}"
    assert tag.self_closing is False
    assert find_closing_tag(text, "If", tag.end) == (len(text) - 5, len(text))
