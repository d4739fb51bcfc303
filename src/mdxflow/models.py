"""Pydantic models for parsed workflows and execution state.

The parser produces a WorkflowDefinition whose nodes form a closed tagged
union discriminated on ``kind``. Everything here is frozen: the executor never
mutates a node, and WorkflowContext updates return a new context.
"""

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

FIELD_TYPES = frozenset({"text", "number", "boolean", "list", "object"})


class NodeState(str, Enum):
    """Lifecycle of a single node during execution."""

    PENDING = "pending"
    ACTIVE = "active"
    COMPLETE = "complete"
    ERROR = "error"


class Expression(BaseModel):
    """A prop value: a static literal or source text evaluated at run time."""

    model_config = ConfigDict(frozen=True)

    raw: str
    is_static: bool

    @classmethod
    def static(cls, raw: str) -> "Expression":
        return cls(raw=raw, is_static=True)

    @classmethod
    def dynamic(cls, raw: str) -> "Expression":
        return cls(raw=raw, is_static=False)


class InputDef(BaseModel):
    """A declared workflow input from the frontmatter ``inputs`` section."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: str = "text"
    required: bool = True
    default: Any = None
    description: str | None = None
    element_type: str | None = Field(default=None, description="Element type for list<T>")
    children: dict[str, "InputDef"] | None = Field(
        default=None, description="Nested fields for object inputs"
    )


class FieldDef(BaseModel):
    """One field of a Structured node's target JSON shape.

    ``type`` is kept as written so the validator can report unknown kinds.
    """

    model_config = ConfigDict(frozen=True)

    name: str | None = None
    type: str = "text"
    description: str | None = None
    children: list["FieldDef"] | None = None


# Workflow nodes


class _Node(BaseModel):
    model_config = ConfigDict(frozen=True)


class ProseNode(_Node):
    kind: Literal["prose"] = "prose"
    content: str


class GenerationNode(_Node):
    kind: Literal["generation"] = "generation"
    name: str = ""
    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    stop: list[str] | None = None


class StructuredNode(_Node):
    kind: Literal["structured"] = "structured"
    name: str = ""
    model: str | None = None
    fields: list[FieldDef] = Field(default_factory=list)


class WebSearchNode(_Node):
    kind: Literal["websearch"] = "websearch"
    name: str = ""
    query: Expression = Field(default_factory=lambda: Expression.static(""))
    max_results: int | None = None
    provider: str | None = None


class WebFetchNode(_Node):
    kind: Literal["webfetch"] = "webfetch"
    name: str = ""
    url: Expression = Field(default_factory=lambda: Expression.static(""))
    max_tokens: int | None = None
    selector: str | None = None


class LoopNode(_Node):
    kind: Literal["loop"] = "loop"
    name: str = ""
    over: Expression | None = None
    count: Expression | None = None
    children: list["WorkflowNode"] = Field(default_factory=list)


class IfNode(_Node):
    kind: Literal["if"] = "if"
    condition: Expression = Field(default_factory=lambda: Expression.dynamic("false"))
    children: list["WorkflowNode"] = Field(default_factory=list)
    else_children: list["WorkflowNode"] | None = None


class SetNode(_Node):
    kind: Literal["set"] = "set"
    name: str = ""
    value: Expression = Field(default_factory=lambda: Expression.dynamic("undefined"))


class LogNode(_Node):
    kind: Literal["log"] = "log"
    level: Literal["info", "debug", "warn"] = "info"
    content: str = ""


class CommentNode(_Node):
    kind: Literal["comment"] = "comment"


class FlowNode(_Node):
    kind: Literal["flow"] = "flow"
    name: str = ""
    src: str = ""
    inputs: dict[str, Expression] | None = None


class PromptNode(_Node):
    kind: Literal["prompt"] = "prompt"
    name: str = ""
    message: Expression = Field(default_factory=lambda: Expression.static(""))
    default: Expression | None = None
    input_type: Literal["text", "number"] = "text"


class SelectNode(_Node):
    kind: Literal["select"] = "select"
    name: str = ""
    message: Expression = Field(default_factory=lambda: Expression.static(""))
    options: Expression = Field(default_factory=lambda: Expression.dynamic("[]"))
    label_key: str | None = None
    value_key: str | None = None


class ConfirmNode(_Node):
    kind: Literal["confirm"] = "confirm"
    name: str = ""
    message: Expression = Field(default_factory=lambda: Expression.static(""))
    default: Expression | None = None


WorkflowNode = Annotated[
    Union[
        ProseNode,
        GenerationNode,
        StructuredNode,
        WebSearchNode,
        WebFetchNode,
        LoopNode,
        IfNode,
        SetNode,
        LogNode,
        CommentNode,
        FlowNode,
        PromptNode,
        SelectNode,
        ConfirmNode,
    ],
    Field(discriminator="kind"),
]

NODE_KINDS = frozenset(
    {
        "prose",
        "generation",
        "structured",
        "websearch",
        "webfetch",
        "loop",
        "if",
        "set",
        "log",
        "comment",
        "flow",
        "prompt",
        "select",
        "confirm",
    }
)

LoopNode.model_rebuild()
IfNode.model_rebuild()


class WorkflowDefinition(BaseModel):
    """A parsed workflow document."""

    model_config = ConfigDict(frozen=True)

    name: str = ""
    description: str | None = None
    inputs: list[InputDef] = Field(default_factory=list)
    outputs: list[str] | None = Field(default=None, description="Output allow-list")
    nodes: list[WorkflowNode] = Field(default_factory=list)

    def count_nodes(self) -> int:
        """Count nodes recursively, including loop bodies and both If branches."""
        return _count(self.nodes)


def _count(nodes: list[Any]) -> int:
    total = 0
    for node in nodes:
        total += 1
        children = getattr(node, "children", None)
        if isinstance(children, list):
            total += _count(children)
        else_children = getattr(node, "else_children", None)
        if else_children:
            total += _count(else_children)
    return total


# Execution state


class WorkflowContext(BaseModel):
    """State threaded through one execution.

    Never mutated in place: ``push`` and ``with_output`` return a new context,
    which is what lets loop bodies and sub-flows start from a snapshot.
    ``written`` records output keys assigned since the context was last reset,
    so a loop can tell which keys an iteration produced.
    """

    model_config = ConfigDict(frozen=True)

    inputs: dict[str, Any] = Field(default_factory=dict)
    outputs: dict[str, Any] = Field(default_factory=dict)
    context_stack: tuple[str, ...] = ()
    written: frozenset[str] = frozenset()

    def scope(self) -> dict[str, Any]:
        """Expression scope: inputs overlaid by outputs."""
        return {**self.inputs, **self.outputs}

    def prompt(self) -> str:
        return "\n\n".join(self.context_stack)

    def push(self, *entries: str) -> "WorkflowContext":
        return self.model_copy(update={"context_stack": self.context_stack + tuple(entries)})

    def with_output(self, name: str, value: Any) -> "WorkflowContext":
        return self.model_copy(
            update={
                "outputs": {**self.outputs, name: value},
                "written": self.written | {name},
            }
        )


# Human-in-the-loop requests


class SelectOption(BaseModel):
    model_config = ConfigDict(frozen=True)

    value: str
    label: str
    description: str | None = None


class PromptRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["prompt"] = "prompt"
    name: str
    message: str
    default: str | None = None
    input_type: Literal["text", "number"] = "text"


class SelectRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["select"] = "select"
    name: str
    message: str
    options: list[SelectOption] = Field(default_factory=list)


class ConfirmRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["confirm"] = "confirm"
    name: str
    message: str
    default: bool = True


InputRequest = Annotated[
    Union[PromptRequest, SelectRequest, ConfirmRequest],
    Field(discriminator="kind"),
]

InputDef.model_rebuild()
FieldDef.model_rebuild()
