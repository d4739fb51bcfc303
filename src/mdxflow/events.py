"""Event models emitted by the executor.

Events are the only observability channel of a run: the CLI renders them,
``--stream`` writes each one as an NDJSON line, and tests assert on them.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

from pydantic import BaseModel, ConfigDict, Field


class EventType(str, Enum):
    """Event type enumeration."""

    # Run lifecycle
    RUN_STARTED = "run.started"
    RUN_COMPLETED = "run.completed"

    # Model calls
    GENERATION_STARTED = "generation.started"
    GENERATION_CHUNK = "generation.chunk"
    GENERATION_COMPLETED = "generation.completed"
    STRUCTURED_STARTED = "structured.started"
    STRUCTURED_COMPLETED = "structured.completed"

    # Retrieval
    TOOL_STARTED = "tool.started"
    TOOL_COMPLETED = "tool.completed"

    # Control flow
    LOOP_STARTED = "loop.started"
    LOOP_ITERATION = "loop.iteration"
    LOOP_COMPLETED = "loop.completed"
    FLOW_STARTED = "flow.started"
    FLOW_COMPLETED = "flow.completed"
    CONDITION_EVALUATED = "condition.evaluated"

    # Bookkeeping
    VARIABLE_SET = "variable.set"
    LOG = "log"

    # Human-in-the-loop
    INPUT_REQUESTED = "input.requested"
    INPUT_RECEIVED = "input.received"

    ERROR = "error"
    OUTPUT = "output"


class BaseEvent(BaseModel):
    """Base event with common fields. Immutable once emitted."""

    model_config = ConfigDict(frozen=True)

    event_type: EventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


EventSink = Callable[[BaseEvent], None]


class RunStartedEvent(BaseEvent):
    event_type: EventType = EventType.RUN_STARTED
    workflow: str


class RunCompletedEvent(BaseEvent):
    event_type: EventType = EventType.RUN_COMPLETED
    outputs: dict[str, Any] = Field(default_factory=dict)


class GenerationStartedEvent(BaseEvent):
    event_type: EventType = EventType.GENERATION_STARTED
    name: str
    model: str


class GenerationChunkEvent(BaseEvent):
    """One text delta from the model, for Generation and Structured nodes."""

    event_type: EventType = EventType.GENERATION_CHUNK
    name: str
    content: str


class GenerationCompletedEvent(BaseEvent):
    event_type: EventType = EventType.GENERATION_COMPLETED
    name: str


class StructuredStartedEvent(BaseEvent):
    event_type: EventType = EventType.STRUCTURED_STARTED
    name: str
    model: str


class StructuredCompletedEvent(BaseEvent):
    event_type: EventType = EventType.STRUCTURED_COMPLETED
    name: str
    value: Any = None


class ToolStartedEvent(BaseEvent):
    event_type: EventType = EventType.TOOL_STARTED
    name: str
    tool: str  # WebSearch, WebFetch


class ToolCompletedEvent(BaseEvent):
    event_type: EventType = EventType.TOOL_COMPLETED
    name: str
    results: Any = None


class LoopStartedEvent(BaseEvent):
    event_type: EventType = EventType.LOOP_STARTED
    name: str
    total: int


class LoopIterationEvent(BaseEvent):
    event_type: EventType = EventType.LOOP_ITERATION
    name: str
    index: int


class LoopCompletedEvent(BaseEvent):
    event_type: EventType = EventType.LOOP_COMPLETED
    name: str


class FlowStartedEvent(BaseEvent):
    event_type: EventType = EventType.FLOW_STARTED
    name: str
    src: str


class FlowCompletedEvent(BaseEvent):
    event_type: EventType = EventType.FLOW_COMPLETED
    name: str


class ConditionEvaluatedEvent(BaseEvent):
    event_type: EventType = EventType.CONDITION_EVALUATED
    condition: str
    result: bool


class VariableSetEvent(BaseEvent):
    event_type: EventType = EventType.VARIABLE_SET
    name: str


class LogEvent(BaseEvent):
    event_type: EventType = EventType.LOG
    level: str
    message: str


class InputRequestedEvent(BaseEvent):
    event_type: EventType = EventType.INPUT_REQUESTED
    name: str
    input_kind: str  # prompt, select, confirm
    message: str


class InputReceivedEvent(BaseEvent):
    event_type: EventType = EventType.INPUT_RECEIVED
    name: str
    value: Any = None


class ErrorEvent(BaseEvent):
    """Emitted when a node fails, before the exception propagates."""

    event_type: EventType = EventType.ERROR
    node: str
    message: str
    error_type: str


class OutputEvent(BaseEvent):
    """Final named value produced by a node."""

    event_type: EventType = EventType.OUTPUT
    name: str
    value: Any = None
