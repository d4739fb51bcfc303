"""Workflow executor.

Runs a parsed WorkflowDefinition top to bottom. Every handler takes a node
and the current ``WorkflowContext`` and returns the next context; nothing is
mutated in place, so a Loop can restart each iteration from a snapshot of
the context stack and a Flow can run in a context of its own.

Usage:
    executor = WorkflowExecutor(inputs={"topic": "tides"}, on_event=print)
    outputs = await executor.execute(definition)

    # Or step through human-input suspensions explicitly
    session = executor.start(definition)
    step = await session.advance()
    while isinstance(step, Suspended):
        step = await session.resume(ask_somebody(step.request))
    outputs = step.outputs
"""

import asyncio
import json
import logging
import math
from collections.abc import Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from mdxflow.config import MdxflowSettings, get_settings
from mdxflow.events import (
    BaseEvent,
    ConditionEvaluatedEvent,
    ErrorEvent,
    EventSink,
    FlowCompletedEvent,
    FlowStartedEvent,
    GenerationChunkEvent,
    GenerationCompletedEvent,
    GenerationStartedEvent,
    InputReceivedEvent,
    InputRequestedEvent,
    LogEvent,
    LoopCompletedEvent,
    LoopIterationEvent,
    LoopStartedEvent,
    OutputEvent,
    RunCompletedEvent,
    RunStartedEvent,
    StructuredCompletedEvent,
    StructuredStartedEvent,
    ToolCompletedEvent,
    ToolStartedEvent,
    VariableSetEvent,
)
from mdxflow.exceptions import ExecutionError, MissingInputError, SubflowError
from mdxflow.expressions import (
    evaluate_condition,
    interpolate,
    js_str,
    json_safe,
    resolve_expression,
    to_display_string,
    to_number,
)
from mdxflow.human import InputResolver, as_bool, default_answer
from mdxflow.llm import LLMClient, build_client, user_messages
from mdxflow.log import LOG_LEVELS
from mdxflow.models import (
    NODE_KINDS,
    CommentNode,
    ConfirmNode,
    ConfirmRequest,
    FlowNode,
    GenerationNode,
    IfNode,
    InputRequest,
    LogNode,
    LoopNode,
    NodeState,
    PromptNode,
    PromptRequest,
    ProseNode,
    SelectNode,
    SelectOption,
    SelectRequest,
    SetNode,
    StructuredNode,
    WebFetchNode,
    WebSearchNode,
    WorkflowContext,
    WorkflowDefinition,
)
from mdxflow.parser import parse_file
from mdxflow.retrieval import RetrievalBackend, build_backend, format_fetch, format_search
from mdxflow.structured import build_structured_prompt, extract_json

logger = logging.getLogger(__name__)

LOOP_VARIABLES = ("item", "index")

Handler = Callable[[Any, WorkflowContext], Awaitable[WorkflowContext]]


def node_label(node: Any) -> str:
    """Short identifier for traces and error events: ``kind:name`` or ``kind``."""
    name = getattr(node, "name", "")
    return f"{node.kind}:{name}" if name else node.kind


def pretty_json(value: Any) -> str:
    return json.dumps(json_safe(value), indent=2, ensure_ascii=False)


class WorkflowExecutor:
    """Executes workflow definitions with context accumulation.

    Each Generation sees everything pushed onto the context stack by the
    nodes that ran before it.
    """

    def __init__(
        self,
        inputs: dict[str, Any] | None = None,
        model_override: str | None = None,
        verbose: bool = False,
        on_event: EventSink | None = None,
        base_path: str | Path | None = None,
        input_resolver: InputResolver | None = None,
        llm: LLMClient | None = None,
        retrieval: RetrievalBackend | None = None,
        settings: MdxflowSettings | None = None,
    ) -> None:
        """Initialize the executor.

        Args:
            inputs: Explicitly supplied workflow inputs
            model_override: Model used for every model call, over node and default
            verbose: Log the execution trace at INFO instead of DEBUG
            on_event: Sink receiving every event of the run
            base_path: Directory that relative Flow ``src`` paths resolve against
            input_resolver: Answers Prompt/Select/Confirm; defaults are used without one
            llm: Model client; built from settings when omitted
            retrieval: Backend for WebSearch/WebFetch; built from settings when omitted
            settings: Settings; the cached global settings when omitted
        """
        self.inputs = dict(inputs or {})
        self.model_override = model_override
        self.verbose = verbose
        self.on_event = on_event
        self.base_path = Path(base_path) if base_path is not None else None
        self.input_resolver = input_resolver
        self.settings = settings or get_settings()
        self.llm = llm or build_client(self.settings.retries, self.settings.retry_delay_ms)
        self.retrieval = retrieval or build_backend(
            self.settings.fetch_backend, self.settings.fetch_timeout
        )
        self.node_states: dict[str, NodeState] = {}

        self._resolver = input_resolver
        self._handlers: dict[str, Handler] = {
            "prose": self._prose,
            "generation": self._generation,
            "structured": self._structured,
            "websearch": self._web_search,
            "webfetch": self._web_fetch,
            "loop": self._loop,
            "if": self._if,
            "set": self._set,
            "log": self._log,
            "comment": self._comment,
            "flow": self._flow,
            "prompt": self._prompt,
            "select": self._select,
            "confirm": self._confirm,
        }
        missing = NODE_KINDS - self._handlers.keys()
        assert not missing, f"No handler for node kinds: {sorted(missing)}"

    # Public API

    async def execute(self, definition: WorkflowDefinition) -> dict[str, Any]:
        """Run ``definition`` to completion and return its outputs."""
        return await self._run(definition, self.input_resolver)

    def start(self, definition: WorkflowDefinition) -> "ExecutionSession":
        """Prepare a step-wise run that suspends at every human-input node."""
        return ExecutionSession(self, definition)

    # Run loop

    async def _run(
        self, definition: WorkflowDefinition, resolver: InputResolver | None
    ) -> dict[str, Any]:
        self._resolver = resolver
        self.node_states = {}
        self._emit(RunStartedEvent(workflow=definition.name))

        inputs = dict(self.inputs)
        for input_def in definition.inputs:
            if inputs.get(input_def.name) is None and input_def.default is not None:
                inputs[input_def.name] = input_def.default

        context = WorkflowContext(inputs=inputs)
        context = await self._run_nodes(definition.nodes, context)

        merged = context.scope()
        if definition.outputs is not None:
            result = {key: merged[key] for key in definition.outputs if key in merged}
        else:
            result = merged

        self._emit(RunCompletedEvent(outputs=json_safe(result)))
        return result

    async def _run_nodes(self, nodes: list[Any], context: WorkflowContext) -> WorkflowContext:
        for node in nodes:
            context = await self._run_node(node, context)
        return context

    async def _run_node(self, node: Any, context: WorkflowContext) -> WorkflowContext:
        label = node_label(node)
        self.node_states[label] = NodeState.ACTIVE
        try:
            context = await self._handlers[node.kind](node, context)
        except Exception as e:
            self.node_states[label] = NodeState.ERROR
            # Reported once, by the innermost node that raised it
            if not hasattr(e, "mdxflow_node"):
                e.mdxflow_node = label
                self._emit(ErrorEvent(node=label, message=str(e), error_type=type(e).__name__))
            raise
        self.node_states[label] = NodeState.COMPLETE
        return context

    # Helpers

    def _emit(self, event: BaseEvent) -> None:
        if self.on_event is not None:
            self.on_event(event)

    def _trace(self, message: str, *args: Any) -> None:
        logger.log(logging.INFO if self.verbose else logging.DEBUG, message, *args)

    def _model_for(self, node: GenerationNode | StructuredNode) -> str:
        return self.model_override or node.model or self.settings.default_model

    def _record(self, context: WorkflowContext, name: str, value: Any, entry: str) -> WorkflowContext:
        self._emit(OutputEvent(name=name, value=json_safe(value)))
        return context.with_output(name, value).push(entry)

    async def _complete(self, model: str, prompt: str, name: str, **options: Any) -> str:
        parts: list[str] = []
        stream = self.llm.stream(
            model,
            user_messages(prompt),
            system_prompt=self.settings.system_prompt,
            **options,
        )
        async for delta in stream:
            parts.append(delta)
            self._emit(GenerationChunkEvent(name=name, content=delta))
        return "".join(parts)

    async def _ask(self, request: InputRequest) -> Any:
        self._emit(
            InputRequestedEvent(name=request.name, input_kind=request.kind, message=request.message)
        )
        if self._resolver is None:
            return default_answer(request)
        return await self._resolver(request)

    # Node handlers

    async def _prose(self, node: ProseNode, context: WorkflowContext) -> WorkflowContext:
        text = interpolate(node.content, context.scope())
        self._trace("[prose] %s...", text[:120])
        return context.push(text)

    async def _comment(self, node: CommentNode, context: WorkflowContext) -> WorkflowContext:
        return context

    async def _generation(self, node: GenerationNode, context: WorkflowContext) -> WorkflowContext:
        model = self._model_for(node)
        self._emit(GenerationStartedEvent(name=node.name, model=model))

        prompt = context.prompt()
        self._trace("[generation:%s] Sending %d chars to %s", node.name, len(prompt), model)
        text = await self._complete(
            model,
            prompt,
            node.name,
            temperature=node.temperature,
            max_tokens=node.max_tokens,
            stop=node.stop,
        )

        self._emit(GenerationCompletedEvent(name=node.name))
        return self._record(context, node.name, text, text)

    async def _structured(self, node: StructuredNode, context: WorkflowContext) -> WorkflowContext:
        model = self._model_for(node)
        self._emit(StructuredStartedEvent(name=node.name, model=model))

        prompt = build_structured_prompt(context.prompt(), node.fields)
        self._trace("[structured:%s] Sending %d chars to %s", node.name, len(prompt), model)
        response = await self._complete(model, prompt, node.name)

        value = extract_json(response)
        if isinstance(value, dict) and "_error" in value and "_raw" in value:
            logger.warning("Structured node %r: %s", node.name, value["_error"])

        self._emit(StructuredCompletedEvent(name=node.name, value=json_safe(value)))
        return self._record(context, node.name, value, pretty_json(value))

    async def _web_search(self, node: WebSearchNode, context: WorkflowContext) -> WorkflowContext:
        query = js_str(resolve_expression(node.query, context.scope()))
        self._emit(ToolStartedEvent(name=node.name, tool="WebSearch"))
        self._trace("[websearch:%s] Query: %s", node.name, query)

        result = await self.retrieval.search(query, node.max_results, node.provider)

        self._emit(ToolCompletedEvent(name=node.name, results=result))
        return self._record(context, node.name, result, format_search(result))

    async def _web_fetch(self, node: WebFetchNode, context: WorkflowContext) -> WorkflowContext:
        url = js_str(resolve_expression(node.url, context.scope()))
        self._emit(ToolStartedEvent(name=node.name, tool="WebFetch"))
        self._trace("[webfetch:%s] URL: %s", node.name, url)

        result = await self.retrieval.fetch(url, node.max_tokens, node.selector)

        self._emit(ToolCompletedEvent(name=node.name, results=result))
        return self._record(context, node.name, result, format_fetch(result))

    async def _loop(self, node: LoopNode, context: WorkflowContext) -> WorkflowContext:
        scope = context.scope()
        items: list[Any] | None = None
        total = 0
        if node.over is not None:
            resolved = resolve_expression(node.over, scope)
            items = resolved if isinstance(resolved, list) else []
            total = len(items)
        elif node.count is not None:
            count = to_number(resolve_expression(node.count, scope))
            total = max(int(count), 0) if math.isfinite(count) else 0

        self._emit(LoopStartedEvent(name=node.name, total=total))
        self._trace("[loop:%s] %d iterations", node.name, total)

        snapshot = context.context_stack
        shadowed = {key: context.outputs[key] for key in LOOP_VARIABLES if key in context.outputs}
        written: set[str] = set()
        records: list[dict[str, Any]] = []
        current = context

        for index in range(total):
            self._emit(LoopIterationEvent(name=node.name, index=index))
            item = items[index] if items is not None else index

            iteration = current.model_copy(
                update={
                    "context_stack": snapshot,
                    "outputs": {**current.outputs, "item": item, "index": index},
                    "written": frozenset(),
                }
            )
            iteration = await self._run_nodes(node.children, iteration)

            record = {"item": item, "index": index}
            for key, value in iteration.outputs.items():
                if key in iteration.written and key not in LOOP_VARIABLES:
                    record[key] = value
            records.append(record)
            written |= iteration.written
            current = iteration

        outputs = {k: v for k, v in current.outputs.items() if k not in LOOP_VARIABLES}
        outputs.update(shadowed)
        context = current.model_copy(
            update={
                "context_stack": snapshot,
                "outputs": outputs,
                "written": context.written | (written - set(LOOP_VARIABLES)),
            }
        )

        self._emit(LoopCompletedEvent(name=node.name))
        summary = f'[Loop "{node.name}" completed: {total} iterations]\n{pretty_json(records)}'
        return self._record(context, node.name, records, summary)

    async def _if(self, node: IfNode, context: WorkflowContext) -> WorkflowContext:
        result = evaluate_condition(node.condition.raw, context.scope())
        self._emit(ConditionEvaluatedEvent(condition=node.condition.raw, result=result))
        self._trace("[if] %s -> %s", node.condition.raw, result)

        if result:
            return await self._run_nodes(node.children, context)
        if node.else_children:
            return await self._run_nodes(node.else_children, context)
        return context

    async def _set(self, node: SetNode, context: WorkflowContext) -> WorkflowContext:
        value = resolve_expression(node.value, context.scope())
        self._emit(VariableSetEvent(name=node.name))
        self._emit(OutputEvent(name=node.name, value=json_safe(value)))
        self._trace("[set:%s] = %s", node.name, to_display_string(value)[:120])
        return context.with_output(node.name, value)

    async def _log(self, node: LogNode, context: WorkflowContext) -> WorkflowContext:
        message = interpolate(node.content, context.scope())
        logger.log(LOG_LEVELS.get(node.level, logging.INFO), message)
        self._emit(LogEvent(level=node.level, message=message))
        return context

    async def _flow(self, node: FlowNode, context: WorkflowContext) -> WorkflowContext:
        self._emit(FlowStartedEvent(name=node.name, src=node.src))
        self._trace("[flow:%s] Loading %s", node.name, node.src)

        base = self.base_path or Path.cwd()
        path = (base / node.src).resolve()
        if not path.is_file():
            raise SubflowError(node.src, f"file not found: {path}")
        try:
            definition = parse_file(path)
        except OSError as e:
            raise SubflowError(node.src, str(e)) from e

        scope = context.scope()
        inputs = {key: resolve_expression(expr, scope) for key, expr in (node.inputs or {}).items()}

        sub_executor = WorkflowExecutor(
            inputs=inputs,
            model_override=self.model_override,
            verbose=self.verbose,
            on_event=self.on_event,
            base_path=path.parent,
            input_resolver=self._resolver,
            llm=self.llm,
            retrieval=self.retrieval,
            settings=self.settings,
        )
        result = await sub_executor.execute(definition)

        self._emit(FlowCompletedEvent(name=node.name))
        summary = f'[Subflow "{node.name}" results]\n{pretty_json(result)}'
        return self._record(context, node.name, result, summary)

    async def _prompt(self, node: PromptNode, context: WorkflowContext) -> WorkflowContext:
        scope = context.scope()
        message = js_str(resolve_expression(node.message, scope))
        default = resolve_expression(node.default, scope) if node.default is not None else None
        if default is not None:
            default = js_str(default)

        request = PromptRequest(
            name=node.name, message=message, default=default, input_type=node.input_type
        )
        answer = await self._ask(request)
        value = to_number(answer) if node.input_type == "number" else js_str(answer)

        self._emit(InputReceivedEvent(name=node.name, value=json_safe(value)))
        self._trace("[prompt:%s] = %s", node.name, js_str(value))
        return self._record(context, node.name, value, f'[User input "{node.name}": {js_str(value)}]')

    def _select_options(self, node: SelectNode, raw: Any) -> list[SelectOption]:
        if not isinstance(raw, list):
            return []
        options = []
        for option in raw:
            if isinstance(option, str):
                options.append(SelectOption(value=option, label=option))
                continue
            if node.value_key and isinstance(option, dict):
                value = js_str(option.get(node.value_key))
            else:
                value = json.dumps(json_safe(option), separators=(",", ":"), ensure_ascii=False)
            if node.label_key and isinstance(option, dict):
                label = js_str(option.get(node.label_key))
            else:
                label = value
            options.append(SelectOption(value=value, label=label))
        return options

    async def _select(self, node: SelectNode, context: WorkflowContext) -> WorkflowContext:
        scope = context.scope()
        message = js_str(resolve_expression(node.message, scope))
        options = self._select_options(node, resolve_expression(node.options, scope))

        request = SelectRequest(name=node.name, message=message, options=options)
        value = await self._ask(request)

        self._emit(InputReceivedEvent(name=node.name, value=json_safe(value)))
        self._trace("[select:%s] = %s", node.name, to_display_string(value))
        shown = value if isinstance(value, str) else to_display_string(value)
        return self._record(context, node.name, value, f'[User selected "{node.name}": {shown}]')

    async def _confirm(self, node: ConfirmNode, context: WorkflowContext) -> WorkflowContext:
        scope = context.scope()
        message = js_str(resolve_expression(node.message, scope))
        default = True
        if node.default is not None:
            default = as_bool(resolve_expression(node.default, scope))

        request = ConfirmRequest(name=node.name, message=message, default=default)
        value = as_bool(await self._ask(request))

        self._emit(InputReceivedEvent(name=node.name, value=value))
        self._trace("[confirm:%s] = %s", node.name, js_str(value))
        return self._record(context, node.name, value, f'[User confirmed "{node.name}": {js_str(value)}]')


# Step-wise execution


@dataclass(frozen=True)
class Suspended:
    """The run is waiting for an answer to ``request``."""

    request: InputRequest


@dataclass(frozen=True)
class Completed:
    outputs: dict[str, Any]


Step = Suspended | Completed


class ExecutionSession:
    """Drives one run of an executor, pausing at each human-input node.

    The run executes as a background task whose resolver parks the request
    and waits for ``resume``. ``advance`` returns as soon as the run either
    suspends or finishes; an exception raised by the run propagates from
    ``advance``/``resume``.
    """

    def __init__(self, executor: WorkflowExecutor, definition: WorkflowDefinition) -> None:
        self.executor = executor
        self.definition = definition
        self._requests: asyncio.Queue[InputRequest] = asyncio.Queue()
        self._answer: asyncio.Future[Any] | None = None
        self._pending: InputRequest | None = None
        self._task: asyncio.Task[dict[str, Any]] | None = None

    async def _resolve(self, request: InputRequest) -> Any:
        self._answer = asyncio.get_running_loop().create_future()
        await self._requests.put(request)
        return await self._answer

    async def advance(self) -> Step:
        """Run until the next suspension or completion."""
        if self._pending is not None:
            return Suspended(self._pending)
        if self._task is None:
            self._task = asyncio.create_task(self.executor._run(self.definition, self._resolve))

        waiter = asyncio.ensure_future(self._requests.get())
        done, _ = await asyncio.wait({waiter, self._task}, return_when=asyncio.FIRST_COMPLETED)
        if waiter in done:
            self._pending = waiter.result()
            return Suspended(self._pending)

        waiter.cancel()
        return Completed(self._task.result())

    async def resume(self, value: Any) -> Step:
        """Answer the pending request and continue."""
        if self._pending is None or self._answer is None:
            raise ExecutionError("No input request is pending")
        self._pending = None
        self._answer.set_result(value)
        return await self.advance()

    async def cancel(self) -> None:
        """Abandon the run."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task


async def run_headless(executor: WorkflowExecutor, definition: WorkflowDefinition) -> dict[str, Any]:
    """Run with every suspension answered from the request's default.

    Raises:
        MissingInputError: If a Prompt has no default.
    """
    session = executor.start(definition)
    step = await session.advance()
    while isinstance(step, Suspended):
        try:
            answer = default_answer(step.request)
        except MissingInputError:
            await session.cancel()
            raise
        step = await session.resume(answer)
    return step.outputs
