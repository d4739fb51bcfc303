"""Rich display utilities for the mdxflow CLI.

Results go to stdout so ``--output json`` can be piped; status messages,
progress and errors go to stderr.
"""

import json
from typing import Any

import typer
import yaml
from rich.console import Console
from rich.markup import escape

from mdxflow.events import (
    BaseEvent,
    ErrorEvent,
    EventType,
    FlowStartedEvent,
    GenerationChunkEvent,
    GenerationStartedEvent,
    LoopIterationEvent,
    LoopStartedEvent,
    StructuredStartedEvent,
    ToolStartedEvent,
)
from mdxflow.expressions import json_safe

console = Console()
err_console = Console(stderr=True)


def print_success(message: str) -> None:
    """Print a success message."""
    err_console.print(f"[bold green]✓[/] {message}")


def print_error(message: str) -> None:
    """Print an error message."""
    err_console.print(f"[bold red]✗[/] {message}")


def print_warning(message: str) -> None:
    """Print a warning message."""
    err_console.print(f"[bold yellow]⚠[/] {message}")


def print_info(message: str) -> None:
    """Print an info message."""
    err_console.print(f"[bold blue]ℹ[/] {message}")


def print_outputs(outputs: dict[str, Any], output_format: str = "pretty") -> None:
    """Print run outputs as pretty sections, JSON or YAML."""
    data = json_safe(outputs)
    match output_format:
        case "json":
            typer.echo(json.dumps(data, indent=2, ensure_ascii=False))
        case "yaml":
            typer.echo(yaml.safe_dump(data, sort_keys=False, allow_unicode=True), nl=False)
        case _:
            for key, value in data.items():
                console.rule(f"[bold]{escape(key)}[/]", align="left")
                if isinstance(value, str):
                    console.print(value, markup=False, highlight=False)
                else:
                    console.print_json(json.dumps(value, ensure_ascii=False))
            console.print()


class ConsoleEventRenderer:
    """Live console rendering of a run.

    Streams generation text as it arrives and prints a line for each node
    that starts. Used by ``mdxflow run`` in interactive mode.
    """

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or err_console
        self._streaming: str | None = None

    def __call__(self, event: BaseEvent) -> None:
        """Handle an event by printing to console."""
        if event.event_type != EventType.GENERATION_CHUNK:
            self._end_stream()

        match event.event_type:
            case EventType.RUN_STARTED:
                self.console.print(f"[bold blue]▶[/] Running [bold]{escape(event.workflow)}[/]")  # type: ignore[attr-defined]
            case EventType.GENERATION_STARTED | EventType.STRUCTURED_STARTED:
                self._handle_model_started(event)  # type: ignore[arg-type]
            case EventType.GENERATION_CHUNK:
                self._handle_chunk(event)  # type: ignore[arg-type]
            case EventType.TOOL_STARTED:
                self._handle_tool_started(event)  # type: ignore[arg-type]
            case EventType.LOOP_STARTED:
                self._handle_loop_started(event)  # type: ignore[arg-type]
            case EventType.LOOP_ITERATION:
                self._handle_loop_iteration(event)  # type: ignore[arg-type]
            case EventType.FLOW_STARTED:
                self._handle_flow_started(event)  # type: ignore[arg-type]
            case EventType.ERROR:
                self._handle_error(event)  # type: ignore[arg-type]
            case EventType.RUN_COMPLETED:
                self.console.print("[bold green]✓[/] Done")
            case _:
                pass

    def _end_stream(self) -> None:
        if self._streaming is not None:
            self.console.print()
            self._streaming = None

    def _handle_model_started(self, event: GenerationStartedEvent | StructuredStartedEvent) -> None:
        kind = "Structured" if event.event_type == EventType.STRUCTURED_STARTED else "Generation"
        self.console.print(
            f"[cyan]●[/] {kind} [bold]{escape(event.name)}[/] [dim]({escape(event.model)})[/]"
        )

    def _handle_chunk(self, event: GenerationChunkEvent) -> None:
        if self._streaming != event.name:
            self._end_stream()
            self._streaming = event.name
        self.console.print(event.content, end="", markup=False, highlight=False, style="dim")

    def _handle_tool_started(self, event: ToolStartedEvent) -> None:
        self.console.print(f"[cyan]●[/] {event.tool} [bold]{escape(event.name)}[/]")

    def _handle_loop_started(self, event: LoopStartedEvent) -> None:
        self.console.print(f"[cyan]↻[/] Loop [bold]{escape(event.name)}[/] ({event.total} iterations)")

    def _handle_loop_iteration(self, event: LoopIterationEvent) -> None:
        self.console.print(f"  [dim]iteration {event.index + 1}[/]")

    def _handle_flow_started(self, event: FlowStartedEvent) -> None:
        self.console.print(f"[cyan]→[/] Flow [bold]{escape(event.name)}[/] [dim]{escape(event.src)}[/]")

    def _handle_error(self, event: ErrorEvent) -> None:
        self.console.print(f"[bold red]✗[/] {escape(event.node)}: {escape(event.message)}")
