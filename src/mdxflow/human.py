"""Input resolvers for Prompt, Select and Confirm nodes.

A resolver is an async callable that receives an ``InputRequest`` and
returns the user's answer. The executor coerces whatever comes back
(numbers for ``type="number"`` prompts, booleans for Confirm), so resolvers
may return raw strings.

Usage:
    executor = WorkflowExecutor(inputs={}, input_resolver=ConsoleResolver())
    executor = WorkflowExecutor(inputs={}, input_resolver=PresetResolver({"name": "Ada"}))
"""

from collections.abc import Awaitable, Callable
from typing import Any

from rich.console import Console
from rich.prompt import Confirm, IntPrompt, Prompt

from mdxflow.exceptions import MissingInputError
from mdxflow.expressions import truthy
from mdxflow.models import ConfirmRequest, InputRequest, PromptRequest, SelectRequest

InputResolver = Callable[[InputRequest], Awaitable[Any]]

TRUE_STRINGS = frozenset({"true", "yes", "y", "1", "on"})


def as_bool(value: Any) -> bool:
    """Coerce a Confirm answer: strings must spell yes, anything else uses truthiness."""
    if isinstance(value, str):
        return value.strip().lower() in TRUE_STRINGS
    return truthy(value)


def default_answer(request: InputRequest) -> Any:
    """Answer a request without asking anyone.

    Raises:
        MissingInputError: For a Prompt that has no default.
    """
    match request:
        case PromptRequest(default=None):
            raise MissingInputError(request.name)
        case PromptRequest():
            return request.default
        case SelectRequest():
            return request.options[0].value if request.options else ""
        case ConfirmRequest():
            return request.default
    raise TypeError(f"Unknown input request: {request!r}")


class PresetResolver:
    """Answers from a fixed mapping, falling back to each request's default."""

    def __init__(self, values: dict[str, Any] | None = None) -> None:
        self.values = dict(values or {})

    async def __call__(self, request: InputRequest) -> Any:
        if request.name not in self.values:
            return default_answer(request)
        value = self.values[request.name]
        if isinstance(request, ConfirmRequest):
            return as_bool(value)
        return value


class ConsoleResolver:
    """Asks on the terminal with rich prompts."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    async def __call__(self, request: InputRequest) -> Any:
        match request:
            case PromptRequest():
                if request.default is not None:
                    return Prompt.ask(request.message, default=request.default, console=self.console)
                return Prompt.ask(request.message, console=self.console)
            case SelectRequest():
                return self._select(request)
            case ConfirmRequest():
                return Confirm.ask(request.message, default=request.default, console=self.console)
        raise TypeError(f"Unknown input request: {request!r}")

    def _select(self, request: SelectRequest) -> str:
        if not request.options:
            return ""
        self.console.print(f"[bold]{request.message}[/bold]")
        for number, option in enumerate(request.options, 1):
            line = f"  [cyan]{number}.[/cyan] {option.label}"
            if option.description:
                line += f" [dim]{option.description}[/dim]"
            self.console.print(line)
        choice = IntPrompt.ask(
            "Choice",
            choices=[str(n) for n in range(1, len(request.options) + 1)],
            default=1,
            console=self.console,
        )
        return request.options[choice - 1].value
