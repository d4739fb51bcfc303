"""Run command implementation."""

import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import typer
import yaml

from mdxflow.commands.check import EXIT_PARSE, EXIT_RUNTIME, EXIT_VALIDATION, load_workflow
from mdxflow.config import get_settings
from mdxflow.display import (
    ConsoleEventRenderer,
    err_console,
    print_error,
    print_info,
    print_outputs,
    print_warning,
)
from mdxflow.events import BaseEvent, EventSink
from mdxflow.exceptions import MdxflowError, ParseError
from mdxflow.executor import WorkflowExecutor
from mdxflow.human import ConsoleResolver, InputResolver, PresetResolver
from mdxflow.llm import LLMClient, build_client
from mdxflow.log import configure_logging
from mdxflow.mocks import MockLLMClient
from mdxflow.models import WorkflowDefinition

OUTPUT_FORMATS = ("pretty", "json", "yaml")


def parse_input_pairs(pairs: list[str]) -> dict[str, Any]:
    """Parse ``--input key=value`` pairs; values are JSON-decoded when possible."""
    values: dict[str, Any] = {}
    for pair in pairs:
        key, sep, raw = pair.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Invalid --input '{pair}': expected key=value")
        try:
            values[key.strip()] = json.loads(raw)
        except ValueError:
            values[key.strip()] = raw
    return values


def load_inputs_file(path: Path) -> dict[str, Any]:
    """Load an ``--inputs`` file (JSON, or YAML for .yaml/.yml)."""
    text = path.read_text(encoding="utf-8")
    if path.suffix in (".yaml", ".yml"):
        data = yaml.safe_load(text)
    else:
        data = json.loads(text)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain an object of input values")
    return data


def missing_inputs(definition: WorkflowDefinition, supplied: dict[str, Any]) -> list[str]:
    return [
        input_def.name
        for input_def in definition.inputs
        if input_def.required and input_def.default is None and supplied.get(input_def.name) is None
    ]


def _stream_sink(event: BaseEvent) -> None:
    typer.echo(event.model_dump_json())


def run_command(
    file: Path,
    input_pairs: list[str],
    inputs_file: Path | None,
    output: str,
    stream: bool,
    model: str | None,
    interactive: bool | None,
    verbose: bool,
    retry: int | None,
    retry_delay: int | None,
    dry: bool,
) -> None:
    """Run a workflow.

    This function contains the business logic for the run command.
    """
    configure_logging(verbose)

    if output not in OUTPUT_FORMATS:
        print_error(f"Unknown output format '{output}' (expected one of: {', '.join(OUTPUT_FORMATS)})")
        raise SystemExit(EXIT_RUNTIME)

    definition = load_workflow(file)

    try:
        supplied = load_inputs_file(inputs_file) if inputs_file else {}
        supplied.update(parse_input_pairs(input_pairs))
    except (OSError, ValueError) as e:
        print_error(str(e))
        raise SystemExit(EXIT_RUNTIME) from e

    missing = missing_inputs(definition, supplied)
    if missing:
        for name in missing:
            print_error(f"Missing required input: {name}")
        raise SystemExit(EXIT_VALIDATION)

    if interactive is None:
        interactive = sys.stdin.isatty() and output == "pretty" and not stream

    settings = get_settings()
    llm: LLMClient
    if dry:
        llm = MockLLMClient()
        if not stream:
            print_info("Dry run: model calls return placeholders")
    else:
        llm = build_client(
            retry if retry is not None else settings.retries,
            retry_delay if retry_delay is not None else settings.retry_delay_ms,
        )

    sink: EventSink | None = None
    if stream:
        sink = _stream_sink
    elif interactive:
        sink = ConsoleEventRenderer()

    resolver: InputResolver = ConsoleResolver(err_console) if interactive else PresetResolver(supplied)

    executor = WorkflowExecutor(
        inputs=supplied,
        model_override=model,
        verbose=verbose,
        on_event=sink,
        base_path=file.parent,
        input_resolver=resolver,
        llm=llm,
        settings=settings,
    )

    try:
        outputs = asyncio.run(executor.execute(definition))
    except ParseError as e:
        print_error(f"Parse error: {e}")
        raise SystemExit(EXIT_PARSE) from e
    except MdxflowError as e:
        print_error(e.message)
        raise SystemExit(EXIT_RUNTIME) from e
    except KeyboardInterrupt:
        print_warning("Interrupted")
        raise SystemExit(EXIT_RUNTIME)
    except Exception as e:
        print_error(f"Runtime error: {e}")
        raise SystemExit(EXIT_RUNTIME) from e

    if not stream:
        print_outputs(outputs, output)
