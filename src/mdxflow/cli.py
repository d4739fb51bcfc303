"""mdxflow CLI - Main entry point.

Two commands:
- check: Parse and validate a workflow document
- run: Execute a workflow document
"""

from pathlib import Path
from typing import Annotated, Optional

import typer

from mdxflow import __version__
from mdxflow.commands import check_command, run_command

app = typer.Typer(
    help="mdxflow - Run markdown workflows.\n\nProse accumulates context; components call the model.",
    no_args_is_help=True,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"mdxflow {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-V",
            callback=version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
) -> None:
    """mdxflow - Run markdown workflows."""
    pass


@app.command()
def check(
    file: Annotated[Path, typer.Argument(help="Workflow document (.mdx or .md)")],
) -> None:
    """Parse and validate a workflow.

    Examples:
        mdxflow check research.mdx
    """
    check_command(file)


@app.command()
def run(
    file: Annotated[Path, typer.Argument(help="Workflow document (.mdx or .md)")],
    input_pairs: Annotated[
        Optional[list[str]],
        typer.Option("--input", "-i", help="Input value as key=value (repeatable)"),
    ] = None,
    inputs_file: Annotated[
        Optional[Path],
        typer.Option("--inputs", help="JSON or YAML file of input values"),
    ] = None,
    output: Annotated[
        str, typer.Option("--output", "-o", help="Output format: pretty, json or yaml")
    ] = "pretty",
    stream: Annotated[
        bool, typer.Option("--stream", help="Write every event as an NDJSON line")
    ] = False,
    model: Annotated[
        Optional[str],
        typer.Option("--model", "-m", help="Model for every call (provider/model)"),
    ] = None,
    interactive: Annotated[
        Optional[bool],
        typer.Option(
            "--interactive/--no-interactive",
            help="Ask for Prompt/Select/Confirm answers (default: when attached to a terminal)",
        ),
    ] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Log the execution trace")] = False,
    retry: Annotated[
        Optional[int], typer.Option("--retry", min=0, help="Retries for a failed model call")
    ] = None,
    retry_delay: Annotated[
        Optional[int],
        typer.Option("--retry-delay", min=0, help="Initial retry backoff in milliseconds"),
    ] = None,
    dry: Annotated[
        bool, typer.Option("--dry", help="Run without a model (placeholder responses)")
    ] = False,
) -> None:
    """Run a workflow.

    Examples:
        mdxflow run research.mdx --input topic="tides"
        mdxflow run research.mdx --inputs inputs.json --output json
        mdxflow run research.mdx --dry        # No model calls
        mdxflow run research.mdx --stream     # NDJSON events
    """
    run_command(
        file,
        input_pairs or [],
        inputs_file,
        output,
        stream,
        model,
        interactive,
        verbose,
        retry,
        retry_delay,
        dry,
    )


if __name__ == "__main__":
    app()
