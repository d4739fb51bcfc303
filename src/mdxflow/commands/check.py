"""Check command implementation."""

from pathlib import Path

from mdxflow.display import print_error, print_success
from mdxflow.exceptions import ParseError, WorkflowValidationError
from mdxflow.models import WorkflowDefinition
from mdxflow.parser import parse_file
from mdxflow.validation import validate_workflow

EXIT_RUNTIME = 1
EXIT_PARSE = 2
EXIT_VALIDATION = 3


def load_workflow(file: Path) -> WorkflowDefinition:
    """Parse and validate ``file``, exiting with the matching code on failure."""
    if not file.is_file():
        print_error(f"File not found: {file}")
        raise SystemExit(EXIT_RUNTIME)

    try:
        definition = parse_file(file)
    except ParseError as e:
        print_error(f"Parse error: {e}")
        raise SystemExit(EXIT_PARSE) from e
    except OSError as e:
        print_error(f"Cannot read {file}: {e}")
        raise SystemExit(EXIT_RUNTIME) from e

    result = validate_workflow(definition, base_path=file.parent)
    try:
        result.raise_for_errors()
    except WorkflowValidationError as e:
        result.print()
        raise SystemExit(EXIT_VALIDATION) from e

    return definition


def check_command(file: Path) -> None:
    """Parse and validate a workflow without running it."""
    definition = load_workflow(file)
    print_success(
        f"Valid workflow with {definition.count_nodes()} nodes, {len(definition.inputs)} inputs"
    )
