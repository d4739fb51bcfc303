"""Structural validation of parsed workflows.

Checks required props, Structured field types, sub-flow file existence and
unknown components that the parser demoted to prose. Problems are returned
as records; the caller decides whether to abort, usually through
``ValidationResult.raise_for_errors``.
"""

import re
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field
from rich.console import Console

from mdxflow.exceptions import WorkflowValidationError
from mdxflow.models import FIELD_TYPES, FieldDef, WorkflowDefinition
from mdxflow.parser import KNOWN_COMPONENTS

_TAG_RE = re.compile(r"<([A-Z]\w*)")

# Node kinds whose `name` prop is required, with their tag names
_NAMED_KINDS = {
    "generation": "Generation",
    "structured": "Structured",
    "websearch": "WebSearch",
    "webfetch": "WebFetch",
    "loop": "Loop",
    "set": "Set",
    "flow": "Flow",
    "prompt": "Prompt",
    "select": "Select",
    "confirm": "Confirm",
}

_HUMAN_KINDS = {"prompt", "select", "confirm"}


class ValidationError(BaseModel):
    """One validation problem. A record, not an exception."""

    model_config = ConfigDict(frozen=True)

    message: str
    line: int | None = None

    def __str__(self) -> str:
        if self.line is not None:
            return f"line {self.line}: {self.message}"
        return self.message


class ValidationResult(BaseModel):
    """Result of workflow validation.

    Attributes:
        success: Whether validation passed
        errors: Problems that must be fixed before running
    """

    success: bool = Field(..., description="Whether validation passed")
    errors: list[ValidationError] = Field(
        default_factory=list, description="Errors that must be fixed"
    )

    def format(self) -> str:
        """Format validation result for display with Rich."""
        lines: list[str] = []
        if self.success:
            lines.append("[green]✓[/green] Validation passed")
        else:
            lines.append("[red]✗[/red] Validation failed")

        if self.errors:
            lines.append("\n[red bold]Errors:[/red bold]")
            for error in self.errors:
                lines.append(f"  [red]•[/red] {error}")

        return "\n".join(lines)

    def raise_for_errors(self) -> None:
        """Raise WorkflowValidationError if validation failed."""
        if not self.success:
            raise WorkflowValidationError(self.errors)

    def print(self) -> None:
        """Print formatted validation result to stderr."""
        console = Console(stderr=True)
        console.print(self.format(), highlight=False)


class WorkflowValidator:
    """Validates a parsed WorkflowDefinition.

    Checks:
    - Named components have a non-empty ``name``
    - Structured fields use a known type, recursively
    - Flow has ``src``, and the file exists when a base path is known
    - Prompt, Select and Confirm have a ``message``
    - Prose does not contain unknown PascalCase components
    """

    def __init__(self, base_path: Path | str | None = None) -> None:
        """Initialize validator.

        Args:
            base_path: Directory used to resolve Flow ``src`` paths. When
                None, sub-flow files are not checked on disk.
        """
        self.base_path = Path(base_path) if base_path is not None else None

    def validate(self, definition: WorkflowDefinition) -> ValidationResult:
        errors = self.check(definition)
        return ValidationResult(success=not errors, errors=errors)

    def check(self, definition: WorkflowDefinition) -> list[ValidationError]:
        errors: list[ValidationError] = []
        self._check_nodes(definition.nodes, errors)
        return errors

    def _check_nodes(self, nodes: list, errors: list[ValidationError]) -> None:
        for node in nodes:
            kind = node.kind
            if kind in _NAMED_KINDS and not node.name:
                errors.append(
                    ValidationError(message=f"{_NAMED_KINDS[kind]} node is missing required 'name' prop")
                )

            if kind == "structured":
                self._check_fields(node.fields, errors)
            elif kind == "loop":
                self._check_nodes(node.children, errors)
            elif kind == "if":
                self._check_nodes(node.children, errors)
                if node.else_children:
                    self._check_nodes(node.else_children, errors)
            elif kind == "flow":
                self._check_flow(node.src, errors)
            elif kind == "prose":
                for match in _TAG_RE.finditer(node.content):
                    if match.group(1) not in KNOWN_COMPONENTS:
                        errors.append(ValidationError(message=f"Unknown component: <{match.group(1)}>"))

            if kind in _HUMAN_KINDS and not node.message.raw:
                errors.append(
                    ValidationError(message=f"{_NAMED_KINDS[kind]} node is missing required 'message' prop")
                )

    def _check_flow(self, src: str, errors: list[ValidationError]) -> None:
        if not src:
            errors.append(ValidationError(message="Flow node is missing required 'src' prop"))
            return
        if self.base_path is not None and not (self.base_path / src).exists():
            errors.append(ValidationError(message=f"Flow src file not found: {src}"))

    def _check_fields(self, fields: list[FieldDef], errors: list[ValidationError]) -> None:
        for field in fields:
            if field.type not in FIELD_TYPES:
                errors.append(
                    ValidationError(
                        message=(
                            f'Invalid field type: "{field.type}" '
                            "(use one of: text, number, boolean, list, object)"
                        )
                    )
                )
            if field.children:
                self._check_fields(field.children, errors)


def validate(definition: WorkflowDefinition, base_path: Path | str | None = None) -> list[ValidationError]:
    """Validate ``definition``; an empty list means valid."""
    return WorkflowValidator(base_path).check(definition)


def validate_workflow(
    definition: WorkflowDefinition, base_path: Path | str | None = None
) -> ValidationResult:
    return WorkflowValidator(base_path).validate(definition)
