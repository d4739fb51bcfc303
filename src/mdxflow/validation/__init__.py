"""Workflow validation.

The validator walks a parsed WorkflowDefinition and reports structural
problems as ValidationError records rather than raising.
"""

from mdxflow.validation.validator import (
    ValidationError,
    ValidationResult,
    WorkflowValidator,
    validate,
    validate_workflow,
)

__all__ = [
    "ValidationError",
    "ValidationResult",
    "WorkflowValidator",
    "validate",
    "validate_workflow",
]
