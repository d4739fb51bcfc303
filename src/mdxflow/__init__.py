"""mdxflow - Run markdown workflows.

Markdown documents with embedded components are parsed into a workflow and
executed top to bottom, feeding the accumulated prose to a language model.
"""

from mdxflow.exceptions import (
    ExecutionError,
    LLMServiceError,
    MdxflowError,
    MissingInputError,
    ParseError,
    SubflowError,
    WorkflowValidationError,
)

__version__ = "0.1.0"

__all__ = [
    # Base exception
    "MdxflowError",
    # Document errors
    "ParseError",
    "WorkflowValidationError",
    # Runtime errors
    "ExecutionError",
    "LLMServiceError",
    "MissingInputError",
    "SubflowError",
    "__version__",
]
