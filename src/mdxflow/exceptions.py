"""mdxflow exception hierarchy.

Usage:
    from mdxflow.exceptions import MdxflowError, ParseError

    try:
        definition = parse_file(path)
    except ParseError as e:
        print(f"line {e.line}: {e.message}")
    except MdxflowError as e:
        print(f"mdxflow error: {e}")

Validation problems are not exceptions: the validator returns a list of
``ValidationError`` records (see ``mdxflow.validation``) and the caller
decides whether to abort, raising ``WorkflowValidationError`` if it does.
"""

from pathlib import Path


class MdxflowError(Exception):
    """Base exception for all mdxflow errors."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


# Document errors


class ParseError(MdxflowError):
    """Malformed workflow document.

    Raised for unclosed component tags, broken tags and malformed
    frontmatter. Fatal: nothing has executed when it is raised.
    """

    def __init__(self, message: str, line: int | None = None, path: str | Path | None = None) -> None:
        self.line = line
        self.path = str(path) if path is not None else None
        super().__init__(message)

    def __str__(self) -> str:
        location = ""
        if self.path:
            location = self.path
        if self.line is not None:
            location = f"{location}:{self.line}" if location else f"line {self.line}"
        return f"{location}: {self.message}" if location else self.message

    def with_path(self, path: str | Path) -> "ParseError":
        return ParseError(self.message, self.line, path)


class WorkflowValidationError(MdxflowError):
    """Raised by callers that choose to abort on validation errors."""

    def __init__(self, errors: list) -> None:
        self.errors = errors
        count = len(errors)
        super().__init__(f"Workflow has {count} validation error{'s' if count != 1 else ''}")


# Runtime errors


class ExecutionError(MdxflowError):
    """Base class for failures during ``execute()``."""

    pass


class MissingInputError(ExecutionError):
    """A human-input node has no resolver answer and no default."""

    def __init__(self, name: str, reason: str | None = None) -> None:
        self.name = name
        super().__init__(reason or f'No value provided for required input "{name}"')


class SubflowError(ExecutionError):
    """A sub-flow file could not be found or read."""

    def __init__(self, src: str, reason: str) -> None:
        self.src = src
        self.reason = reason
        super().__init__(f"Sub-flow '{src}': {reason}")


class LLMServiceError(ExecutionError):
    """The language model client failed to start or finish a stream."""

    def __init__(self, message: str, model: str | None = None) -> None:
        self.model = model
        super().__init__(message)
