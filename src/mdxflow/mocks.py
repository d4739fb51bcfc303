"""Mock implementations of the executor's collaborators.

Used by ``mdxflow run --dry`` to exercise a workflow without a model, and by
tests to script model responses and inspect the prompts that were sent.
"""

import json
import re
from collections.abc import AsyncIterator
from typing import Any

from mdxflow.exceptions import LLMServiceError
from mdxflow.llm import LLMClient

_SCHEMA_RE = re.compile(r"JSON Schema:\n```json\n(.*?)\n```", re.DOTALL)


def sample_from_schema(schema: dict[str, Any]) -> Any:
    """Build a placeholder value with the shape described by ``schema``."""
    match schema.get("type"):
        case "object":
            return {
                name: sample_from_schema(prop)
                for name, prop in schema.get("properties", {}).items()
            }
        case "array":
            return [sample_from_schema(schema.get("items", {"type": "string"}))]
        case "number":
            return 0
        case "boolean":
            return False
        case _:
            return ""


class MockLLMClient:
    """Mock model client.

    Records every call and answers from a script. ``responses`` are used in
    order; once exhausted, ``default`` is returned. Without a default, a
    placeholder is generated: a JSON sample for Structured prompts, a short
    marker otherwise.
    """

    def __init__(
        self,
        responses: list[str | Exception] | None = None,
        default: str | None = None,
        chunk_size: int = 16,
    ) -> None:
        """Initialize the mock.

        Args:
            responses: Texts to return in call order. An Exception entry is
                raised instead, to simulate a failing call.
            default: Text returned once ``responses`` is exhausted.
            chunk_size: Size of the deltas each response is split into.
        """
        self.responses = list(responses or [])
        self.default = default
        self.chunk_size = max(chunk_size, 1)
        self.calls: list[dict[str, Any]] = []

    @property
    def prompts(self) -> list[str]:
        """The user prompt of each recorded call."""
        return [call["prompt"] for call in self.calls]

    def _placeholder(self, model: str, prompt: str) -> str:
        match = _SCHEMA_RE.search(prompt)
        if match:
            try:
                schema = json.loads(match.group(1))
            except ValueError:
                schema = {"type": "object"}
            return json.dumps(sample_from_schema(schema))
        return f"[dry run: {model} response to {len(prompt)} chars of context]"

    async def stream(
        self,
        model: str,
        messages: list[dict[str, Any]],
        *,
        system_prompt: str = "",
        temperature: float | None = None,
        max_tokens: int | None = None,
        stop: list[str] | None = None,
    ) -> AsyncIterator[str]:
        prompt = "\n\n".join(str(m.get("content", "")) for m in messages if m.get("role") == "user")
        self.calls.append(
            {
                "model": model,
                "prompt": prompt,
                "system_prompt": system_prompt,
                "temperature": temperature,
                "max_tokens": max_tokens,
                "stop": stop,
            }
        )

        if self.responses:
            response = self.responses.pop(0)
        elif self.default is not None:
            response = self.default
        else:
            response = self._placeholder(model, prompt)

        if isinstance(response, Exception):
            if isinstance(response, LLMServiceError):
                raise response
            raise LLMServiceError(f"LLM completion failed: {response}", model=model) from response

        for start in range(0, len(response), self.chunk_size):
            yield response[start : start + self.chunk_size]


# Verify protocol compliance at import time
assert isinstance(MockLLMClient(), LLMClient)
