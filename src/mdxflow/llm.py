"""Language model boundary.

The executor only needs an ordered stream of text deltas. ``LLMClient`` is
that contract; ``LiteLLMClient`` implements it over LiteLLM's streaming
completion API, and ``RetryingLLMClient`` adds tenacity backoff around any
client.
"""

import logging
from collections.abc import AsyncIterator
from typing import Any, NamedTuple, Protocol, runtime_checkable

import litellm
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from mdxflow.exceptions import LLMServiceError

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER = "azure"

# Workflow provider names that LiteLLM spells differently
PROVIDER_ALIASES = {
    "google": "gemini",
    "azure-openai": "azure",
}


class ModelRef(NamedTuple):
    provider: str
    model: str


def parse_model_string(value: str) -> ModelRef:
    """Split ``provider/model``; a bare model name uses the default provider."""
    provider, sep, model = value.partition("/")
    if not sep:
        return ModelRef(DEFAULT_PROVIDER, value)
    return ModelRef(provider, model)


def resolve_model(value: str) -> str:
    """Map a workflow model string to a LiteLLM model id."""
    ref = parse_model_string(value)
    provider = PROVIDER_ALIASES.get(ref.provider, ref.provider)
    return f"{provider}/{ref.model}"


def user_messages(prompt: str) -> list[dict[str, Any]]:
    return [{"role": "user", "content": prompt}]


@runtime_checkable
class LLMClient(Protocol):
    """Streams text deltas for a chat completion."""

    def stream(
        self,
        model: str,
        messages: list[dict[str, Any]],
        *,
        system_prompt: str = "",
        temperature: float | None = None,
        max_tokens: int | None = None,
        stop: list[str] | None = None,
    ) -> AsyncIterator[str]: ...


class LiteLLMClient:
    """LLMClient backed by ``litellm.acompletion(stream=True)``.

    ``model`` is a workflow model string (``azure/gpt-5.2``, ``anthropic/
    claude-sonnet-4``); it is resolved to a LiteLLM id before the call.
    Credentials come from the usual provider environment variables unless
    given explicitly.
    """

    def __init__(
        self,
        api_key: str | None = None,
        api_base: str | None = None,
        default_headers: dict[str, str] | None = None,
    ):
        self._api_key = api_key
        self._api_base = api_base
        self._default_headers = default_headers or {}

    def _build_completion_kwargs(
        self,
        model: str,
        messages: list[dict[str, Any]],
        system_prompt: str,
        temperature: float | None,
        max_tokens: int | None,
        stop: list[str] | None,
    ) -> dict[str, Any]:
        if system_prompt:
            messages = [{"role": "system", "content": system_prompt}, *messages]
        kwargs: dict[str, Any] = {
            "model": resolve_model(model),
            "messages": messages,
            "stream": True,
        }
        if temperature is not None:
            kwargs["temperature"] = temperature
        if max_tokens is not None:
            kwargs["max_tokens"] = max_tokens
        if stop:
            kwargs["stop"] = stop
        if self._api_key:
            kwargs["api_key"] = self._api_key
        if self._api_base:
            kwargs["api_base"] = self._api_base
        if self._default_headers:
            kwargs["extra_headers"] = self._default_headers
        return kwargs

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
        """Yield content deltas as they arrive.

        Raises:
            LLMServiceError: If the request or the stream fails.
        """
        kwargs = self._build_completion_kwargs(
            model, messages, system_prompt, temperature, max_tokens, stop
        )

        try:
            response = await litellm.acompletion(**kwargs)
        except Exception as e:
            raise LLMServiceError(f"LLM completion failed: {e}", model=model) from e

        try:
            async for chunk in response:
                if not chunk.choices:
                    continue
                content = getattr(chunk.choices[0].delta, "content", None)
                if content:
                    yield content
        except Exception as e:
            raise LLMServiceError(f"LLM streaming failed: {e}", model=model) from e


_NO_DELTA = object()


class RetryingLLMClient:
    """Retries a wrapped client with exponential backoff.

    Only failures before the first delta are retried: once text has been
    emitted downstream it cannot be taken back, so a mid-stream failure
    propagates.
    """

    def __init__(self, inner: LLMClient, retries: int = 0, delay_ms: int = 1000) -> None:
        self.inner = inner
        self.retries = retries
        self.delay = delay_ms / 1000

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "Model call failed (attempt %d/%d): %s",
            retry_state.attempt_number,
            self.retries + 1,
            exc,
        )

    async def stream(
        self,
        model: str,
        messages: list[dict[str, Any]],
        **options: Any,
    ) -> AsyncIterator[str]:
        iterator: AsyncIterator[str] | None = None
        first: Any = _NO_DELTA

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.retries + 1),
            wait=wait_exponential(multiplier=self.delay, min=self.delay, max=60),
            retry=retry_if_exception_type(LLMServiceError),
            before_sleep=self._log_retry,
            reraise=True,
        ):
            with attempt:
                iterator = aiter(self.inner.stream(model, messages, **options))
                try:
                    first = await anext(iterator)
                except StopAsyncIteration:
                    first = _NO_DELTA

        if first is _NO_DELTA or iterator is None:
            return
        yield first
        async for delta in iterator:
            yield delta


def build_client(retries: int = 0, retry_delay_ms: int = 1000) -> LLMClient:
    """Default client for a run: LiteLLM, with retries when requested."""
    client: LLMClient = LiteLLMClient()
    if retries > 0:
        client = RetryingLLMClient(client, retries=retries, delay_ms=retry_delay_ms)
    return client
