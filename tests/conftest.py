"""Shared pytest fixtures for mdxflow tests.

Provides a scripted model client, isolated settings and an executor factory.
"""

from pathlib import Path
from typing import Any, Callable

import pytest

from mdxflow.config import MdxflowSettings, clear_settings_cache
from mdxflow.events import BaseEvent
from mdxflow.executor import WorkflowExecutor
from mdxflow.mocks import MockLLMClient
from mdxflow.retrieval import PlaceholderRetrieval


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """Keep user config files and MDXFLOW_* variables out of every test."""
    monkeypatch.setenv("MDXFLOW_CONFIG_FILE", str(tmp_path / "no-config.yaml"))
    for name in (
        "MDXFLOW_DEFAULT_MODEL",
        "MDXFLOW_SYSTEM_PROMPT",
        "MDXFLOW_RETRIES",
        "MDXFLOW_RETRY_DELAY_MS",
        "MDXFLOW_FETCH_BACKEND",
        "MDXFLOW_FETCH_TIMEOUT",
    ):
        monkeypatch.delenv(name, raising=False)
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def settings() -> MdxflowSettings:
    return MdxflowSettings(default_model="test/default-model")


@pytest.fixture
def mock_llm() -> MockLLMClient:
    """Model client answering "response N" for the N-th call."""
    return MockLLMClient(responses=[f"response {n}" for n in range(1, 21)])


@pytest.fixture
def events() -> list[BaseEvent]:
    return []


@pytest.fixture
def make_executor(
    mock_llm: MockLLMClient, settings: MdxflowSettings, events: list[BaseEvent]
) -> Callable[..., WorkflowExecutor]:
    """Factory for executors wired to the mock client and the events list."""

    def factory(**kwargs: Any) -> WorkflowExecutor:
        kwargs.setdefault("llm", mock_llm)
        kwargs.setdefault("settings", settings)
        kwargs.setdefault("on_event", events.append)
        kwargs.setdefault("retrieval", PlaceholderRetrieval())
        return WorkflowExecutor(**kwargs)

    return factory


@pytest.fixture
def write_workflow(tmp_path: Path) -> Callable[[str, str], Path]:
    """Write a workflow document under tmp_path and return its path."""

    def writer(name: str, content: str) -> Path:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return path

    return writer
