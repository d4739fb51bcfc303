"""Tests for step-wise execution with ExecutionSession."""

import pytest

from mdxflow.exceptions import ExecutionError, LLMServiceError, MissingInputError
from mdxflow.executor import Completed, Suspended, run_headless
from mdxflow.mocks import MockLLMClient
from mdxflow.models import ConfirmRequest, PromptRequest
from mdxflow.parser import parse

ASK_THEN_GENERATE = """<Prompt name="who" message="Name?" />
Hello {who}.
<Generation name="g" />"""


@pytest.mark.asyncio
async def test_suspend_and_resume(make_executor, mock_llm) -> None:
    session = make_executor().start(parse(ASK_THEN_GENERATE))

    step = await session.advance()
    assert step == Suspended(PromptRequest(name="who", message="Name?"))
    assert mock_llm.calls == []

    # Advancing again while suspended returns the same request
    assert await session.advance() == step

    step = await session.resume("Ada")
    assert isinstance(step, Completed)
    assert step.outputs == {"who": "Ada", "g": "response 1"}
    assert mock_llm.prompts == ['[User input "who": Ada]\n\nHello Ada.']


@pytest.mark.asyncio
async def test_multiple_suspensions(make_executor) -> None:
    definition = parse(
        """<Prompt name="who" message="Name?" default="Ada" />
<Confirm name="ok" message={`Greet ${who}?`} />"""
    )
    session = make_executor().start(definition)

    first = await session.advance()
    assert isinstance(first, Suspended)
    assert first.request.default == "Ada"

    second = await session.resume("Grace")
    assert second == Suspended(ConfirmRequest(name="ok", message="Greet Grace?", default=True))

    done = await session.resume("n")
    assert done == Completed({"who": "Grace", "ok": False})


@pytest.mark.asyncio
async def test_run_without_human_nodes_completes_immediately(make_executor) -> None:
    session = make_executor().start(parse('<Generation name="g" />'))

    assert await session.advance() == Completed({"g": "response 1"})


@pytest.mark.asyncio
async def test_resume_without_pending_request(make_executor) -> None:
    session = make_executor().start(parse(ASK_THEN_GENERATE))

    with pytest.raises(ExecutionError, match="No input request is pending"):
        await session.resume("Ada")


@pytest.mark.asyncio
async def test_failure_propagates_from_resume(make_executor) -> None:
    llm = MockLLMClient(responses=[RuntimeError("down")])
    session = make_executor(llm=llm).start(parse(ASK_THEN_GENERATE))

    await session.advance()
    with pytest.raises(LLMServiceError, match="down"):
        await session.resume("Ada")


@pytest.mark.asyncio
async def test_cancel_abandons_the_run(make_executor, mock_llm) -> None:
    session = make_executor().start(parse(ASK_THEN_GENERATE))

    await session.advance()
    await session.cancel()

    assert mock_llm.calls == []


@pytest.mark.asyncio
async def test_run_headless_answers_from_defaults(make_executor) -> None:
    definition = parse(
        """<Prompt name="who" message="Name?" default="Ada" />
<Select name="color" message="Color?" options={["red", "blue"]} />
<Confirm name="ok" message="Sure?" default={false} />"""
    )
    outputs = await run_headless(make_executor(), definition)

    assert outputs == {"who": "Ada", "color": "red", "ok": False}


@pytest.mark.asyncio
async def test_run_headless_requires_prompt_defaults(make_executor, mock_llm) -> None:
    with pytest.raises(MissingInputError) as exc_info:
        await run_headless(make_executor(), parse(ASK_THEN_GENERATE))

    assert exc_info.value.name == "who"
    assert mock_llm.calls == []
