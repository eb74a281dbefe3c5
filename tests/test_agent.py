"""Tests for the CodingAgent turn loop."""

from __future__ import annotations

import json
from pathlib import Path
from types import SimpleNamespace

import pytest
import pytest_asyncio

from runledger.agent import CodingAgent, _parse_completion
from runledger.models.config import AgentConfig
from runledger.models.message import ToolCallPart, ToolResultPart
from runledger.sandbox.manager import SandboxManager
from runledger.session import AgentSession
from runledger.tools import TOOL_SPECS, ToolBox
from tests.conftest import FakeSummarizer


def _response(text=None, tool_calls=(), completion_tokens=1):
    calls = [
        SimpleNamespace(
            id=call_id,
            function=SimpleNamespace(name=name, arguments=json.dumps(args)),
        )
        for call_id, name, args in tool_calls
    ]
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=text, tool_calls=calls))],
        usage=SimpleNamespace(
            prompt_tokens=10,
            completion_tokens=completion_tokens,
            total_tokens=10 + completion_tokens,
        ),
    )


class ScriptedCompletion:
    """Returns queued responses in order; repeats the last one when exhausted."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls: list[dict] = []

    async def __call__(self, **kwargs):
        self.calls.append(kwargs)
        if isinstance(self.responses[0], Exception):
            raise self.responses[0]
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]


@pytest.fixture
def toolbox(config, fake_docker):
    workspace = config.sandbox.host_workspace
    Path(workspace).mkdir(parents=True, exist_ok=True)
    return ToolBox(SandboxManager(config.sandbox, client=fake_docker))


@pytest_asyncio.fixture
async def session(config, ledger, summarizer, event_bus):
    return await AgentSession.load_or_create(
        config=config, ledger=ledger, summarizer=summarizer, event_bus=event_bus
    )


def _agent(session, toolbox, completion, config=None, count=lambda text: 1):
    return CodingAgent(session, toolbox, config, completion=completion, count_tokens=count)


class TestRespond:
    async def test_plain_reply_stops(self, session, toolbox, ledger):
        completion = ScriptedCompletion(_response("Hello there"))
        reply = await _agent(session, toolbox, completion).respond("hi")

        assert reply.text == "Hello there"
        assert reply.finish_reason == "stop"
        assert reply.steps == 1
        assert reply.tool_calls == []

        (call,) = completion.calls
        assert call["tools"] == TOOL_SPECS
        assert call["messages"][0]["role"] == "system"
        assert call["messages"][-1] == {"role": "user", "content": "hi"}

        stored = await ledger.all(session.id)
        assert [(m.role, m.content) for m in stored] == [
            ("user", "hi"),
            ("assistant", "Hello there"),
        ]
        (run,) = await ledger.list_runs(session.id)
        assert run.status == "completed"

    async def test_tool_call_round_trip(self, session, toolbox, ledger, fake_docker):
        completion = ScriptedCompletion(
            _response(tool_calls=[("call_1", "run_shell", {"command": "echo hi"})]),
            _response("The command printed hi."),
        )
        reply = await _agent(session, toolbox, completion).respond("say hi in the shell")

        assert reply.finish_reason == "stop"
        assert reply.steps == 2
        assert reply.tool_calls == ["run_shell"]
        assert reply.text == "The command printed hi."
        assert fake_docker.exec_commands == [["/bin/sh", "-c", "echo hi"]]

        tool_msg = completion.calls[1]["messages"][-1]
        assert tool_msg["role"] == "tool"
        assert tool_msg["tool_call_id"] == "call_1"
        assert json.loads(tool_msg["content"])["stdout"] == "hi\n"

        stored = await ledger.all(session.id)
        assert [m.role for m in stored] == ["user", "assistant", "user", "assistant"]
        (call_part,) = stored[1].content
        assert isinstance(call_part, ToolCallPart)
        (result_part,) = stored[2].content
        assert isinstance(result_part, ToolResultPart)
        assert result_part.is_error is False
        assert len(await ledger.list_runs(session.id)) == 2

    async def test_failed_tool_is_flagged(self, session, toolbox, ledger):
        completion = ScriptedCompletion(
            _response(tool_calls=[("call_1", "read_file", {"path": "missing.txt"})]),
            _response("It does not exist."),
        )
        await _agent(session, toolbox, completion).respond("read missing.txt")
        stored = await ledger.all(session.id)
        (result_part,) = stored[2].content
        assert result_part.is_error is True
        assert result_part.result["error"] == "File not found: missing.txt"

    async def test_step_limit(self, session, toolbox):
        completion = ScriptedCompletion(
            _response(tool_calls=[("call_x", "run_shell", {"command": "echo again"})])
        )
        reply = await _agent(
            session, toolbox, completion, AgentConfig(max_steps=2)
        ).respond("loop forever")

        assert reply.finish_reason == "max_steps"
        assert reply.steps == 2
        assert reply.text == "(Stopped after reaching the step limit)"
        assert reply.tool_calls == ["run_shell", "run_shell"]

    async def test_model_error_is_reported(self, session, toolbox, ledger):
        completion = ScriptedCompletion(RuntimeError("rate limited"))
        reply = await _agent(session, toolbox, completion).respond("hi")

        assert reply.finish_reason == "error"
        assert reply.text == "[Error: rate limited]"
        (run,) = await ledger.list_runs(session.id)
        assert run.status == "failed"
        assert run.error == "rate limited"
        # The user's turn is still recorded.
        assert [m.role for m in await ledger.all(session.id)] == ["user"]

    async def test_usage_accumulates(self, session, toolbox):
        completion = ScriptedCompletion(
            _response(tool_calls=[("c1", "run_shell", {"command": "echo a"})], completion_tokens=3),
            _response("done", completion_tokens=4),
        )
        reply = await _agent(session, toolbox, completion).respond("go")
        assert reply.usage.input == 20
        assert reply.usage.output == 7


class TestPostTurnCompaction:
    async def test_compaction_runs_after_turn(self, session, toolbox, ledger, summarizer):
        for i in range(3):
            await session.add_turn("user", f"earlier {i}", token_count=10)
        completion = ScriptedCompletion(_response("ok", completion_tokens=80))

        reply = await _agent(session, toolbox, completion).respond("next")

        assert reply.compacted is True
        assert session.summary == summarizer.text
        assert [m.content for m in await ledger.all(session.id)] == ["next", "ok"]

    async def test_summarization_failure_is_deferred(self, config, ledger, toolbox):
        failing = FakeSummarizer(fail=True)
        session = await AgentSession.load_or_create(
            config=config, ledger=ledger, summarizer=failing
        )
        for i in range(3):
            await session.add_turn("user", f"earlier {i}", token_count=10)
        completion = ScriptedCompletion(_response("ok", completion_tokens=80))

        reply = await _agent(session, toolbox, completion).respond("next")

        assert reply.finish_reason == "stop"
        assert reply.compacted is False
        assert session.summary is None
        assert len(await ledger.all(session.id)) == 5


class TestMockMode:
    async def test_bang_runs_shell_command(self, session, toolbox, monkeypatch, fake_docker):
        monkeypatch.setenv("RUNLEDGER_MOCK_LLM", "1")
        agent = _agent(session, toolbox, completion=None)

        reply = await agent.respond("!echo hi")

        assert reply.tool_calls == ["run_shell"]
        assert reply.finish_reason == "stop"
        assert reply.text.startswith("[Mock LLM] Tool finished:")
        assert "hi" in reply.text
        assert fake_docker.exec_commands == [["/bin/sh", "-c", "echo hi"]]

    async def test_plain_message_is_echoed(self, session, toolbox, monkeypatch):
        monkeypatch.setenv("RUNLEDGER_MOCK_LLM", "1")
        reply = await _agent(session, toolbox, completion=None).respond("hello")
        assert reply.text == "[Mock LLM response to: hello]"


class TestParseCompletion:
    def test_unparseable_arguments_are_preserved(self):
        response = _response(tool_calls=[("c1", "run_shell", {})])
        response.choices[0].message.tool_calls[0].function.arguments = "{not json"
        step = _parse_completion(response)
        assert step.tool_calls[0].args == {"_raw": "{not json"}
        assert step.text == ""
