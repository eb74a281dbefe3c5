"""Turn loop of the coding agent: model steps, tool calls, post-turn compaction."""

from __future__ import annotations

import json
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import structlog

from runledger.errors import SummarizationFailure
from runledger.models.config import AgentConfig
from runledger.models.message import (
    ContentPart,
    MessageContent,
    TextPart,
    TokenUsage,
    ToolCallPart,
    ToolResultPart,
)
from runledger.session import AgentSession, make_id
from runledger.tools import TOOL_SPECS, ToolBox

Completion = Callable[..., Awaitable[Any]]
TokenCounter = Callable[[str], int]


@dataclass
class AgentReply:
    """Outcome of one user turn."""

    text: str
    finish_reason: str
    """``"stop"``, ``"max_steps"`` or ``"error"``."""
    steps: int = 0
    tool_calls: list[str] = field(default_factory=list)
    """Names of the tools invoked during the turn, in call order."""
    usage: TokenUsage = field(default_factory=TokenUsage)
    compacted: bool = False


@dataclass
class _Step:
    text: str
    tool_calls: list[ToolCallPart]
    usage: TokenUsage


async def _litellm_completion(**kwargs: Any) -> Any:
    import litellm

    return await litellm.acompletion(**kwargs)


def _parse_completion(response: Any) -> _Step:
    """Extract text, tool calls and usage from a chat-completion response."""
    message = response.choices[0].message
    calls: list[ToolCallPart] = []
    for tc in getattr(message, "tool_calls", None) or []:
        raw = tc.function.arguments or "{}"
        try:
            args = json.loads(raw)
        except json.JSONDecodeError:
            args = None
        if not isinstance(args, dict):
            args = {"_raw": raw}
        calls.append(
            ToolCallPart(tool_name=tc.function.name, tool_call_id=tc.id, args=args)
        )
    usage = getattr(response, "usage", None)
    return _Step(
        text=message.content or "",
        tool_calls=calls,
        usage=TokenUsage(
            input=getattr(usage, "prompt_tokens", 0) or 0,
            output=getattr(usage, "completion_tokens", 0) or 0,
            total=getattr(usage, "total_tokens", 0) or 0,
        ),
    )


class CodingAgent:
    """
    Drives one session: a user turn becomes up to ``max_steps`` model steps.

    Each step is recorded as a :class:`~runledger.models.message.Run`. Tool
    calls go through the :class:`~runledger.tools.ToolBox` and their results
    are persisted as the next turn. After every step the session's post-turn
    compaction hook runs; a failed summarization is logged and retried on a
    later turn, it never fails the user's turn.

    Set ``RUNLEDGER_MOCK_LLM=1`` to run without a provider: messages starting
    with ``!`` are executed as a shell command, anything else is echoed.

    Example::

        agent = CodingAgent(session, ToolBox(sandbox), config.agent)
        reply = await agent.respond("Create hello.py and run it")
        print(reply.text)
    """

    def __init__(
        self,
        session: AgentSession,
        toolbox: ToolBox,
        config: AgentConfig | None = None,
        *,
        completion: Completion | None = None,
        count_tokens: TokenCounter | None = None,
    ) -> None:
        self._session = session
        self._toolbox = toolbox
        self._config = config or AgentConfig()
        self._completion = completion or _litellm_completion
        self._count_tokens = count_tokens
        self._logger = structlog.get_logger("runledger.agent").bind(session_id=session.id)

    @property
    def session(self) -> AgentSession:
        return self._session

    def _count(self, text: str) -> int:
        if not text:
            return 0
        if self._count_tokens is not None:
            return self._count_tokens(text)
        import litellm

        return litellm.token_counter(model=self._config.model, text=text)

    async def respond(self, user_text: str) -> AgentReply:
        """
        Process one user message to completion.

        Raises:
            StorageError: The ledger could not be written. Model failures are
                reported in the reply (``finish_reason="error"``) instead.
        """
        session = self._session
        self._logger.info("turn_started", user_message=user_text[:200])
        await session.add_turn("user", user_text, self._count(user_text))

        reply = AgentReply(text="", finish_reason="max_steps")
        for step_no in range(1, self._config.max_steps + 1):
            reply.steps = step_no
            run = await session.start_run(step_no)
            context = await session.build_context(preamble=self._config.system_prompt)

            try:
                step = await self._generate(context)
            except Exception as exc:
                self._logger.error("llm_call_failed", step=step_no, error=str(exc))
                await session.finish_run(run, "failed", str(exc))
                reply.text = f"[Error: {exc}]"
                reply.finish_reason = "error"
                return reply

            reply.usage = reply.usage + step.usage
            content: MessageContent = step.text
            if step.tool_calls:
                parts: list[ContentPart] = [TextPart(text=step.text)] if step.text else []
                content = [*parts, *step.tool_calls]
            output_tokens = step.usage.output or self._count(
                step.text + json.dumps([c.args for c in step.tool_calls])
            )
            await session.add_turn("assistant", content, output_tokens)

            if step.tool_calls:
                await self._run_tools(step.tool_calls, reply)

            await session.finish_run(run, "completed")
            reply.compacted = await self._after_turn() or reply.compacted

            if not step.tool_calls:
                reply.text = step.text
                reply.finish_reason = "stop"
                break
        else:
            self._logger.warning("max_steps_reached", max_steps=self._config.max_steps)
            reply.text = reply.text or "(Stopped after reaching the step limit)"

        self._logger.info(
            "turn_completed",
            steps=reply.steps,
            tool_calls=len(reply.tool_calls),
            finish_reason=reply.finish_reason,
            total_tokens=session.total_tokens,
        )
        return reply

    async def _run_tools(self, calls: list[ToolCallPart], reply: AgentReply) -> None:
        results: list[ContentPart] = []
        for call in calls:
            outcome = await self._toolbox.dispatch(call.tool_name, call.args)
            payload = outcome.model_dump()
            results.append(
                ToolResultPart(
                    tool_name=call.tool_name,
                    tool_call_id=call.tool_call_id,
                    result=payload,
                    is_error=not payload.get("success", False),
                )
            )
            reply.tool_calls.append(call.tool_name)
        tokens = self._count(json.dumps([p.result for p in results], default=str))
        await self._session.add_turn("user", results, tokens)

    async def _after_turn(self) -> bool:
        try:
            return await self._session.check_and_compact()
        except SummarizationFailure as exc:
            self._logger.warning("compaction_deferred", error=str(exc))
            return False

    async def _generate(self, messages: list[dict[str, Any]]) -> _Step:
        if os.environ.get("RUNLEDGER_MOCK_LLM") == "1":
            return self._mock_step(messages)
        response = await self._completion(
            model=self._config.model,
            messages=messages,
            tools=TOOL_SPECS,
            max_tokens=self._config.max_output_tokens,
        )
        return _parse_completion(response)

    def _mock_step(self, messages: list[dict[str, Any]]) -> _Step:
        """Deterministic stand-in for the model (RUNLEDGER_MOCK_LLM=1)."""
        last = messages[-1] if messages else {"role": "user", "content": ""}
        prompt_tokens = self._count(json.dumps(messages, default=str))

        if last["role"] == "tool":
            text = f"[Mock LLM] Tool finished:\n{str(last['content'])[:500]}"
            return _Step(text, [], TokenUsage(input=prompt_tokens, output=self._count(text)))

        user = str(last.get("content") or "")
        if user.startswith("!"):
            call = ToolCallPart(
                tool_name="run_shell",
                tool_call_id=make_id("call"),
                args={"command": user[1:].strip()},
            )
            return _Step("", [call], TokenUsage(input=prompt_tokens, output=self._count(user)))

        text = f"[Mock LLM response to: {user[:100]}]"
        return _Step(text, [], TokenUsage(input=prompt_tokens, output=self._count(text)))
