"""Summarization collaborators used by the compaction engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Protocol

import structlog

from runledger.compaction.prompts import SUMMARY_SECTIONS
from runledger.models.message import TokenUsage

_logger = structlog.get_logger("runledger.compaction.summarizer")


@dataclass
class SummaryOutput:
    """Generated summary text and the usage of the call that produced it."""

    text: str
    usage: TokenUsage = field(default_factory=TokenUsage)


class Summarizer(Protocol):
    """An opaque text-generation capability that produces summaries."""

    async def summarize(self, prompt: str, max_output_tokens: int) -> SummaryOutput: ...


class LiteLLMSummarizer:
    """
    Summarizer backed by ``litellm.acompletion``.

    Set ``RUNLEDGER_MOCK_LLM=1`` to return a deterministic section skeleton
    built from the prompt instead of calling a provider (examples, offline runs).
    """

    def __init__(self, model: str, temperature: float = 0.2) -> None:
        self._model = model
        self._temperature = temperature

    @property
    def model(self) -> str:
        return self._model

    async def summarize(self, prompt: str, max_output_tokens: int) -> SummaryOutput:
        if os.environ.get("RUNLEDGER_MOCK_LLM") == "1":
            return _mock_summary(prompt)

        import litellm

        response = await litellm.acompletion(
            model=self._model,
            messages=[{"role": "user", "content": prompt}],
            max_tokens=max_output_tokens,
            temperature=self._temperature,
        )
        text = response.choices[0].message.content or ""
        usage = getattr(response, "usage", None)
        token_usage = TokenUsage(
            input=getattr(usage, "prompt_tokens", 0) or 0,
            output=getattr(usage, "completion_tokens", 0) or 0,
            total=getattr(usage, "total_tokens", 0) or 0,
        )
        _logger.debug(
            "summary_generated",
            model=self._model,
            length=len(text),
            tokens=token_usage.effective_total(),
        )
        return SummaryOutput(text=text, usage=token_usage)


def _mock_summary(prompt: str) -> SummaryOutput:
    """Echo the transcript lines into the Tool Results/Facts sections."""
    transcript = ""
    if "## Messages to Compact" in prompt:
        transcript = prompt.split("## Messages to Compact", 1)[1].split("## Task", 1)[0]
    lines = [ln.strip() for ln in transcript.splitlines() if ln.strip()]
    bullets = "\n".join(f"- {ln[:120]}" for ln in lines[:8]) or "None"

    sections = []
    for title, _hint in SUMMARY_SECTIONS:
        body = bullets if title == "Facts / Constraints" else "None"
        sections.append(f"# {title}\n{body}")
    text = "\n\n".join(sections)
    return SummaryOutput(
        text=text,
        usage=TokenUsage(input=len(prompt) // 4, output=len(text) // 4),
    )
