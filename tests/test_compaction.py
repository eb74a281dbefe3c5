"""Tests for CompactionEngine and the litellm-backed summarizer's mock mode."""

from __future__ import annotations

import pytest

from runledger.compaction.engine import CompactionEngine
from runledger.compaction.prompts import SUMMARY_SECTIONS, SUMMARY_TRUNCATION_MARKER
from runledger.compaction.summarizer import LiteLLMSummarizer
from runledger.errors import SummarizationFailure
from runledger.models.config import CompactionConfig
from runledger.models.message import Message
from tests.conftest import FakeSummarizer


def _messages(n: int) -> list[Message]:
    return [
        Message(id=i + 1, session_id="sess_C", role="user" if i % 2 == 0 else "assistant",
                content=f"m{i + 1}", token_count=10)
        for i in range(n)
    ]


@pytest.fixture
def engine(summarizer):
    return CompactionEngine(CompactionConfig(keep_recent_messages=2), summarizer)


class TestSplit:
    async def test_keeps_two_folds_three(self, engine, summarizer):
        """K=2 over [m1..m5]: fold m1-m3, keep m4 and m5."""
        messages = _messages(5)
        result = await engine.compact(None, messages)

        assert result.split_index == 3
        assert result.compacted_count == 3
        assert [m.content for m in messages[result.split_index:]] == ["m4", "m5"]

        (prompt,) = summarizer.prompts
        assert "[1] USER: m1" in prompt
        assert "[3] USER: m3" in prompt
        assert "m4" not in prompt
        assert "m5" not in prompt

    @pytest.mark.parametrize("n", [0, 1, 2])
    async def test_n_at_most_k_is_noop(self, engine, summarizer, n):
        result = await engine.compact("# Goal\n- keep", _messages(n))
        assert result.compacted_count == 0
        assert result.split_index == 0
        assert result.new_summary == "# Goal\n- keep"
        assert summarizer.prompts == []

    async def test_noop_without_summary_returns_empty(self, engine):
        result = await engine.compact(None, _messages(1))
        assert result.new_summary == ""

    @pytest.mark.parametrize("n,k", [(3, 1), (10, 4), (7, 6)])
    async def test_folds_exactly_n_minus_k(self, summarizer, n, k):
        engine = CompactionEngine(CompactionConfig(keep_recent_messages=k), summarizer)
        result = await engine.compact(None, _messages(n))
        assert result.compacted_count == n - k
        assert n - result.split_index == k


class TestMerge:
    async def test_second_compaction_embeds_first_summary(self, summarizer):
        """The prior summary is carried verbatim into the next merge request."""
        engine = CompactionEngine(CompactionConfig(keep_recent_messages=2), summarizer)
        summarizer.text = "# Goal\n- first summary body"
        first = await engine.compact(None, _messages(4))

        summarizer.text = "# Goal\n- second summary body"
        second = await engine.compact(first.new_summary, _messages(5))

        assert "## Existing Summary" not in summarizer.prompts[0]
        assert first.new_summary in summarizer.prompts[1]
        assert second.new_summary == "# Goal\n- second summary body"

    async def test_output_token_limit_passed(self, engine, summarizer):
        await engine.compact(None, _messages(3))
        assert summarizer.max_output_tokens == [4_000]

    async def test_usage_reported(self, engine):
        result = await engine.compact(None, _messages(3))
        assert result.usage.input == 100
        assert result.usage.output == 20


class TestCap:
    async def test_long_output_truncated(self):
        summarizer = FakeSummarizer(text="z" * 900)
        engine = CompactionEngine(
            CompactionConfig(keep_recent_messages=1, max_summary_length=200), summarizer
        )
        result = await engine.compact(None, _messages(3))
        assert result.new_summary == "z" * 200 + SUMMARY_TRUNCATION_MARKER

    async def test_output_is_trimmed(self, engine, summarizer):
        summarizer.text = "\n\n# Goal\n- x\n\n"
        result = await engine.compact(None, _messages(3))
        assert result.new_summary == "# Goal\n- x"


class TestFailure:
    async def test_summarizer_error_becomes_summarization_failure(self):
        engine = CompactionEngine(
            CompactionConfig(keep_recent_messages=1), FakeSummarizer(fail=True)
        )
        with pytest.raises(SummarizationFailure) as info:
            await engine.compact("# Goal\n- old", _messages(3))
        assert isinstance(info.value.__cause__, RuntimeError)

    @pytest.mark.parametrize("text", ["", "   ", "\n\n\t"])
    async def test_blank_summary_is_a_failure(self, text):
        summarizer = FakeSummarizer(text=text)
        engine = CompactionEngine(CompactionConfig(keep_recent_messages=1), summarizer)
        with pytest.raises(SummarizationFailure, match="empty summary"):
            await engine.compact("# Goal\n- old", _messages(3))
        assert len(summarizer.prompts) == 1


class TestLiteLLMSummarizerMock:
    async def test_mock_mode_returns_all_sections(self, monkeypatch):
        monkeypatch.setenv("RUNLEDGER_MOCK_LLM", "1")
        engine = CompactionEngine(
            CompactionConfig(keep_recent_messages=1), LiteLLMSummarizer("mock/model")
        )
        result = await engine.compact(None, _messages(3))

        for title, _hint in SUMMARY_SECTIONS:
            assert f"# {title}" in result.new_summary
        assert "[1] USER: m1" in result.new_summary
        assert result.compacted_count == 2
