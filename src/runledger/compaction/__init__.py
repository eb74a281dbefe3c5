"""runledger compaction components."""

from runledger.compaction.engine import CompactionEngine
from runledger.compaction.prompts import (
    MESSAGE_TRUNCATION_MARKER,
    SUMMARY_SECTIONS,
    SUMMARY_TRUNCATION_MARKER,
    build_compaction_prompt,
    cap_summary,
    render_message,
    render_part,
)
from runledger.compaction.summarizer import LiteLLMSummarizer, Summarizer, SummaryOutput

__all__ = [
    "CompactionEngine",
    "LiteLLMSummarizer",
    "Summarizer",
    "SummaryOutput",
    "MESSAGE_TRUNCATION_MARKER",
    "SUMMARY_SECTIONS",
    "SUMMARY_TRUNCATION_MARKER",
    "build_compaction_prompt",
    "cap_summary",
    "render_message",
    "render_part",
]
