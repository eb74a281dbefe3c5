"""Cumulative compaction: fold older history into a bounded summary.

The engine is pure policy around one external call:

1. **Split**: with ``K = keep_recent_messages`` and ``N`` messages, the
   first ``N - K`` are folded and the ``K`` most recent stay verbatim.
   ``N <= K`` is a no-op.
2. **Merge**: a single prompt carries the prior summary (if any) plus the
   rendered older messages; see :mod:`runledger.compaction.prompts`.
3. **Cap**: the returned text is trimmed and hard-truncated to
   ``max_summary_length``. Without this ceiling repeated merges would grow
   the summary without bound.

The engine never touches storage. A failing summarizer raises
:class:`~runledger.errors.SummarizationFailure` and the caller's summary and
ledger stay exactly as they were.
"""

from __future__ import annotations

import time
from collections.abc import Sequence

import structlog

from runledger.compaction.prompts import build_compaction_prompt, cap_summary
from runledger.compaction.summarizer import Summarizer
from runledger.errors import SummarizationFailure
from runledger.models.config import CompactionConfig
from runledger.models.message import CompactionResult, Message, TokenUsage


class CompactionEngine:
    """
    Decides the verbatim/summarise split and produces the replacement summary.

    Example::

        engine = CompactionEngine(CompactionConfig(keep_recent_messages=2), summarizer)
        result = await engine.compact(existing_summary, messages)
        # messages[result.split_index:] are the ones kept verbatim
    """

    def __init__(self, config: CompactionConfig, summarizer: Summarizer) -> None:
        self._config = config
        self._summarizer = summarizer
        self._logger = structlog.get_logger("runledger.compaction")

    @property
    def keep_count(self) -> int:
        return self._config.keep_recent_messages

    def split_index(self, message_count: int) -> int:
        """Position of the first message kept verbatim; 0 when nothing is folded."""
        if message_count <= self.keep_count:
            return 0
        return message_count - self.keep_count

    async def compact(
        self,
        existing_summary: str | None,
        messages: Sequence[Message],
    ) -> CompactionResult:
        """
        Fold all but the ``K`` most recent messages into a new cumulative summary.

        Args:
            existing_summary: The current summary, or None before the first compaction.
            messages: The full ordered message list.

        Returns:
            CompactionResult with the capped summary, split index and folded count.

        Raises:
            SummarizationFailure: If the summarizer call fails or returns blank text.
        """
        split = self.split_index(len(messages))
        if split == 0:
            self._logger.info(
                "compaction_skipped_not_enough_messages",
                messages=len(messages),
                keep=self.keep_count,
            )
            return CompactionResult(
                new_summary=existing_summary or "",
                split_index=0,
                compacted_count=0,
                usage=TokenUsage(),
            )

        to_fold = messages[:split]
        prompt = build_compaction_prompt(
            existing_summary, to_fold, max_chars=self._config.max_message_chars
        )

        self._logger.info(
            "compaction_started",
            total_messages=len(messages),
            to_compact=len(to_fold),
            to_keep=len(messages) - split,
            has_existing_summary=bool(existing_summary),
        )
        start = time.monotonic()

        try:
            output = await self._summarizer.summarize(
                prompt, self._config.max_summary_output_tokens
            )
        except Exception as exc:
            self._logger.error("compaction_summarizer_failed", error=str(exc))
            raise SummarizationFailure(f"Summarization failed: {exc}") from exc

        if not output.text or not output.text.strip():
            # A blank reply never replaces the prior summary.
            self._logger.error("compaction_summary_empty", to_compact=len(to_fold))
            raise SummarizationFailure("Summarizer returned an empty summary")

        raw_length = len(output.text.strip())
        new_summary = cap_summary(output.text, self._config.max_summary_length)
        if raw_length > self._config.max_summary_length:
            self._logger.warning(
                "summary_truncated",
                original_length=raw_length,
                max_length=self._config.max_summary_length,
            )

        self._logger.info(
            "compaction_summarised",
            compacted=len(to_fold),
            summary_length=len(new_summary),
            tokens=output.usage.effective_total(),
            elapsed_ms=round((time.monotonic() - start) * 1000, 1),
        )
        return CompactionResult(
            new_summary=new_summary,
            split_index=split,
            compacted_count=len(to_fold),
            usage=output.usage,
        )
