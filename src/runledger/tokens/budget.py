"""Token budget tracking: threshold checks and summary cost estimation.

runledger does not tokenize. Message token counts are supplied by the caller
and stored on the ledger; a message appended without a count contributes zero.
The only estimate made here is the context cost of the cumulative summary,
which uses a fixed characters-per-token ratio so it stays constant-time.
"""

from __future__ import annotations

import math

from runledger.models.config import CompactionConfig


def estimate_summary_tokens(summary: str | None, chars_per_token: int = 4) -> int:
    """
    Estimate the token cost of a summary from its length.

    Args:
        summary: The summary text, or None.
        chars_per_token: Size-to-token ratio.

    Returns:
        ``ceil(len(summary) / chars_per_token)``; 0 for an empty or missing summary.
    """
    if not summary:
        return 0
    return math.ceil(len(summary) / chars_per_token)


class TokenBudget:
    """
    Threshold policy for a session's running token total.

    Example::

        budget = TokenBudget(CompactionConfig(max_tokens=100_000, compact_at_percent=75))
        budget.threshold               # 75_000
        budget.should_compact(80_000)  # True
    """

    def __init__(self, config: CompactionConfig) -> None:
        self._config = config

    @property
    def threshold(self) -> int:
        """Token total at which compaction is triggered."""
        return self._config.trigger_tokens

    def should_compact(self, total_tokens: int) -> bool:
        """Return True once *total_tokens* has reached the trigger threshold."""
        return total_tokens >= self.threshold

    def summary_cost(self, summary: str | None) -> int:
        """Estimated token cost of *summary* under the configured ratio."""
        return estimate_summary_tokens(summary, self._config.summary_chars_per_token)

    def recompute(self, summary: str | None, remaining_tokens: int) -> int:
        """Token total after a compaction: summary estimate plus the kept messages."""
        return self.summary_cost(summary) + remaining_tokens
