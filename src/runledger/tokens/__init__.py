"""Token budget tracking."""

from runledger.tokens.budget import TokenBudget, estimate_summary_tokens

__all__ = ["TokenBudget", "estimate_summary_tokens"]
