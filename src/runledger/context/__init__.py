"""Model-input context assembly."""

from runledger.context.builder import (
    SUMMARY_HEADER,
    BuiltContext,
    build_context,
    to_provider_messages,
)

__all__ = ["SUMMARY_HEADER", "BuiltContext", "build_context", "to_provider_messages"]
