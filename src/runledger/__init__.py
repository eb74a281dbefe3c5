"""
runledger: bounded conversation memory and a crash-tolerant sandbox for coding agents.

Primary entry point::

    from runledger import AgentSession, RunledgerConfig

    async with AgentSession.open(config=RunledgerConfig.from_env()) as session:
        await session.add_turn("user", "Hello!", token_count=3)
        context = await session.build_context(preamble="You are a coding assistant.")
        ...
        await session.check_and_compact()
"""

from runledger.agent import AgentReply, CodingAgent
from runledger.compaction import CompactionEngine, LiteLLMSummarizer, Summarizer, SummaryOutput
from runledger.errors import (
    CommandTimeoutError,
    ConfigurationError,
    RunledgerError,
    SandboxError,
    SandboxUnavailable,
    SessionNotFoundError,
    StorageError,
    SummarizationFailure,
)
from runledger.events.bus import EventBus, RunledgerEvent
from runledger.logging import configure_logging
from runledger.models import (
    AgentConfig,
    CommandResult,
    CompactionConfig,
    CompactionResult,
    FilePart,
    ImagePart,
    Message,
    RunledgerConfig,
    SandboxConfig,
    SessionState,
    StoreConfig,
    TextPart,
    TokenUsage,
    ToolCallPart,
    ToolResultPart,
)
from runledger.sandbox import SandboxManager, SandboxState
from runledger.session import AgentSession, make_id
from runledger.store import MessageLedger, StorePool
from runledger.tokens import TokenBudget
from runledger.tools import ToolBox

__version__ = "0.1.0"

__all__ = [
    # Core
    "AgentSession",
    "CodingAgent",
    "AgentReply",
    "make_id",
    # Components
    "MessageLedger",
    "StorePool",
    "TokenBudget",
    "CompactionEngine",
    "LiteLLMSummarizer",
    "Summarizer",
    "SummaryOutput",
    "SandboxManager",
    "SandboxState",
    "ToolBox",
    # Config
    "RunledgerConfig",
    "CompactionConfig",
    "StoreConfig",
    "SandboxConfig",
    "AgentConfig",
    "configure_logging",
    # Models
    "Message",
    "TextPart",
    "ToolCallPart",
    "ToolResultPart",
    "ImagePart",
    "FilePart",
    "TokenUsage",
    "CompactionResult",
    "SessionState",
    "CommandResult",
    # Events
    "EventBus",
    "RunledgerEvent",
    # Errors
    "RunledgerError",
    "ConfigurationError",
    "StorageError",
    "SessionNotFoundError",
    "SummarizationFailure",
    "SandboxError",
    "SandboxUnavailable",
    "CommandTimeoutError",
]
