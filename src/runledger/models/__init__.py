"""runledger data models."""

from runledger.models.config import (
    AgentConfig,
    CompactionConfig,
    RunledgerConfig,
    SandboxConfig,
    StoreConfig,
)
from runledger.models.message import (
    CommandResult,
    CompactionResult,
    ContentPart,
    FilePart,
    ImagePart,
    Message,
    MessageContent,
    Role,
    Run,
    SessionState,
    TextPart,
    TokenUsage,
    ToolCallPart,
    ToolResultPart,
)

__all__ = [
    # Config
    "AgentConfig",
    "CompactionConfig",
    "RunledgerConfig",
    "SandboxConfig",
    "StoreConfig",
    # Content parts
    "TextPart",
    "ToolCallPart",
    "ToolResultPart",
    "ImagePart",
    "FilePart",
    "ContentPart",
    "MessageContent",
    # Records
    "Role",
    "Message",
    "Run",
    "TokenUsage",
    # Results
    "CompactionResult",
    "SessionState",
    "CommandResult",
]
