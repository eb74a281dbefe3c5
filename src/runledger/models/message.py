"""Core message, content part and result models for runledger."""

from __future__ import annotations

import time
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter

Role = Literal["user", "assistant", "system"]

# ── Content Parts ──────────────────────────────────────────────────────────────


class TextPart(BaseModel):
    """A plain text segment of a message."""

    type: Literal["text"] = "text"
    text: str


class ToolCallPart(BaseModel):
    """A tool invocation requested by the assistant."""

    type: Literal["tool-call"] = "tool-call"
    tool_name: str
    tool_call_id: str
    args: dict[str, Any] = Field(default_factory=dict)


class ToolResultPart(BaseModel):
    """The result of a tool invocation, fed back to the model."""

    type: Literal["tool-result"] = "tool-result"
    tool_name: str
    tool_call_id: str
    result: Any = None
    is_error: bool = False


class ImagePart(BaseModel):
    """An image attachment, either inline base64 data or a URL."""

    type: Literal["image"] = "image"
    media_type: str = "image/png"
    data: str | None = None
    url: str | None = None


class FilePart(BaseModel):
    """A file attachment carried inline."""

    type: Literal["file"] = "file"
    filename: str | None = None
    media_type: str = "application/octet-stream"
    data: str = ""


# Discriminated union; the ``type`` field is the discriminator key.
ContentPart = Annotated[
    TextPart | ToolCallPart | ToolResultPart | ImagePart | FilePart,
    Field(discriminator="type"),
]

MessageContent = str | list[ContentPart]

content_adapter: TypeAdapter[MessageContent] = TypeAdapter(MessageContent)


# ── Token Usage ────────────────────────────────────────────────────────────────


class TokenUsage(BaseModel):
    """Token counts for a single model response or cumulative usage."""

    input: int = 0
    output: int = 0
    total: int = 0

    def effective_total(self) -> int:
        """Return total, computing from parts when the explicit total is zero."""
        if self.total:
            return self.total
        return self.input + self.output

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input=self.input + other.input,
            output=self.output + other.output,
            total=self.effective_total() + other.effective_total(),
        )


# ── Ledger Records ─────────────────────────────────────────────────────────────


class Message(BaseModel):
    """
    A single turn stored in the ledger.

    ``id`` is assigned by the store on append and is strictly increasing
    within a session; it is the ordering key for every read and for pruning.
    """

    id: int
    session_id: str
    role: Role
    content: MessageContent
    created_at: int = Field(default_factory=lambda: int(time.time()))
    """Unix timestamp in seconds."""
    token_count: int | None = None
    """Caller-supplied token count. None contributes zero to the session total."""

    def text_content(self) -> str:
        """Concatenate the text of this message, ignoring non-text parts."""
        if isinstance(self.content, str):
            return self.content
        return "".join(part.text for part in self.content if isinstance(part, TextPart))


class Run(BaseModel):
    """Externally observable progress record for one agent step."""

    id: int
    session_id: str
    step_no: int
    status: Literal["running", "completed", "failed"] = "running"
    error: str | None = None
    created_at: int = Field(default_factory=lambda: int(time.time()))


# ── Result Types ───────────────────────────────────────────────────────────────


class CompactionResult(BaseModel):
    """
    The result of a compaction run.

    ``split_index`` is the position in the input message list separating the
    folded prefix from the ``K`` messages kept verbatim.
    """

    new_summary: str
    split_index: int
    compacted_count: int
    usage: TokenUsage = Field(default_factory=TokenUsage)


class SessionState(BaseModel):
    """Snapshot of an orchestrated session's in-memory state."""

    id: str
    summary: str | None = None
    total_tokens: int = 0


class CommandResult(BaseModel):
    """Outcome of a command executed in the sandbox."""

    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
