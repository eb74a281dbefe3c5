"""Merge-prompt construction for cumulative summarisation.

Messages are rendered to a compact transcript: text is used verbatim, every
other content variant becomes a short bracketed placeholder, and each
message is capped at a fixed number of characters. The prompt size therefore
depends on the amount of conversation, never on attachment payloads.
"""

from __future__ import annotations

from collections.abc import Sequence
from functools import singledispatch
from typing import Any

from runledger.models.message import (
    FilePart,
    ImagePart,
    Message,
    TextPart,
    ToolCallPart,
    ToolResultPart,
)

MESSAGE_TRUNCATION_MARKER = "...[truncated]"
SUMMARY_TRUNCATION_MARKER = "\n\n[Summary truncated due to length]"

SUMMARY_SECTIONS: tuple[tuple[str, str], ...] = (
    ("Goal", "What is the user trying to achieve? What is the main objective or task?"),
    ("Current Plan", "What steps or approach have been planned or are being followed?"),
    ("Key Decisions", "Important choices made, approaches selected, rejected alternatives."),
    ("Facts / Constraints", "Technical details, requirements, limitations, environment info."),
    ("Tool Results", "Important outputs from tool calls, file operations, command results."),
    ("Open Questions", "Unresolved issues, pending decisions, things needing clarification."),
)

_RULES = """\
RULES:
1. Keep it concise but preserve every critical fact, path, command and decision.
2. Focus on technical facts, not conversational fluff.
3. {merge_rule}
4. Keep every section heading. If a section has nothing to report, write "None".
5. Use bullet points.
6. Keep the summary under 2000 words.
"""


# ── Part renderers ─────────────────────────────────────────────────────────────


@singledispatch
def render_part(part: Any) -> str:
    """Render a single content part for the merge prompt."""
    raise TypeError(f"Cannot render content part of type {type(part).__name__}")


@render_part.register
def _render_text(part: TextPart) -> str:
    return part.text


@render_part.register
def _render_tool_call(part: ToolCallPart) -> str:
    return f"[Tool Call: {part.tool_name}(...)]"


@render_part.register
def _render_tool_result(part: ToolResultPart) -> str:
    suffix = " (error)" if part.is_error else ""
    return f"[Tool Result from {part.tool_name}{suffix}]"


@render_part.register
def _render_image(part: ImagePart) -> str:
    return "[Image]"


@render_part.register
def _render_file(part: FilePart) -> str:
    return f"[File: {part.filename}]" if part.filename else "[File]"


def render_content(message: Message) -> str:
    """Render a message's content (plain or structured) as transcript text."""
    if isinstance(message.content, str):
        return message.content
    return "\n".join(render_part(part) for part in message.content)


def render_message(message: Message, index: int, max_chars: int = 2000) -> str:
    """
    Render one transcript entry: ``[index] ROLE: content``.

    Content longer than *max_chars* is cut and suffixed with
    :data:`MESSAGE_TRUNCATION_MARKER`.
    """
    content = render_content(message)
    if len(content) > max_chars:
        content = content[:max_chars] + MESSAGE_TRUNCATION_MARKER
    return f"[{index}] {message.role.upper()}: {content}"


def render_transcript(messages: Sequence[Message], max_chars: int = 2000) -> str:
    """Render messages as a numbered transcript (1-based)."""
    return "\n\n".join(
        render_message(msg, i + 1, max_chars=max_chars) for i, msg in enumerate(messages)
    )


def summary_template() -> str:
    """The fixed section skeleton every summary must follow."""
    return "\n\n".join(f"# {title}\n[{hint}]" for title, hint in SUMMARY_SECTIONS)


def build_compaction_prompt(
    existing_summary: str | None,
    messages: Sequence[Message],
    max_chars: int = 2000,
) -> str:
    """
    Build the single merge request sent to the summarizer.

    When a prior summary exists it is embedded verbatim ahead of the new
    messages, so repeated compactions carry earlier information forward.

    Args:
        existing_summary: The current cumulative summary, if any.
        messages: The older messages being folded.
        max_chars: Per-message character cap.

    Returns:
        The prompt text.
    """
    has_summary = bool(existing_summary and existing_summary.strip())

    lines = ["You are compacting a conversation history to save context space."]
    if has_summary:
        lines.append(
            "There is an existing summary from previous compactions, and new messages "
            "that must be merged into it.\n"
        )
        lines.append(f"## Existing Summary\n\n{existing_summary}\n")
    else:
        lines.append("This is the first compaction.\n")

    lines.append(f"## Messages to Compact\n\n{render_transcript(messages, max_chars)}\n")

    task = (
        "MERGES the existing summary with the new messages"
        if has_summary
        else "summarizes all the messages"
    )
    merge_rule = (
        "Merge the existing summary with the new messages; do not duplicate entries."
        if has_summary
        else "Extract the key information from the messages."
    )
    lines.append(
        f"## Task\n\nCreate a NEW summary that {task}. Use this EXACT structure:\n\n"
        f"{summary_template()}\n\n---\n\n{_RULES.format(merge_rule=merge_rule)}\n"
        "Generate the summary now:"
    )
    return "\n".join(lines)


def cap_summary(text: str, max_length: int) -> str:
    """
    Trim a generated summary and enforce the hard length ceiling.

    Summaries longer than *max_length* are cut to exactly *max_length*
    characters and :data:`SUMMARY_TRUNCATION_MARKER` is appended.
    """
    text = text.strip()
    if len(text) > max_length:
        return text[:max_length] + SUMMARY_TRUNCATION_MARKER
    return text
