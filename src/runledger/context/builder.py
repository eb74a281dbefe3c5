"""Context window assembly for the turn-generation model."""

from __future__ import annotations

import json
from collections.abc import Sequence
from dataclasses import dataclass, field
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

SUMMARY_HEADER = "# Previous Conversation Summary"

ProviderMessage = dict[str, Any]


@dataclass
class BuiltContext:
    """The assembled, ordered model input for one turn."""

    messages: list[ProviderMessage] = field(default_factory=list)
    has_summary: bool = False
    message_count: int = 0
    """Number of ledger messages included (excludes preamble and summary blocks)."""


@dataclass
class _Rendered:
    """Provider fragments collected from one message's parts."""

    texts: list[str] = field(default_factory=list)
    images: list[dict[str, Any]] = field(default_factory=list)
    tool_calls: list[dict[str, Any]] = field(default_factory=list)
    tool_results: list[ProviderMessage] = field(default_factory=list)


@singledispatch
def _convert_part(part: Any, out: _Rendered) -> None:
    raise TypeError(f"Cannot convert content part of type {type(part).__name__}")


@_convert_part.register
def _convert_text(part: TextPart, out: _Rendered) -> None:
    out.texts.append(part.text)


@_convert_part.register
def _convert_tool_call(part: ToolCallPart, out: _Rendered) -> None:
    out.tool_calls.append(
        {
            "id": part.tool_call_id,
            "type": "function",
            "function": {"name": part.tool_name, "arguments": json.dumps(part.args)},
        }
    )


@_convert_part.register
def _convert_tool_result(part: ToolResultPart, out: _Rendered) -> None:
    content = part.result
    if not isinstance(content, str):
        content = json.dumps(content, default=str)
    out.tool_results.append(
        {"role": "tool", "tool_call_id": part.tool_call_id, "content": content}
    )


@_convert_part.register
def _convert_image(part: ImagePart, out: _Rendered) -> None:
    url = part.url or f"data:{part.media_type};base64,{part.data or ''}"
    out.images.append({"type": "image_url", "image_url": {"url": url}})


@_convert_part.register
def _convert_file(part: FilePart, out: _Rendered) -> None:
    out.texts.append(f"[File: {part.filename}]" if part.filename else "[File]")


def to_provider_messages(message: Message) -> list[ProviderMessage]:
    """
    Convert one ledger message to chat-completion messages.

    Plain text maps 1:1. Structured content is split by variant: text and
    images form the message body, tool calls become ``tool_calls`` entries on
    an assistant message, and every tool result becomes its own ``tool``
    message. Files are referenced by name only.
    """
    if isinstance(message.content, str):
        return [{"role": message.role, "content": message.content}]

    parts = _Rendered()
    for part in message.content:
        _convert_part(part, parts)

    out: list[ProviderMessage] = []
    body_text = "\n".join(parts.texts)
    if parts.images:
        blocks: list[dict[str, Any]] = []
        if body_text:
            blocks.append({"type": "text", "text": body_text})
        out.append({"role": message.role, "content": [*blocks, *parts.images]})
    elif body_text or parts.tool_calls:
        out.append({"role": message.role, "content": body_text or None})
    if parts.tool_calls:
        if not out:
            out.append({"role": message.role, "content": None})
        out[-1]["tool_calls"] = parts.tool_calls
    out.extend(parts.tool_results)
    return out


def _demote_orphan_results(out: list[ProviderMessage]) -> list[ProviderMessage]:
    """Turn tool results whose call was compacted away into plain user text."""
    seen: set[str] = set()
    fixed: list[ProviderMessage] = []
    for msg in out:
        for call in msg.get("tool_calls") or []:
            seen.add(call["id"])
        if msg["role"] == "tool" and msg["tool_call_id"] not in seen:
            fixed.append({"role": "user", "content": f"[Tool Result]\n{msg['content']}"})
        else:
            fixed.append(msg)
    return fixed


def build_context(
    messages: Sequence[Message],
    summary: str | None = None,
    preamble: str | None = None,
) -> BuiltContext:
    """
    Assemble the exact ordered input for the turn-generation model.

    Order: optional preamble (system), the cumulative summary wrapped as a
    labelled prior-context block (system), then every message in
    chronological order. Tool results whose originating call now lives only
    in the summary are demoted to user text so providers accept the sequence.
    """
    out: list[ProviderMessage] = []
    if preamble:
        out.append({"role": "system", "content": preamble})
    if summary:
        out.append({"role": "system", "content": f"{SUMMARY_HEADER}\n\n{summary}"})
    body: list[ProviderMessage] = []
    for message in messages:
        body.extend(to_provider_messages(message))
    out.extend(_demote_orphan_results(body))
    return BuiltContext(messages=out, has_summary=bool(summary), message_count=len(messages))
