"""Tests for provider-message context assembly."""

from __future__ import annotations

import json

from runledger.context.builder import SUMMARY_HEADER, build_context, to_provider_messages
from runledger.models.message import (
    FilePart,
    ImagePart,
    Message,
    TextPart,
    ToolCallPart,
    ToolResultPart,
)


def _msg(content, role="user", msg_id=1) -> Message:
    return Message(id=msg_id, session_id="sess_X", role=role, content=content)


class TestToProviderMessages:
    def test_plain_text(self):
        assert to_provider_messages(_msg("hello")) == [{"role": "user", "content": "hello"}]

    def test_tool_calls_attach_to_assistant(self):
        msg = _msg(
            [ToolCallPart(tool_name="read_file", tool_call_id="call_9", args={"path": "a.py"})],
            role="assistant",
        )
        (out,) = to_provider_messages(msg)
        assert out["role"] == "assistant"
        assert out["content"] is None
        call = out["tool_calls"][0]
        assert call["id"] == "call_9"
        assert call["type"] == "function"
        assert json.loads(call["function"]["arguments"]) == {"path": "a.py"}

    def test_each_tool_result_is_a_tool_message(self):
        msg = _msg(
            [
                ToolResultPart(tool_name="run_shell", tool_call_id="c1", result="ok"),
                ToolResultPart(tool_name="run_shell", tool_call_id="c2", result={"exit_code": 1}),
            ]
        )
        out = to_provider_messages(msg)
        assert out == [
            {"role": "tool", "tool_call_id": "c1", "content": "ok"},
            {"role": "tool", "tool_call_id": "c2", "content": '{"exit_code": 1}'},
        ]

    def test_images_become_blocks(self):
        msg = _msg([TextPart(text="what is this?"), ImagePart(media_type="image/png", data="AAA")])
        (out,) = to_provider_messages(msg)
        assert out["content"][0] == {"type": "text", "text": "what is this?"}
        assert out["content"][1]["image_url"]["url"] == "data:image/png;base64,AAA"

    def test_files_referenced_by_name(self):
        (out,) = to_provider_messages(_msg([FilePart(filename="report.pdf", data="...")]))
        assert out == {"role": "user", "content": "[File: report.pdf]"}


class TestBuildContext:
    def test_order_preamble_summary_messages(self):
        built = build_context(
            [_msg("one", msg_id=1), _msg("two", role="assistant", msg_id=2)],
            summary="# Goal\n- x",
            preamble="be brief",
        )
        assert built.messages == [
            {"role": "system", "content": "be brief"},
            {"role": "system", "content": f"{SUMMARY_HEADER}\n\n# Goal\n- x"},
            {"role": "user", "content": "one"},
            {"role": "assistant", "content": "two"},
        ]
        assert built.has_summary is True
        assert built.message_count == 2

    def test_no_summary_no_block(self):
        built = build_context([_msg("one")])
        assert built.messages == [{"role": "user", "content": "one"}]
        assert built.has_summary is False

    def test_orphan_tool_result_demoted(self):
        """A result whose call was folded into the summary becomes user text."""
        built = build_context(
            [_msg([ToolResultPart(tool_name="run_shell", tool_call_id="gone", result="done")])],
            summary="# Goal\n- y",
        )
        assert built.messages[-1] == {"role": "user", "content": "[Tool Result]\ndone"}

    def test_paired_tool_result_kept(self):
        call = _msg(
            [ToolCallPart(tool_name="run_shell", tool_call_id="c1", args={"command": "ls"})],
            role="assistant",
            msg_id=1,
        )
        result = _msg(
            [ToolResultPart(tool_name="run_shell", tool_call_id="c1", result="a.py")], msg_id=2
        )
        built = build_context([call, result])
        assert built.messages[-1] == {"role": "tool", "tool_call_id": "c1", "content": "a.py"}
