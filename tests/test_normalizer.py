"""Tests for EventNormalizer: runtime stream messages to StreamEvents."""

from __future__ import annotations

import json
import logging
import random

import pytest

from ideaflow.agent.normalizer import EventNormalizer, parse_tool_input, strip_tool_prefix
from ideaflow.agent.stream import (
    CompactBoundary,
    CompactStatus,
    Done,
    RoundComplete,
    SubagentDone,
    Text,
    Thinking,
    ThinkingDone,
    ThinkingStart,
    ToolInputDelta,
    ToolProgress,
    ToolResult,
    ToolStart,
    ToolUse,
)
from tests.conftest import stream_event


def _payloads(events):
    return [e.payload for e in events]


def _feed_all(normalizer, messages):
    out = []
    for m in messages:
        out.extend(normalizer.feed(m))
    return out


RAW_TOOL_INPUT = json.dumps(
    {
        "title": "Caf\u00e9 \"Le Poisson\"",
        "content": "Prix: 12\u20ac at 4\u00b0C, na\u00efve \\ path\nline two",
        "tags": ["\u9b5a", 1, None],
    },
    ensure_ascii=False,
)


def _split(raw, how):
    if how == "whole":
        return [raw]
    if how == "chars":
        return list(raw)
    rng = random.Random(7)
    cuts = sorted(rng.sample(range(1, len(raw)), 12))
    return [raw[a:b] for a, b in zip([0, *cuts], [*cuts, len(raw)])]


class TestBlocks:
    def test_thinking_block_with_signature(self):
        n = EventNormalizer()
        events = _feed_all(n, [
            {"type": "content_block_start", "index": 0, "content_block": {"type": "thinking", "thinking": ""}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "thinking_delta", "thinking": "Let me "}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "thinking_delta", "thinking": "think"}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "signature_delta", "signature": "sig-"}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "signature_delta", "signature": "abc"}},
            {"type": "content_block_stop", "index": 0},
        ])
        assert _payloads(events) == [
            ThinkingStart(),
            Thinking(content="Let me "),
            Thinking(content="think"),
            ThinkingDone(signature="sig-abc"),
        ]

    def test_unsigned_thinking_done_has_no_signature(self):
        n = EventNormalizer()
        events = _feed_all(n, [
            {"type": "content_block_start", "index": 0, "content_block": {"type": "thinking"}},
            {"type": "content_block_stop", "index": 0},
        ])
        assert _payloads(events)[-1] == ThinkingDone(signature=None)

    def test_text_deltas(self):
        n = EventNormalizer()
        events = _feed_all(n, [
            {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hello"}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": " world"}},
            {"type": "content_block_stop", "index": 0},
        ])
        assert _payloads(events) == [Text(content="Hello"), Text(content=" world")]

    def test_tool_use_strips_prefix_and_accumulates_input(self):
        n = EventNormalizer(tool_prefix="mcp__fw__")
        events = _feed_all(n, [
            {
                "type": "content_block_start",
                "index": 1,
                "content_block": {"type": "tool_use", "id": "tu_1", "name": "mcp__fw__propose_note"},
            },
            {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": '{"title": '}},
            {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": '"X"}'}},
            {"type": "content_block_stop", "index": 1},
        ])
        assert _payloads(events) == [
            ToolStart(tool_id="tu_1", tool_name="propose_note"),
            ToolInputDelta(tool_id="tu_1", tool_name="propose_note", partial_json='{"title": '),
            ToolInputDelta(tool_id="tu_1", tool_name="propose_note", partial_json='{"title": "X"}'),
            ToolUse(tool_id="tu_1", tool_name="propose_note", input={"title": "X"}),
        ]

    @pytest.mark.parametrize("how", ["whole", "chars", "random"])
    def test_tool_input_independent_of_chunking(self, how):
        chunks = _split(RAW_TOOL_INPUT, how)
        assert "".join(chunks) == RAW_TOOL_INPUT

        n = EventNormalizer()
        events = _feed_all(n, [
            {"type": "content_block_start", "index": 0, "content_block": {"type": "tool_use", "id": "t", "name": "x"}},
            *(
                {"type": "content_block_delta", "index": 0, "delta": {"type": "input_json_delta", "partial_json": c}}
                for c in chunks
            ),
            {"type": "content_block_stop", "index": 0},
        ])

        assert _payloads(events)[-1] == ToolUse(tool_id="t", tool_name="x", input=json.loads(RAW_TOOL_INPUT))
        deltas = [p for p in _payloads(events) if isinstance(p, ToolInputDelta)]
        assert len(deltas) == len(chunks)
        assert deltas[-1].partial_json == RAW_TOOL_INPUT

    def test_malformed_tool_input_becomes_empty(self, caplog):
        n = EventNormalizer()
        with caplog.at_level(logging.WARNING):
            events = _feed_all(n, [
                {"type": "content_block_start", "index": 0, "content_block": {"type": "tool_use", "id": "t", "name": "x"}},
                {"type": "content_block_delta", "index": 0, "delta": {"type": "input_json_delta", "partial_json": '{"a":'}},
                {"type": "content_block_stop", "index": 0},
            ])
        assert _payloads(events)[-1] == ToolUse(tool_id="t", tool_name="x", input={})
        assert "Failed to parse tool input" in caplog.text

    def test_unknown_block_and_delta_dropped(self):
        n = EventNormalizer()
        events = _feed_all(n, [
            {"type": "content_block_start", "index": 0, "content_block": {"type": "image"}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "x"}},
            {"type": "content_block_start", "index": 1, "content_block": {"type": "text"}},
            {"type": "content_block_delta", "index": 1, "delta": {"type": "citations_delta"}},
            {"type": "content_block_stop", "index": 0},
            {"type": "ping"},
        ])
        assert events == []


class TestDone:
    def test_bare_message_stop_uses_last_stop_reason(self):
        n = EventNormalizer()
        events = _feed_all(n, [
            {"type": "message_start", "message": {"usage": {"input_tokens": 12}}},
            {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 7}},
            {"type": "message_stop"},
        ])
        (done,) = _payloads(events)
        assert isinstance(done, Done)
        assert done.stop_reason == "tool_use"
        assert done.usage.input_tokens == 12
        assert done.usage.output_tokens == 7

    def test_result_defaults_to_end_turn(self):
        n = EventNormalizer()
        (done,) = _payloads(n.feed({"type": "result", "subtype": "success", "is_error": False}))
        assert done == Done(stop_reason="end_turn", usage=None)

    def test_result_failure_uses_subtype(self):
        n = EventNormalizer()
        (done,) = _payloads(n.feed({"type": "result", "subtype": "error_max_turns", "is_error": True}))
        assert done.stop_reason == "error_max_turns"

    def test_wrapped_message_stop_does_not_emit_done(self):
        n = EventNormalizer()
        events = _feed_all(n, [
            stream_event({"type": "message_delta", "delta": {"stop_reason": "tool_use"}}),
            stream_event({"type": "message_stop"}),
        ])
        assert events == []
        (done,) = _payloads(n.feed({"type": "result", "subtype": "success"}))
        assert done.stop_reason == "tool_use"

    def test_result_clears_only_root_blocks(self):
        n = EventNormalizer()
        _feed_all(n, [
            stream_event({"type": "content_block_start", "index": 0, "content_block": {"type": "text"}}),
            stream_event({"type": "content_block_start", "index": 0, "content_block": {"type": "text"}}, parent="task_1"),
        ])
        n.feed({"type": "result", "subtype": "success"})
        assert list(n.open_blocks) == [("task_1", 0)]


class TestScopes:
    def test_same_index_in_two_scopes_does_not_collide(self):
        n = EventNormalizer()
        events = _feed_all(n, [
            stream_event({"type": "content_block_start", "index": 0, "content_block": {"type": "text"}}),
            stream_event({"type": "content_block_start", "index": 0, "content_block": {"type": "text"}}, parent="task_1"),
            stream_event({"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "root"}}),
            stream_event(
                {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "sub"}},
                parent="task_1",
            ),
        ])
        assert [(e.scope_id, e.payload.content) for e in events] == [(None, "root"), ("task_1", "sub")]

    def test_subagent_assistant_message_emits_tool_events(self):
        n = EventNormalizer(tool_prefix="mcp__fw__")
        _feed_all(n, [
            stream_event({"type": "content_block_start", "index": 0, "content_block": {"type": "text"}}, parent="task_1"),
        ])
        events = n.feed({
            "type": "assistant",
            "parent_tool_use_id": "task_1",
            "message": {
                "content": [
                    {"type": "text", "text": "ignored"},
                    {"type": "tool_use", "id": "tu_9", "name": "mcp__fw__read_file", "input": {"file_path": "App.tsx"}},
                ]
            },
        })
        assert _payloads(events) == [
            ToolStart(tool_id="tu_9", tool_name="read_file"),
            ToolUse(tool_id="tu_9", tool_name="read_file", input={"file_path": "App.tsx"}),
            RoundComplete(),
        ]
        assert all(e.scope_id == "task_1" for e in events)
        assert n.open_blocks == {}

    def test_root_assistant_message_is_round_complete(self):
        n = EventNormalizer()
        events = n.feed({"type": "assistant", "message": {"content": [{"type": "text", "text": "hi"}]}})
        assert _payloads(events) == [RoundComplete()]
        assert events[0].is_root


class TestRuntimeMessages:
    def test_tool_results_from_user_message(self):
        n = EventNormalizer()
        events = n.feed({
            "type": "user",
            "message": {
                "content": [
                    {"type": "tool_result", "tool_use_id": "tu_1", "content": [{"type": "text", "text": "ok"}]},
                    {"type": "tool_result", "tool_use_id": "tu_2", "content": "boom", "is_error": True},
                ]
            },
        })
        assert _payloads(events) == [
            ToolResult(tool_id="tu_1", success=True, data="ok"),
            ToolResult(tool_id="tu_2", success=False, error="boom"),
        ]

    def test_replayed_user_message_ignored(self):
        n = EventNormalizer()
        message = {
            "type": "user",
            "isReplay": True,
            "message": {"content": [{"type": "tool_result", "tool_use_id": "tu_1", "content": "x"}]},
        }
        assert n.feed(message) == []

    def test_status_messages(self):
        n = EventNormalizer(tool_prefix="mcp__fw__")
        assert _payloads(n.feed({"type": "system", "subtype": "status", "status": "compacting"})) == [
            CompactStatus(compacting=True)
        ]
        assert _payloads(n.feed({
            "type": "system",
            "subtype": "compact_boundary",
            "compact_metadata": {"trigger": "manual", "pre_tokens": 9000},
        })) == [CompactBoundary(trigger="manual", pre_tokens=9000)]
        assert _payloads(n.feed({
            "type": "system",
            "subtype": "task_notification",
            "task_id": "task_1",
            "summary": "done",
        })) == [SubagentDone(tool_id="task_1", summary="done")]
        assert _payloads(n.feed({
            "type": "tool_progress",
            "tool_use_id": "tu_1",
            "tool_name": "mcp__fw__firecrawl_search",
            "elapsed_time_seconds": 3,
        })) == [ToolProgress(tool_id="tu_1", tool_name="firecrawl_search", elapsed_seconds=3.0)]

    def test_init_and_unknown_messages_produce_nothing(self):
        n = EventNormalizer()
        assert n.feed({"type": "system", "subtype": "init", "session_id": "s"}) == []
        assert n.feed({"type": "files_persisted"}) == []


def test_strip_tool_prefix():
    assert strip_tool_prefix("mcp__fw__list_files", "mcp__fw__") == "list_files"
    assert strip_tool_prefix("Read", "mcp__fw__") == "Read"


def test_parse_tool_input_rejects_non_objects():
    assert parse_tool_input("") == {}
    assert parse_tool_input("[1, 2]") == {}
    assert parse_tool_input('{"a": 1}') == {"a": 1}
