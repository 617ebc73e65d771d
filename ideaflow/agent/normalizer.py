"""Event normalizer -- agent runtime stream messages to StreamEvents.

Pure translation layer. The only state is per-block tracking keyed by
(scope, block_index) so concurrently streaming sub-agents never collide,
plus the last stop_reason seen per scope.

Two message shapes are accepted:

- Runtime messages: system, stream_event (wrapping a provider SSE event),
  assistant, user, tool_progress, result.
- Bare provider SSE events (content_block_*, message_*), treated as
  root scope. For these, message_stop produces the done event; inside a
  runtime stream the result message does that instead.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from ideaflow.agent.stream import (
    CompactBoundary,
    CompactStatus,
    Done,
    EventPayload,
    RoundComplete,
    StreamEvent,
    SubagentDone,
    Text,
    Thinking,
    ThinkingDone,
    ThinkingStart,
    TokenUsage,
    ToolInputDelta,
    ToolProgress,
    ToolResult,
    ToolStart,
    ToolUse,
)

logger = logging.getLogger(__name__)

ROOT_SCOPE = "main"

_SSE_TYPES = frozenset({
    "content_block_start",
    "content_block_delta",
    "content_block_stop",
    "message_start",
    "message_delta",
    "message_stop",
    "ping",
    "error",
})


@dataclass
class BlockState:
    """In-progress content block."""

    kind: str  # thinking, text, tool_use
    tool_id: str = ""
    tool_name: str = ""
    input_chunks: list[str] = field(default_factory=list)
    signature_parts: list[str] = field(default_factory=list)


def strip_tool_prefix(name: str, prefix: str) -> str:
    """mcp__fw__propose_note -> propose_note."""
    if prefix and name.startswith(prefix):
        return name[len(prefix):]
    return name


def parse_tool_input(raw: str, tool_name: str = "") -> dict[str, Any]:
    """Parse the concatenated partial_json of a tool_use block.

    Malformed input degrades to {} so one bad block never aborts a round.
    """
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning("Failed to parse tool input JSON for %s: %s", tool_name or "?", e)
        return {}
    if not isinstance(value, dict):
        logger.warning("Tool input for %s is not an object: %r", tool_name or "?", type(value).__name__)
        return {}
    return value


def _usage(raw: dict[str, Any] | None) -> TokenUsage | None:
    if not raw:
        return None
    return TokenUsage(
        input_tokens=int(raw.get("input_tokens") or 0),
        output_tokens=int(raw.get("output_tokens") or 0),
    )


class EventNormalizer:
    """Translates one round's runtime messages into StreamEvents."""

    def __init__(self, tool_prefix: str = "") -> None:
        self._tool_prefix = tool_prefix
        self._blocks: dict[tuple[str, int], BlockState] = {}
        self._stop_reasons: dict[str, str] = {}
        self._usage: dict[str, TokenUsage] = {}

    @property
    def open_blocks(self) -> dict[tuple[str, int], BlockState]:
        return dict(self._blocks)

    def feed(self, message: dict[str, Any]) -> list[StreamEvent]:
        """Translate one message into zero or more events."""
        msg_type = message.get("type")

        if msg_type in _SSE_TYPES:
            return self._translate(message, None, bare=True)

        if msg_type == "stream_event":
            raw = message.get("event") or {}
            scope = message.get("parent_tool_use_id") or None
            return self._translate(raw, scope, bare=False)

        if msg_type == "system":
            return self._system(message)

        if msg_type == "assistant":
            return self._assistant(message)

        if msg_type == "user":
            return self._user(message)

        if msg_type == "tool_progress":
            return [
                StreamEvent(
                    ToolProgress(
                        tool_id=message.get("tool_use_id", ""),
                        tool_name=strip_tool_prefix(message.get("tool_name", ""), self._tool_prefix),
                        elapsed_seconds=float(message.get("elapsed_time_seconds") or 0),
                    ),
                    message.get("parent_tool_use_id") or None,
                )
            ]

        if msg_type == "result":
            return self._result(message)

        # tool_use_summary, files_persisted, ... carry nothing for consumers
        logger.debug("Ignoring runtime message type %s", msg_type)
        return []

    # ------------------------------------------------------------------
    # Runtime messages
    # ------------------------------------------------------------------

    def _system(self, message: dict[str, Any]) -> list[StreamEvent]:
        subtype = message.get("subtype")
        if subtype == "status":
            return [StreamEvent(CompactStatus(compacting=message.get("status") == "compacting"))]
        if subtype == "compact_boundary":
            meta = message.get("compact_metadata") or {}
            trigger = "manual" if meta.get("trigger") == "manual" else "auto"
            return [StreamEvent(CompactBoundary(trigger=trigger, pre_tokens=int(meta.get("pre_tokens") or 0)))]
        if subtype == "task_notification":
            return [StreamEvent(SubagentDone(tool_id=message.get("task_id", ""), summary=message.get("summary", "")))]
        # init carries the session id, which the session runner picks up
        return []

    def _assistant(self, message: dict[str, Any]) -> list[StreamEvent]:
        scope = message.get("parent_tool_use_id") or None
        events: list[StreamEvent] = []

        # Sub-agents only deliver complete assistant messages, never deltas
        if scope is not None:
            content = (message.get("message") or {}).get("content") or []
            for block in content:
                if block.get("type") != "tool_use" or not block.get("id") or not block.get("name"):
                    continue
                name = strip_tool_prefix(block["name"], self._tool_prefix)
                tool_input = block.get("input") or {}
                events.append(StreamEvent(ToolStart(tool_id=block["id"], tool_name=name), scope))
                events.append(StreamEvent(ToolUse(tool_id=block["id"], tool_name=name, input=tool_input), scope))

        events.append(StreamEvent(RoundComplete(), scope))
        self._clear_scope(scope)
        return events

    def _user(self, message: dict[str, Any]) -> list[StreamEvent]:
        # Replayed messages come from earlier turns on session resume
        if message.get("isReplay"):
            return []

        scope = message.get("parent_tool_use_id") or None
        content = (message.get("message") or {}).get("content")
        if not isinstance(content, list):
            return []

        events: list[StreamEvent] = []
        for block in content:
            if block.get("type") != "tool_result" or not isinstance(block.get("tool_use_id"), str):
                continue
            text = _tool_result_text(block.get("content"))
            if block.get("is_error"):
                payload = ToolResult(tool_id=block["tool_use_id"], success=False, error=text or "Tool failed")
            else:
                payload = ToolResult(tool_id=block["tool_use_id"], success=True, data=text)
            events.append(StreamEvent(payload, scope))
        return events

    def _result(self, message: dict[str, Any]) -> list[StreamEvent]:
        subtype = message.get("subtype", "success")
        if subtype == "success" and not message.get("is_error"):
            stop_reason = self._stop_reasons.pop(ROOT_SCOPE, None) or "end_turn"
        else:
            stop_reason = subtype if subtype != "success" else "error"
        usage = _usage(message.get("usage")) or self._usage.pop(ROOT_SCOPE, None)
        self._clear_scope(None)
        return [StreamEvent(Done(stop_reason=stop_reason, usage=usage))]

    # ------------------------------------------------------------------
    # Provider SSE events
    # ------------------------------------------------------------------

    def _translate(self, evt: dict[str, Any], scope: str | None, *, bare: bool) -> list[StreamEvent]:
        evt_type = evt.get("type")
        scope_key = scope or ROOT_SCOPE

        if evt_type == "content_block_start":
            return self._block_start(evt, scope)

        if evt_type == "content_block_delta":
            return self._block_delta(evt, scope)

        if evt_type == "content_block_stop":
            return self._block_stop(evt, scope)

        if evt_type == "message_start":
            # A new message in the same scope restarts stop tracking
            self._stop_reasons.pop(scope_key, None)
            usage = _usage((evt.get("message") or {}).get("usage"))
            if usage:
                self._usage[scope_key] = usage
            return []

        if evt_type == "message_delta":
            stop_reason = (evt.get("delta") or {}).get("stop_reason")
            if stop_reason:
                self._stop_reasons[scope_key] = stop_reason
            delta_usage = evt.get("usage") or {}
            if delta_usage:
                previous = self._usage.get(scope_key) or TokenUsage()
                self._usage[scope_key] = TokenUsage(
                    input_tokens=int(delta_usage.get("input_tokens") or previous.input_tokens),
                    output_tokens=int(delta_usage.get("output_tokens") or previous.output_tokens),
                )
            return []

        if evt_type == "message_stop":
            if not bare:
                return []
            stop_reason = self._stop_reasons.pop(scope_key, None) or "end_turn"
            usage = self._usage.pop(scope_key, None)
            self._clear_scope(scope)
            return [StreamEvent(Done(stop_reason=stop_reason, usage=usage), scope)]

        if evt_type == "error":
            error = evt.get("error") or {}
            logger.error(
                "In-stream provider error: %s: %s",
                error.get("type", "unknown"),
                error.get("message", ""),
            )
            return []

        # ping and anything newer than this translator
        return []

    def _block_start(self, evt: dict[str, Any], scope: str | None) -> list[StreamEvent]:
        key = (scope or ROOT_SCOPE, int(evt.get("index", 0)))
        block = evt.get("content_block") or {}
        block_type = block.get("type")

        if block_type == "thinking":
            state = BlockState(kind="thinking")
            if block.get("signature"):
                state.signature_parts.append(block["signature"])
            self._blocks[key] = state
            events = [StreamEvent(ThinkingStart(), scope)]
            if block.get("thinking"):
                events.append(StreamEvent(Thinking(content=block["thinking"]), scope))
            return events

        if block_type == "text":
            self._blocks[key] = BlockState(kind="text")
            if block.get("text"):
                return [StreamEvent(Text(content=block["text"]), scope)]
            return []

        if block_type == "tool_use":
            name = strip_tool_prefix(block.get("name", ""), self._tool_prefix)
            self._blocks[key] = BlockState(kind="tool_use", tool_id=block.get("id", ""), tool_name=name)
            return [StreamEvent(ToolStart(tool_id=block.get("id", ""), tool_name=name), scope)]

        logger.debug("Dropping unsupported content block type %s", block_type)
        return []

    def _block_delta(self, evt: dict[str, Any], scope: str | None) -> list[StreamEvent]:
        key = (scope or ROOT_SCOPE, int(evt.get("index", 0)))
        delta = evt.get("delta") or {}
        delta_type = delta.get("type")
        state = self._blocks.get(key)
        if state is None:
            logger.debug("Delta %s for untracked block %s", delta_type, key)
            return []

        if delta_type == "thinking_delta" and state.kind == "thinking":
            return [StreamEvent(Thinking(content=delta.get("thinking", "")), scope)]

        if delta_type == "signature_delta" and state.kind == "thinking":
            state.signature_parts.append(delta.get("signature", ""))
            return []

        if delta_type == "text_delta" and state.kind == "text":
            return [StreamEvent(Text(content=delta.get("text", "")), scope)]

        if delta_type == "input_json_delta" and state.kind == "tool_use":
            state.input_chunks.append(delta.get("partial_json", ""))
            return [
                StreamEvent(
                    ToolInputDelta(
                        tool_id=state.tool_id,
                        tool_name=state.tool_name,
                        partial_json="".join(state.input_chunks),
                    ),
                    scope,
                )
            ]

        logger.debug("Dropping %s delta for %s block", delta_type, state.kind)
        return []

    def _block_stop(self, evt: dict[str, Any], scope: str | None) -> list[StreamEvent]:
        key = (scope or ROOT_SCOPE, int(evt.get("index", 0)))
        state = self._blocks.pop(key, None)
        if state is None:
            return []

        payload: EventPayload | None = None
        if state.kind == "thinking":
            signature = "".join(state.signature_parts) or None
            payload = ThinkingDone(signature=signature)
        elif state.kind == "tool_use":
            tool_input = parse_tool_input("".join(state.input_chunks), state.tool_name)
            payload = ToolUse(tool_id=state.tool_id, tool_name=state.tool_name, input=tool_input)

        return [StreamEvent(payload, scope)] if payload is not None else []

    def _clear_scope(self, scope: str | None) -> None:
        """Forget open blocks of one scope; other scopes keep streaming."""
        scope_key = scope or ROOT_SCOPE
        for key in [k for k in self._blocks if k[0] == scope_key]:
            del self._blocks[key]


def _tool_result_text(content: Any) -> str | None:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            block["text"]
            for block in content
            if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str)
        ]
        return "\n".join(parts)
    return None
