"""Round aggregation and conversation replay history.

The provider enforces strict rules on resumed conversations:

- a thinking block must be the first block of its assistant message and
  must carry its signature, otherwise it is rejected on replay;
- every assistant message containing tool_use blocks must be followed by
  one user message whose tool_result blocks answer exactly those ids.

RoundResult builds an assistant message that satisfies the first rule,
HistoryBuilder enforces both before a turn is stored.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Union

from ideaflow.agent.errors import HistoryError
from ideaflow.agent.stream import (
    Done,
    RoundRetry,
    StreamEvent,
    Text,
    Thinking,
    ThinkingDone,
    ToolResult,
    ToolUse,
)

logger = logging.getLogger(__name__)

# A round also stops for tools when the runtime hit its own turn limit
# right after answering them
_TOOL_STOP_REASONS = frozenset({"tool_use", "error_max_turns"})


# ---------------------------------------------------------------------------
# Content blocks
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ThinkingBlock:
    text: str
    signature: str | None = None

    def to_api(self) -> dict[str, Any]:
        return {"type": "thinking", "thinking": self.text, "signature": self.signature or ""}


@dataclass(frozen=True)
class TextBlock:
    text: str

    def to_api(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass(frozen=True)
class ToolUseBlock:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)

    def to_api(self) -> dict[str, Any]:
        return {"type": "tool_use", "id": self.id, "name": self.name, "input": self.input}


ContentBlock = Union[ThinkingBlock, TextBlock, ToolUseBlock]


@dataclass(frozen=True)
class ToolResultEntry:
    """One answer to a tool_use block, already serialized for the provider."""

    tool_use_id: str
    content: str
    is_error: bool = False

    def to_api(self) -> dict[str, Any]:
        block: dict[str, Any] = {
            "type": "tool_result",
            "tool_use_id": self.tool_use_id,
            "content": self.content,
        }
        if self.is_error:
            block["is_error"] = True
        return block


@dataclass
class ConversationTurn:
    """One round's assistant output paired with the tool results answering it."""

    assistant_content: list[ContentBlock]
    tool_results: list[ToolResultEntry]

    @property
    def tool_use_ids(self) -> list[str]:
        return [b.id for b in self.assistant_content if isinstance(b, ToolUseBlock)]


# ---------------------------------------------------------------------------
# Round aggregation
# ---------------------------------------------------------------------------


@dataclass
class RoundResult:
    """Aggregation of one round's root-scope StreamEvents."""

    stop_reason: str = "end_turn"
    tool_calls: list[ToolUseBlock] = field(default_factory=list)
    text_accumulated: str = ""
    thinking_accumulated: str = ""
    thinking_signature: str | None = None
    # Text of the block the signature belongs to; later thinking blocks are not replayed
    thinking_signed_text: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    # Results the runtime produced itself, keyed by tool_use id
    answered: dict[str, ToolResult] = field(default_factory=dict)
    _thinking_block: str = field(default="", repr=False)

    def collect(self, event: StreamEvent) -> None:
        """Fold one event into the round. Sub-agent events are ignored."""
        if not event.is_root:
            return
        payload = event.payload

        if isinstance(payload, Thinking):
            self.thinking_accumulated += payload.content
            self._thinking_block += payload.content
        elif isinstance(payload, ThinkingDone):
            if payload.signature and self.thinking_signature is None:
                self.thinking_signature = payload.signature
                self.thinking_signed_text = self._thinking_block
            self._thinking_block = ""
        elif isinstance(payload, Text):
            self.text_accumulated += payload.content
        elif isinstance(payload, ToolUse):
            self.tool_calls.append(ToolUseBlock(id=payload.tool_id, name=payload.tool_name, input=payload.input))
        elif isinstance(payload, ToolResult):
            self.answered[payload.tool_id] = payload
        elif isinstance(payload, Done):
            self.stop_reason = payload.stop_reason
            if payload.usage:
                self.input_tokens += payload.usage.input_tokens
                self.output_tokens += payload.usage.output_tokens
        elif isinstance(payload, RoundRetry):
            self.reset()

    def reset(self) -> None:
        self.stop_reason = "end_turn"
        self.tool_calls = []
        self.text_accumulated = ""
        self.thinking_accumulated = ""
        self.thinking_signature = None
        self.thinking_signed_text = ""
        self._thinking_block = ""
        self.input_tokens = 0
        self.output_tokens = 0
        self.answered = {}

    @property
    def wants_tools(self) -> bool:
        return self.stop_reason in _TOOL_STOP_REASONS and bool(self.tool_calls)

    def pending_calls(self) -> list[ToolUseBlock]:
        """Tool calls the runtime did not already answer in this round."""
        return [call for call in self.tool_calls if call.id not in self.answered]

    def assistant_content(self) -> list[ContentBlock]:
        """Build provider content blocks: signed thinking, text, tool uses."""
        blocks: list[ContentBlock] = []

        if self.thinking_signature:
            blocks.append(ThinkingBlock(text=self.thinking_signed_text, signature=self.thinking_signature))
        elif self.thinking_accumulated:
            logger.warning(
                "Dropping unsigned thinking block (%d chars) from round content",
                len(self.thinking_accumulated),
            )

        if self.text_accumulated:
            blocks.append(TextBlock(text=self.text_accumulated))

        blocks.extend(self.tool_calls)
        return blocks


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


def sanitize_content(content: list[ContentBlock]) -> list[ContentBlock]:
    """Drop unsigned thinking blocks and keep signed thinking first."""
    thinking = [b for b in content if isinstance(b, ThinkingBlock) and b.signature]
    dropped = sum(1 for b in content if isinstance(b, ThinkingBlock) and not b.signature)
    if dropped:
        logger.warning("Dropped %d unsigned thinking block(s) before storing turn", dropped)
    rest = [b for b in content if not isinstance(b, ThinkingBlock)]
    return [*thinking, *rest]


class HistoryBuilder:
    """Accumulates conversation turns and renders provider messages."""

    def __init__(self) -> None:
        self._turns: list[ConversationTurn] = []

    def __len__(self) -> int:
        return len(self._turns)

    @property
    def turns(self) -> list[ConversationTurn]:
        return list(self._turns)

    def append(self, turn: ConversationTurn) -> ConversationTurn:
        """Validate and store one turn. Returns the stored (sanitized) turn."""
        content = sanitize_content(turn.assistant_content)
        stored = ConversationTurn(assistant_content=content, tool_results=list(turn.tool_results))

        use_ids = stored.tool_use_ids
        result_ids = [r.tool_use_id for r in stored.tool_results]
        if len(result_ids) != len(use_ids) or set(result_ids) != set(use_ids):
            raise HistoryError(
                f"Tool results {sorted(result_ids)} do not answer tool uses {sorted(use_ids)}"
            )

        self._turns.append(stored)
        logger.debug(
            "Turn %d stored: blocks=%s results=%d",
            len(self._turns),
            [type(b).__name__ for b in content],
            len(result_ids),
        )
        return stored

    def render(self, base_messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Base messages, then one assistant/user pair per stored turn."""
        messages: list[dict[str, Any]] = [dict(m) for m in base_messages]
        for turn in self._turns:
            messages.append({
                "role": "assistant",
                "content": [b.to_api() for b in turn.assistant_content],
            })
            messages.append({
                "role": "user",
                "content": [r.to_api() for r in turn.tool_results],
            })
        return messages
